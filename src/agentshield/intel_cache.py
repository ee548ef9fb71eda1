"""
Intelligence cache tiers.

- ``TTLCache``: bounded in-process LRU with per-entry expiry.
- ``IntelWriter``: write-behind queue so persistence never adds request latency.
- ``ThreatMemory``: read/write facade over ``IntelStore`` used by the analyzers.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .models import DomainContext, IntelligenceRecord, ReputationResult, ThreatSignal, WebRiskResult
from .storage import IntelStore, ScamPattern

logger = logging.getLogger(__name__)

# Stored records seen more than this many times are served without a live lookup.
CACHE_HIT_THRESHOLD = 2


class TTLCache:
    """Thread-safe LRU cache with per-key TTL (seconds)."""

    def __init__(self, maxsize: int = 2048, ttl: float = 3600, *, clock: Callable[[], float] = time.monotonic):
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._store: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._maxsize = maxsize
        self._ttl = ttl
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            self._store.move_to_end(key)
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._store[key] = (value, self._clock() + (ttl if ttl is not None else self._ttl))
            self._store.move_to_end(key)
            while len(self._store) > self._maxsize:
                self._store.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class IntelWriter:
    """Background queue draining persistence writes one at a time.

    ``submit`` never blocks or raises; failures are logged and counted.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: Optional[asyncio.Queue] = None
        self._maxsize = maxsize
        self._worker: Optional[asyncio.Task] = None
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.dropped = 0
        self.last_error: Optional[str] = None

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return self._queue

    def submit(self, label: str, factory: Callable[[], Awaitable[Any]]) -> bool:
        try:
            queue = self._ensure_worker()
        except RuntimeError:
            self.dropped += 1
            logger.warning("Intel write %s dropped: no running event loop", label)
            return False
        try:
            queue.put_nowait((label, factory))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Intel write queue full, dropping %s", label)
            return False
        self.submitted += 1
        return True

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            label, factory = await self._queue.get()
            try:
                await factory()
                self.completed += 1
            except Exception as exc:
                self.failed += 1
                self.last_error = f"{label}: {exc}"
                logger.error("Intel write %s failed: %s", label, exc)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every submitted write has been attempted."""
        if self._queue is not None and self._worker is not None:
            await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def stats(self) -> Dict[str, Any]:
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "dropped": self.dropped,
            "pending": self._queue.qsize() if self._queue is not None else 0,
            "last_error": self.last_error,
        }


def subject_fingerprint(subject: Optional[str]) -> Optional[str]:
    if not subject:
        return None
    return hashlib.sha256(subject.lower().strip().encode("utf-8")).hexdigest()[:16]


class ThreatMemory:
    def __init__(self, store: IntelStore, writer: Optional[IntelWriter] = None):
        self.store = store
        self.writer = writer or IntelWriter()

    async def lookup(self, indicator_type: str, indicator_value: str, source: str) -> Optional[IntelligenceRecord]:
        try:
            return await self.store.get_threat_intel(indicator_type, indicator_value, source)
        except Exception as exc:
            logger.error("Stored intel lookup failed for %s %s: %s", source, indicator_value, exc)
            return None

    async def lookup_trusted(
        self, indicator_type: str, indicator_value: str, source: str
    ) -> Optional[IntelligenceRecord]:
        """Stored record that has been confirmed often enough to skip a live lookup."""
        record = await self.lookup(indicator_type, indicator_value, source)
        if record is not None and record.hit_count > CACHE_HIT_THRESHOLD:
            return record
        return None

    def store_reputation_result(self, indicator_type: str, indicator_value: str, result: ReputationResult) -> None:
        if not result.available or result.cached:
            return
        total = result.total_engines
        confidence = min(1.0, (result.malicious + result.suspicious + 10) / total) if total > 0 else 0.5
        verdict = result.verdict
        self.writer.submit(
            f"virustotal:{indicator_value}",
            lambda: self.store.upsert_threat_intel(
                indicator_type=indicator_type,
                indicator_value=indicator_value,
                source="virustotal",
                verdict=verdict,
                threat_types=["malware"] if verdict == "malicious" else ["suspicious"] if verdict == "suspicious" else [],
                summary=result.summary,
                confidence=round(confidence, 2),
                raw_data={
                    "malicious": result.malicious,
                    "suspicious": result.suspicious,
                    "total_engines": total,
                },
            ),
        )

    def store_web_risk_result(self, indicator_type: str, indicator_value: str, result: WebRiskResult) -> None:
        if not result.available or result.cached:
            return
        self.writer.submit(
            f"webrisk:{indicator_value}",
            lambda: self.store.upsert_threat_intel(
                indicator_type=indicator_type,
                indicator_value=indicator_value,
                source="webrisk",
                verdict="safe" if result.safe else "malicious",
                threat_types=list(result.threats),
                summary=result.summary,
                confidence=0.80 if result.safe else 0.95,
                raw_data={"safe": result.safe, "threats": list(result.threats)},
            ),
        )

    def record_scam_detection(
        self,
        signals: Iterable[ThreatSignal],
        *,
        sender_domain: Optional[str],
        verdict: str,
        risk_score: float,
        tool_name: str,
        subject: Optional[str] = None,
    ) -> None:
        fingerprint = subject_fingerprint(subject)
        patterns = [
            ScamPattern(
                pattern_type=s.type,
                sender_domain=sender_domain.lower() if sender_domain else None,
                verdict=verdict,
                risk_score=risk_score,
                severity=s.severity,
                description=s.description,
                subject_fingerprint=fingerprint,
                tool_name=tool_name,
            )
            for s in signals
        ]
        if not patterns:
            return
        self.writer.submit(f"patterns:{sender_domain}", lambda: self.store.record_scam_patterns(patterns))

    def update_domain_reputation(self, domain: str, verdict: str, risk_score: float, **extra: Any) -> None:
        self.writer.submit(
            f"domainrep:{domain}",
            lambda: self.store.upsert_domain_reputation(domain, verdict, risk_score, **extra),
        )

    async def get_domain_context(self, domain: str) -> Optional[DomainContext]:
        try:
            rep, stats = await asyncio.gather(
                self.store.get_domain_reputation(domain),
                self.store.get_scam_pattern_stats(domain),
            )
        except Exception as exc:
            logger.error("Domain context lookup failed for %s: %s", domain, exc)
            return None
        if rep is None and stats["total"] == 0:
            return None
        return DomainContext(
            total_checks=rep.total_checks if rep else 0,
            dangerous_count=rep.dangerous_count if rep else 0,
            suspicious_count=rep.suspicious_count if rep else 0,
            safe_count=rep.safe_count if rep else 0,
            avg_risk_score=rep.avg_risk_score if rep else 0.0,
            computed_trust_score=rep.computed_trust_score if rep else 0.5,
            previous_patterns=list(stats["by_type"].keys()),
            vt_malicious_count=rep.vt_malicious_count if rep else 0,
            web_risk_flag_count=rep.web_risk_flag_count if rep else 0,
        )


def build_historical_context(ctx: Optional[DomainContext]) -> str:
    if ctx is None or ctx.total_checks == 0:
        return ""
    lines: List[str] = [
        "HISTORICAL INTELLIGENCE (from our database):",
        f"- Domain checked {ctx.total_checks} time(s) previously",
        f"- Previous email verdicts: {ctx.dangerous_count} dangerous, "
        f"{ctx.suspicious_count} suspicious, {ctx.safe_count} safe",
    ]
    if ctx.vt_malicious_count > 0:
        lines.append(f"- Reputation engines have flagged this domain as malicious {ctx.vt_malicious_count} time(s)")
    if ctx.web_risk_flag_count > 0:
        lines.append(f"- Web risk lists have flagged this domain {ctx.web_risk_flag_count} time(s)")
    if ctx.previous_patterns:
        lines.append(f"- Previous scam pattern types observed from this domain: {', '.join(ctx.previous_patterns)}")

    if ctx.has_infrastructure_issues:
        lines.append(
            "\nWARNING: This domain has confirmed infrastructure-level security issues. "
            "The domain itself may be operated by threat actors."
        )
    elif ctx.dangerous_count > 0:
        lines.append(
            "\nNOTE: Scam emails have been observed from this domain, but its infrastructure appears clean. "
            "The address was most likely spoofed or a legitimate account compromised. "
            "Do not penalize the domain itself; focus on the email content and patterns."
        )
    return "\n" + "\n".join(lines)
