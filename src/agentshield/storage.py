"""
Persistent intelligence store.

``StorageManager`` is a JSON key/value layer over Redis with an automatic
in-memory fallback. ``IntelStore`` builds the intelligence tables on top of it:
threat intel records keyed by (indicator type, value, source), per-domain
reputation aggregates and observed scam patterns.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import IntelligenceRecord

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageManager:
    """Manages Redis or in-memory storage with automatic fallback"""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.redis_client: Optional[redis.Redis] = None
        self.memory_storage: Dict[str, tuple[Any, Optional[float]]] = {}
        self.use_redis = False

    async def connect(self):
        """Attempt Redis connection, fallback to memory"""
        if not self.redis_url:
            logger.info("No REDIS_URL configured, using in-memory intelligence store")
            return
        try:
            self.redis_client = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await self.redis_client.ping()
            self.use_redis = True
            logger.info("Redis connected successfully")
        except Exception as e:
            logger.warning("Redis connection failed: %s. Using in-memory storage", e)
            self.redis_client = None

    async def close(self):
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self.use_redis = False

    async def get(self, key: str) -> Optional[Any]:
        if self.use_redis and self.redis_client:
            try:
                data = await self.redis_client.get(key)
                return json.loads(data) if data else None
            except Exception as e:
                logger.error("Redis get error: %s", e)

        entry = self.memory_storage.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and expires <= time.time():
            self.memory_storage.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """Store value, optionally expiring after ``ttl`` seconds"""
        if self.use_redis and self.redis_client:
            try:
                await self.redis_client.set(key, json.dumps(value), ex=ttl)
                return
            except Exception as e:
                logger.error("Redis set error: %s", e)

        expires = time.time() + ttl if ttl else None
        self.memory_storage[key] = (value, expires)

    async def delete(self, key: str):
        if self.use_redis and self.redis_client:
            try:
                await self.redis_client.delete(key)
                return
            except Exception as e:
                logger.error("Redis delete error: %s", e)

        self.memory_storage.pop(key, None)

    @property
    def backend(self) -> str:
        return "redis" if self.use_redis else "memory"


class DomainReputation(BaseModel):
    domain: str
    total_checks: int = 0
    dangerous_count: int = 0
    suspicious_count: int = 0
    safe_count: int = 0
    avg_risk_score: float = 0.0
    computed_trust_score: float = 0.5
    dmarc_status: Optional[str] = None
    domain_age_days: Optional[int] = None
    vt_malicious_count: int = 0
    vt_suspicious_count: int = 0
    web_risk_flag_count: int = 0
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)


class ScamPattern(BaseModel):
    pattern_type: str
    sender_domain: Optional[str] = None
    verdict: str
    risk_score: float
    severity: str
    description: str = ""
    subject_fingerprint: Optional[str] = None
    tool_name: str
    created_at: datetime = Field(default_factory=utcnow)


class IntelStore:
    """Intelligence tables over a ``StorageManager``."""

    SCAM_PATTERN_LIMIT = 200

    def __init__(self, storage: Optional[StorageManager] = None, *, ttl_hours: int = 24):
        self.storage = storage or StorageManager()
        self.ttl = timedelta(hours=ttl_hours)

    @staticmethod
    def _intel_key(indicator_type: str, value: str, source: str) -> str:
        return f"intel:{indicator_type}:{source}:{value.lower()}"

    async def get_threat_intel(
        self, indicator_type: str, indicator_value: str, source: str
    ) -> Optional[IntelligenceRecord]:
        """Unexpired record for exactly this indicator and source, if any."""
        data = await self.storage.get(self._intel_key(indicator_type, indicator_value, source))
        if not data:
            return None
        record = IntelligenceRecord.model_validate(data)
        if record.expires_at <= utcnow():
            return None
        return record

    async def upsert_threat_intel(
        self,
        *,
        indicator_type: str,
        indicator_value: str,
        source: str,
        verdict: str,
        threat_types: List[str],
        summary: str,
        confidence: float,
        raw_data: Optional[Dict[str, Any]] = None,
    ) -> IntelligenceRecord:
        now = utcnow()
        existing = await self.get_threat_intel(indicator_type, indicator_value, source)
        record = IntelligenceRecord(
            indicator_type=indicator_type,
            indicator_value=indicator_value.lower(),
            source=source,
            verdict=verdict,
            threat_types=threat_types,
            summary=summary,
            confidence=confidence,
            hit_count=existing.hit_count + 1 if existing else 1,
            first_seen=existing.first_seen if existing else now,
            last_seen=now,
            expires_at=now + self.ttl,
            raw_data=raw_data or {},
        )
        await self.storage.set(
            self._intel_key(indicator_type, indicator_value, source),
            record.model_dump(mode="json"),
            ttl=int(self.ttl.total_seconds()),
        )
        return record

    async def get_domain_reputation(self, domain: str) -> Optional[DomainReputation]:
        data = await self.storage.get(f"domainrep:{domain.lower()}")
        return DomainReputation.model_validate(data) if data else None

    async def upsert_domain_reputation(
        self,
        domain: str,
        verdict: str,
        risk_score: float,
        *,
        dmarc_status: Optional[str] = None,
        domain_age_days: Optional[int] = None,
        vt_malicious_count: Optional[int] = None,
        vt_suspicious_count: Optional[int] = None,
        web_risk_flag_count: Optional[int] = None,
    ) -> DomainReputation:
        """Fold one more verdict into the running per-domain aggregate."""
        domain = domain.lower()
        rep = await self.get_domain_reputation(domain) or DomainReputation(domain=domain)

        total = rep.total_checks + 1
        rep.avg_risk_score = round((rep.avg_risk_score * rep.total_checks + risk_score) / total, 4)
        rep.total_checks = total
        if verdict == "dangerous":
            rep.dangerous_count += 1
        elif verdict == "suspicious":
            rep.suspicious_count += 1
        else:
            rep.safe_count += 1
        ratio = (rep.dangerous_count + rep.suspicious_count * 0.5) / total
        rep.computed_trust_score = round(max(0.0, 1.0 - ratio), 2)

        if dmarc_status is not None:
            rep.dmarc_status = dmarc_status
        if domain_age_days is not None:
            rep.domain_age_days = domain_age_days
        if vt_malicious_count is not None:
            rep.vt_malicious_count = vt_malicious_count
        if vt_suspicious_count is not None:
            rep.vt_suspicious_count = vt_suspicious_count
        if web_risk_flag_count is not None:
            rep.web_risk_flag_count = web_risk_flag_count
        rep.last_seen = utcnow()

        await self.storage.set(f"domainrep:{domain}", rep.model_dump(mode="json"))
        return rep

    async def record_scam_patterns(self, patterns: List[ScamPattern]) -> int:
        by_domain: Dict[str, List[ScamPattern]] = {}
        for pattern in patterns:
            by_domain.setdefault(pattern.sender_domain or "", []).append(pattern)
        for domain, items in by_domain.items():
            key = f"scam:{domain.lower()}"
            stored = await self.storage.get(key) or []
            stored.extend(p.model_dump(mode="json") for p in items)
            await self.storage.set(key, stored[-self.SCAM_PATTERN_LIMIT:])
        return len(patterns)

    async def get_scam_patterns(self, domain: str) -> List[ScamPattern]:
        stored = await self.storage.get(f"scam:{domain.lower()}") or []
        return [ScamPattern.model_validate(item) for item in stored]

    async def get_scam_pattern_stats(self, domain: str) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for pattern in await self.get_scam_patterns(domain):
            by_type[pattern.pattern_type] = by_type.get(pattern.pattern_type, 0) + 1
        return {"total": sum(by_type.values()), "by_type": by_type}
