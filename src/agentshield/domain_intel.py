"""
Domain intelligence: DMARC policy, registration age, reputation and web risk.

Each source is raced against its own timeout and degrades to a neutral
``available=False`` result. Assembled results are memoized in-process; stored
reputation records confirmed often enough replace the live lookup entirely.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, timezone
from typing import Any

import dns.asyncresolver
import dns.exception
import dns.resolver
import httpx
import tldextract

from .config import get_settings
from .intel_cache import TTLCache, ThreatMemory
from .models import (
    DmarcResult,
    DomainAgeResult,
    DomainIntelligence,
    IntelligenceRecord,
    ReputationResult,
    UrlIntelligence,
    WebRiskResult,
)
from .reputation import VirusTotalClient, WebRiskClient

logger = logging.getLogger(__name__)

DMARC_POLICY = re.compile(r"p=(reject|quarantine|none)", re.IGNORECASE)
RDAP_URL = "https://rdap.org/domain/{domain}"

# Bundled public suffix snapshot; no network fetch at runtime.
_extract = tldextract.TLDExtract(suffix_list_urls=())


def normalize_domain(value: str) -> str:
    """Registrable domain for a host, URL or e-mail address."""
    value = (value or "").strip().lower()
    if "@" in value:
        value = value.rsplit("@", 1)[1].strip(">").strip()
    parsed = _extract(value)
    if parsed.domain and parsed.suffix:
        return f"{parsed.domain}.{parsed.suffix}"
    return value.rstrip(".")


class DmarcChecker:
    def __init__(self, *, timeout: float | None = None, resolver: dns.asyncresolver.Resolver | None = None):
        self._timeout = timeout if timeout is not None else get_settings().dns_timeout
        self._resolver = resolver

    async def lookup(self, domain: str) -> DmarcResult:
        resolver = self._resolver or dns.asyncresolver.Resolver()
        try:
            answer = await asyncio.wait_for(
                resolver.resolve(f"_dmarc.{domain}", "TXT", lifetime=self._timeout),
                timeout=self._timeout,
            )
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return DmarcResult(status="missing")
        except (asyncio.TimeoutError, dns.exception.DNSException) as exc:
            logger.warning("DMARC lookup unavailable for %s: %s", domain, exc)
            return DmarcResult(status="unavailable")

        records = [b"".join(rdata.strings).decode("utf-8", "replace") for rdata in answer]
        record = next((r for r in records if r.startswith("v=DMARC1")), None)
        if record is None:
            return DmarcResult(status="missing")
        match = DMARC_POLICY.search(record)
        return DmarcResult(status="found", policy=match.group(1).lower() if match else None, record=record)


class RdapClient:
    def __init__(self, *, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._timeout = timeout if timeout is not None else get_settings().rdap_timeout
        self._transport = transport

    async def lookup(self, domain: str) -> DomainAgeResult:
        try:
            payload = await asyncio.wait_for(self._fetch(domain), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("RDAP lookup timed out for %s", domain)
            return DomainAgeResult()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("RDAP lookup failed for %s: %s", domain, exc)
            return DomainAgeResult()
        return self.parse(payload)

    async def _fetch(self, domain: str) -> dict:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(
                RDAP_URL.format(domain=domain),
                headers={"Accept": "application/rdap+json"},
                follow_redirects=True,
            )
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("unexpected RDAP payload")
        return payload

    @staticmethod
    def parse(payload: dict, today: date | None = None) -> DomainAgeResult:
        registration_date = None
        for event in payload.get("events") or []:
            if isinstance(event, dict) and event.get("eventAction") == "registration" and event.get("eventDate"):
                registration_date = str(event["eventDate"]).split("T")[0]
                break

        registrar = None
        for entity in payload.get("entities") or []:
            if not isinstance(entity, dict) or "registrar" not in (entity.get("roles") or []):
                continue
            vcard = entity.get("vcardArray") or []
            fields = vcard[1] if len(vcard) > 1 and isinstance(vcard[1], list) else []
            fn = next((f for f in fields if isinstance(f, list) and f and f[0] == "fn"), None)
            registrar = (fn[3] if fn and len(fn) > 3 else None) or entity.get("handle")
            break

        age_days = None
        if registration_date:
            try:
                registered = date.fromisoformat(registration_date)
            except ValueError:
                registration_date = None
            else:
                age_days = ((today or datetime.now(timezone.utc).date()) - registered).days

        return DomainAgeResult(
            available=registration_date is not None,
            registration_date=registration_date,
            age_days=age_days,
            registrar=registrar,
        )


def _reputation_from_record(record: IntelligenceRecord) -> ReputationResult:
    raw = record.raw_data or {}
    return ReputationResult(
        available=True,
        found=True,
        malicious=int(raw.get("malicious", 1 if "malware" in record.threat_types else 0)),
        suspicious=int(raw.get("suspicious", 1 if record.verdict == "suspicious" else 0)),
        total_engines=int(raw.get("total_engines", 0)),
        summary=f"[cached] {record.summary}",
        cached=True,
    )


def _web_risk_from_record(record: IntelligenceRecord) -> WebRiskResult:
    return WebRiskResult(
        safe=record.verdict == "safe",
        threats=list(record.threat_types),
        summary=f"[cached] {record.summary}",
        available=True,
        cached=True,
    )


def _settled(result: Any, fallback: Any, source: str, subject: str) -> Any:
    """A source that raised contributes its neutral result instead."""
    if isinstance(result, Exception):
        logger.error("%s lookup raised for %s: %s", source, subject, result)
        if hasattr(fallback, "error"):
            fallback.error = str(result) or type(result).__name__
        return fallback
    return result


class DomainIntelService:
    def __init__(
        self,
        *,
        dmarc: DmarcChecker | None = None,
        rdap: RdapClient | None = None,
        virustotal: VirusTotalClient | None = None,
        web_risk: WebRiskClient | None = None,
        memory: ThreatMemory | None = None,
        cache: TTLCache | None = None,
    ) -> None:
        settings = get_settings()
        self.dmarc = dmarc or DmarcChecker()
        self.rdap = rdap or RdapClient()
        self.virustotal = virustotal or VirusTotalClient()
        self.web_risk = web_risk or WebRiskClient()
        self.memory = memory
        self.cache = cache or TTLCache(maxsize=settings.domain_cache_size, ttl=settings.domain_cache_ttl)

    async def _stored(self, indicator_type: str, value: str, source: str) -> IntelligenceRecord | None:
        if self.memory is None:
            return None
        return await self.memory.lookup_trusted(indicator_type, value, source)

    async def _reputation(self, indicator_type: str, value: str) -> ReputationResult:
        record = await self._stored(indicator_type, value, "virustotal")
        if record is not None:
            return _reputation_from_record(record)
        if indicator_type == "domain":
            result = await self.virustotal.lookup_domain(value)
        else:
            result = await self.virustotal.lookup_url(value)
        if self.memory is not None:
            self.memory.store_reputation_result(indicator_type, value, result)
        return result

    async def _web_risk(self, indicator_type: str, value: str, url: str) -> WebRiskResult:
        record = await self._stored(indicator_type, value, "webrisk")
        if record is not None:
            return _web_risk_from_record(record)
        result = await self.web_risk.check_url(url)
        if self.memory is not None:
            self.memory.store_web_risk_result(indicator_type, value, result)
        return result

    async def get_domain_intelligence(self, domain: str) -> DomainIntelligence:
        domain = normalize_domain(domain)
        key = f"domain:{domain}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        results = await asyncio.gather(
            self.dmarc.lookup(domain),
            self.rdap.lookup(domain),
            self._reputation("domain", domain),
            self._web_risk("domain", domain, f"https://{domain}/"),
            return_exceptions=True,
        )
        dmarc, age, reputation, web_risk = (
            _settled(results[0], DmarcResult(), "dmarc", domain),
            _settled(results[1], DomainAgeResult(), "rdap", domain),
            _settled(results[2], ReputationResult(summary="Reputation lookup unavailable"), "reputation", domain),
            _settled(results[3], WebRiskResult(safe=True, summary="Web risk check unavailable"), "web risk", domain),
        )
        intel = DomainIntelligence(domain=domain, dmarc=dmarc, domain_age=age, reputation=reputation, web_risk=web_risk)
        if not any(isinstance(r, Exception) for r in results):
            self.cache.set(key, intel)
        return intel

    async def check_url(self, url: str) -> UrlIntelligence:
        url = url.strip()
        key = f"url:{url}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        results = await asyncio.gather(
            self._reputation("url", url),
            self._web_risk("url", url, url),
            return_exceptions=True,
        )
        intel = UrlIntelligence(
            url=url,
            reputation=_settled(results[0], ReputationResult(summary="Reputation lookup unavailable"), "reputation", url[:60]),
            web_risk=_settled(results[1], WebRiskResult(safe=True, summary="Web risk check unavailable"), "web risk", url[:60]),
        )
        if not any(isinstance(r, Exception) for r in results):
            self.cache.set(key, intel)
        return intel
