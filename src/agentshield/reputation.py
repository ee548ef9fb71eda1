from __future__ import annotations

import asyncio
import base64
import logging
from datetime import datetime, timezone

import httpx

from .config import get_settings
from .models import ReputationResult, WebRiskResult

logger = logging.getLogger(__name__)

VT_API_URL = "https://www.virustotal.com/api/v3"
WEB_RISK_URL = "https://webrisk.googleapis.com/v1/uris:search"
WEB_RISK_THREAT_TYPES = (
    "MALWARE",
    "SOCIAL_ENGINEERING",
    "UNWANTED_SOFTWARE",
    "SOCIAL_ENGINEERING_EXTENDED_COVERAGE",
)
WEB_RISK_LABELS = {
    "MALWARE": "Malware",
    "SOCIAL_ENGINEERING": "Phishing/Social Engineering",
    "UNWANTED_SOFTWARE": "Unwanted Software",
    "SOCIAL_ENGINEERING_EXTENDED_COVERAGE": "Phishing (Extended)",
}


def url_identifier(url: str) -> str:
    """VirusTotal URL id: unpadded url-safe base64 of the URL."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def summarize_reputation(result: ReputationResult) -> str:
    if not result.found:
        return "Not found in reputation database"
    if result.malicious > 0:
        extra = f" and {result.suspicious} as suspicious" if result.suspicious > 0 else ""
        return (
            f"FLAGGED by {result.malicious} security engine(s) as malicious{extra} "
            f"(out of {result.total_engines})"
        )
    if result.suspicious > 0:
        return f"Flagged by {result.suspicious} engine(s) as suspicious (out of {result.total_engines})"
    return f"Clean: 0 detections across {result.total_engines} security engines"


class VirusTotalClient:
    """Domain and URL reputation. Failures come back as ``available=False``."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.virus_total
        self._timeout = timeout if timeout is not None else settings.reputation_timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def lookup_domain(self, domain: str) -> ReputationResult:
        return await self._lookup(f"{VT_API_URL}/domains/{domain}", domain)

    async def lookup_url(self, url: str) -> ReputationResult:
        return await self._lookup(f"{VT_API_URL}/urls/{url_identifier(url)}", url[:60])

    async def _lookup(self, endpoint: str, label: str) -> ReputationResult:
        if not self._api_key:
            return ReputationResult(error="VIRUS_TOTAL not configured", summary="Reputation lookup not configured")
        try:
            payload = await asyncio.wait_for(self._fetch(endpoint), timeout=self._timeout)
            result = ReputationResult(available=True, found=False) if payload is None else self._parse(payload)
        except asyncio.TimeoutError:
            logger.warning("Reputation lookup timed out for %s", label)
            return ReputationResult(error="timeout", summary="Reputation lookup timed out")
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Reputation lookup failed for %s: %s", label, exc)
            return ReputationResult(error=str(exc) or type(exc).__name__, summary="Reputation lookup unavailable")

        if result.found:
            logger.info(
                "Reputation %s: %d malicious, %d suspicious out of %d engines",
                label,
                result.malicious,
                result.suspicious,
                result.total_engines,
            )
        result.summary = summarize_reputation(result)
        return result

    async def _fetch(self, endpoint: str) -> dict | None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(endpoint, headers={"x-apikey": self._api_key})
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("unexpected reputation payload")
        return payload

    @staticmethod
    def _parse(payload: dict) -> ReputationResult:
        attributes = (payload.get("data") or {}).get("attributes") or {}
        stats = attributes.get("last_analysis_stats") or {}
        malicious = int(stats.get("malicious") or 0)
        suspicious = int(stats.get("suspicious") or 0)
        harmless = int(stats.get("harmless") or 0)
        undetected = int(stats.get("undetected") or 0)
        analysed = attributes.get("last_analysis_date")
        return ReputationResult(
            available=True,
            found=True,
            malicious=malicious,
            suspicious=suspicious,
            harmless=harmless,
            undetected=undetected,
            total_engines=malicious + suspicious + harmless + undetected,
            reputation=int(attributes.get("reputation") or 0),
            categories={str(k): str(v) for k, v in (attributes.get("categories") or {}).items()},
            last_analysis_date=(
                datetime.fromtimestamp(analysed, tz=timezone.utc).isoformat()
                if isinstance(analysed, (int, float))
                else None
            ),
        )


class WebRiskClient:
    """URL threat lists. Fails open: errors read as safe with ``error`` set."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.google_api_key
        self._timeout = timeout if timeout is not None else settings.reputation_timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def check_url(self, url: str) -> WebRiskResult:
        if not self._api_key:
            return WebRiskResult(safe=True, summary="Web risk check not configured", error="GOOGLE_API_KEY not configured")
        params = [("threatTypes", t) for t in WEB_RISK_THREAT_TYPES]
        params += [("uri", url), ("key", self._api_key)]
        try:
            payload = await asyncio.wait_for(self._fetch(params), timeout=self._timeout)
            threat_types = self._parse(payload)
        except asyncio.TimeoutError:
            logger.warning("Web risk lookup timed out for %s", url[:60])
            return WebRiskResult(safe=True, summary="Web risk check timed out", error="timeout")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Web risk lookup failed for %s: %s", url[:60], exc)
            return WebRiskResult(safe=True, summary="Web risk check unavailable", error=str(exc))

        if not threat_types:
            return WebRiskResult(safe=True, available=True, summary="Clean: no threats found on web risk lists")
        labels = [WEB_RISK_LABELS.get(t, t) for t in threat_types]
        summary = f"DANGEROUS: web risk lists report {', '.join(labels)}"
        logger.info("Web risk %s: %s", url[:60], summary)
        return WebRiskResult(safe=False, threats=threat_types, summary=summary, available=True)

    async def _fetch(self, params: list[tuple[str, str]]) -> dict:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.get(WEB_RISK_URL, params=params)
            response.raise_for_status()
            payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("unexpected web risk payload")
        return payload

    @staticmethod
    def _parse(payload: dict) -> list[str]:
        threat = payload.get("threat") or {}
        if not isinstance(threat, dict):
            raise ValueError("unexpected web risk threat entry")
        types = threat.get("threatTypes") or []
        if not isinstance(types, list):
            raise ValueError("unexpected web risk threat types")
        return [str(t) for t in types]
