from contextlib import asynccontextmanager

import httpx
import pytest

import main
from agentshield.engine import ThreatEngine
from agentshield.governor import ConcurrencyGovernor
from agentshield.intel_cache import IntelWriter, ThreatMemory
from agentshield.llm_adapter import JudgmentModelAdapter
from agentshield.media_authenticity import MediaAuthenticityAnalyzer
from agentshield.media_classifier import ImageClassification, VideoClassification
from agentshield.models import (
    DmarcResult,
    DomainAgeResult,
    DomainIntelligence,
    ReputationResult,
    WebRiskResult,
)
from agentshield.storage import IntelStore, StorageManager


class CleanIntel:
    async def get_domain_intelligence(self, domain):
        return DomainIntelligence(
            domain=domain,
            dmarc=DmarcResult(status="found", policy="reject"),
            domain_age=DomainAgeResult(available=True, age_days=5000),
            reputation=ReputationResult(available=True, found=True, harmless=70, total_engines=70, summary="Clean"),
            web_risk=WebRiskResult(safe=True, available=True, summary="Clean"),
        )

    async def check_url(self, url):
        raise AssertionError("no URL lookups expected")


class VideoClassifier:
    async def classify_image(self, url):
        return ImageClassification(available=False)

    async def classify_video(self, url):
        return VideoClassification(available=True, frame_scores=[0.1, 0.1])


@asynccontextmanager
async def service(media_permits=3, raise_app_exceptions=True):
    memory = ThreatMemory(IntelStore(StorageManager()), IntelWriter())
    engine = ThreatEngine(
        llm=JudgmentModelAdapter(None),
        intel=CleanIntel(),
        memory=memory,
        media=MediaAuthenticityAnalyzer(classifier=VideoClassifier(), governor=ConcurrencyGovernor(media_permits)),
    )
    main.app.state.engine = engine
    transport = httpx.ASGITransport(app=main.app, raise_app_exceptions=raise_app_exceptions)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client, engine
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_root_lists_endpoints():
    async with service() as (client, _):
        response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["endpoints"]["media"] == "POST /v1/check/media"


@pytest.mark.asyncio
async def test_health_reports_memory_storage_and_sources():
    async with service() as (client, _):
        response = await client.get("/health")
    body = response.json()
    assert body["status"] == "healthy"
    assert body["storage"] == "memory"
    assert body["sources"]["virustotal"] is False


@pytest.mark.asyncio
async def test_email_endpoint_returns_outcome_envelope():
    async with service() as (client, _):
        response = await client.post("/v1/check/email", json={
            "email": {
                "sender": "ap@unknown-vendor.io",
                "subject": "Re: Invoice",
                "body": "Invoice attached, see link.",
                "links": ["https://unknown-vendor.io/pay"],
            }
        })
    assert response.status_code == 200
    body = response.json()
    assert body["duration_ms"] >= 0
    assert body["result"]["verdict"] == "suspicious"
    assert body["result"]["ai_analysis"] == "unavailable"


@pytest.mark.asyncio
async def test_invalid_request_is_rejected():
    async with service() as (client, _):
        response = await client.post("/v1/check/urls", json={"urls": []})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_triage_endpoint():
    async with service() as (client, _):
        response = await client.post("/v1/triage", json={"body": "Your parcel is held", "platform": "sms"})
    assert response.status_code == 200
    assert response.json()["recommended_tools"][0]["tool"] == "check_message_safety"


@pytest.mark.asyncio
async def test_media_endpoint():
    async with service() as (client, _):
        response = await client.post("/v1/check/media", json={"media_url": "https://cdn.example/clip.mp4"})
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["media_type"] == "video"
    assert result["verdict"] == "likely_authentic"


@pytest.mark.asyncio
async def test_media_overload_maps_to_429_with_retry_after():
    async with service(media_permits=1) as (client, engine):
        assert engine.media.governor.try_acquire()
        response = await client.post("/v1/check/media", json={"media_url": "https://cdn.example/clip.mp4"})
        engine.media.governor.release()
        metrics = (await client.get("/metrics")).json()
    assert response.status_code == 429
    assert response.headers["retry-after"] == "2"
    assert response.json()["retryable"] is True
    assert metrics["media_permits"]["rejected"] == 1
    assert metrics["metrics"]["rejected_requests"] >= 1


@pytest.mark.asyncio
async def test_metrics_count_requests_by_tool():
    async with service() as (client, _):
        before = (await client.get("/metrics")).json()["metrics"]["requests_by_tool"].get("attachments", 0)
        await client.post("/v1/check/attachments", json={"attachments": [{"name": "notes.txt", "size": 4}]})
        body = (await client.get("/metrics")).json()
    assert body["metrics"]["requests_by_tool"]["attachments"] == before + 1
    assert body["media_permits"]["capacity"] == 3
    assert "submitted" in body["intel_writes"]


@pytest.mark.asyncio
async def test_unhandled_error_counts_as_failed_request():
    async def broken(request):
        raise RuntimeError("engine fault")

    async with service(raise_app_exceptions=False) as (client, engine):
        engine.check_urls = broken
        before = (await client.get("/metrics")).json()["metrics"]
        response = await client.post("/v1/check/urls", json={"urls": ["https://example.com/"]})
        after = (await client.get("/metrics")).json()["metrics"]
    assert response.status_code == 500
    assert response.json()["error"] == "Internal server error"
    assert after["failed_requests"] == before["failed_requests"] + 1
    assert after["requests_by_tool"]["urls"] == before["requests_by_tool"].get("urls", 0) + 1
