from datetime import date, timedelta

import httpx
import pytest

from agentshield import heuristics
from agentshield.domain_intel import DomainIntelService, RdapClient, normalize_domain
from agentshield.models import DmarcResult, SenderCheckRequest
from agentshield.reputation import VirusTotalClient, WebRiskClient


class StubDmarc:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def lookup(self, domain):
        self.calls += 1
        return self.result


def rdap_payload(registered: date):
    return {
        "events": [
            {"eventAction": "last changed", "eventDate": "2024-01-01T00:00:00Z"},
            {"eventAction": "registration", "eventDate": f"{registered.isoformat()}T04:00:00Z"},
        ],
        "entities": [
            {"roles": ["registrant"], "handle": "OWNER"},
            {"roles": ["registrar"], "handle": "292", "vcardArray": ["vcard", [["version", {}, "text", "4.0"], ["fn", {}, "text", "MarkMonitor Inc."]]]},
        ],
    }


def rdap_client(payload=None, status=200):
    def handler(request):
        return httpx.Response(status, json=payload or {})

    return RdapClient(timeout=2, transport=httpx.MockTransport(handler))


def offline_service(dmarc, rdap, memory=None, vt=None, web_risk=None):
    return DomainIntelService(
        dmarc=dmarc,
        rdap=rdap,
        virustotal=vt or VirusTotalClient(""),
        web_risk=web_risk or WebRiskClient(""),
        memory=memory,
    )


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Jane <jane@Mail.Example.co.uk>", "example.co.uk"),
        ("https://login.paypal.com/x", "paypal.com"),
        ("sub.domain.example.com", "example.com"),
        ("localhost", "localhost"),
    ],
)
def test_normalize_domain(value, expected):
    assert normalize_domain(value) == expected


def test_rdap_parse_registration_and_registrar():
    parsed = RdapClient.parse(rdap_payload(date(2014, 3, 1)), today=date(2025, 3, 1))
    assert parsed.available
    assert parsed.registration_date == "2014-03-01"
    assert parsed.age_days == 4018
    assert parsed.registrar == "MarkMonitor Inc."


def test_rdap_parse_without_registration_event():
    parsed = RdapClient.parse({"events": [{"eventAction": "expiration", "eventDate": "2030-01-01"}]})
    assert not parsed.available
    assert parsed.age_days is None


@pytest.mark.asyncio
async def test_rdap_failure_degrades_to_unavailable():
    result = await rdap_client(status=500).lookup("example.com")
    assert not result.available


@pytest.mark.asyncio
async def test_strict_dmarc_and_old_domain_produce_no_sender_issues():
    registered = date.today() - timedelta(days=4000)
    service = offline_service(
        StubDmarc(DmarcResult(status="found", policy="reject", record="v=DMARC1; p=reject; rua=mailto:d@example.com")),
        rdap_client(rdap_payload(registered)),
    )
    intel = await service.get_domain_intelligence("example.com")
    assert intel.dmarc.exists
    assert intel.domain_age.age_days >= 3999

    signals = heuristics.check_sender(SenderCheckRequest(email="finance@example.com"), intel)
    assert not {"DOMAIN_AGE_RISK", "NO_DMARC_POLICY", "AUTHENTICATION_FAILURE"} & {s.type for s in signals}


@pytest.mark.asyncio
async def test_domain_intelligence_is_memoized():
    dmarc = StubDmarc(DmarcResult(status="missing"))
    service = offline_service(dmarc, rdap_client(status=404))
    first = await service.get_domain_intelligence("Mail.Example.com")
    second = await service.get_domain_intelligence("example.com")
    assert first is second
    assert dmarc.calls == 1
    assert not first.reputation.available
    assert first.web_risk.safe


@pytest.mark.asyncio
async def test_live_lookups_are_written_back_and_later_served_from_store(memory):
    hits = {"vt": 0}

    def vt_handler(request):
        hits["vt"] += 1
        return httpx.Response(200, json={"data": {"attributes": {"last_analysis_stats": {"malicious": 5, "harmless": 65}}}})

    vt = VirusTotalClient("key", timeout=2, transport=httpx.MockTransport(vt_handler))
    for _ in range(3):
        service = offline_service(StubDmarc(DmarcResult(status="missing")), rdap_client(status=404), memory=memory, vt=vt)
        await service.get_domain_intelligence("evil.example")
        await memory.writer.drain()
    assert hits["vt"] == 3

    service = offline_service(StubDmarc(DmarcResult(status="missing")), rdap_client(status=404), memory=memory, vt=vt)
    intel = await service.get_domain_intelligence("evil.example")
    assert hits["vt"] == 3
    assert intel.reputation.cached
    assert intel.reputation.summary.startswith("[cached] FLAGGED by 5")
    assert intel.reputation.malicious == 5


@pytest.mark.asyncio
async def test_check_url_combines_reputation_and_web_risk():
    vt = VirusTotalClient(
        "key",
        timeout=2,
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": {"attributes": {"last_analysis_stats": {"harmless": 70}}}})
        ),
    )
    web_risk = WebRiskClient(
        "key",
        timeout=2,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"threat": {"threatTypes": ["MALWARE"]}})),
    )
    service = offline_service(StubDmarc(DmarcResult()), rdap_client(status=404), vt=vt, web_risk=web_risk)
    intel = await service.check_url(" https://files.example/setup ")
    assert intel.url == "https://files.example/setup"
    assert intel.reputation.verdict == "safe"
    assert not intel.web_risk.safe


class BrokenDmarc:
    async def lookup(self, domain):
        raise RuntimeError("resolver exploded")


class BrokenVirusTotal(VirusTotalClient):
    async def lookup_domain(self, domain):
        raise RuntimeError("client bug")

    async def lookup_url(self, url):
        raise RuntimeError("client bug")


@pytest.mark.asyncio
async def test_one_failing_source_keeps_the_others_and_skips_memo():
    registered = date.today() - timedelta(days=4000)
    service = offline_service(BrokenDmarc(), rdap_client(rdap_payload(registered)), vt=BrokenVirusTotal("key"))
    intel = await service.get_domain_intelligence("example.com")
    assert intel.dmarc.status == "unavailable"
    assert intel.domain_age.age_days >= 3999
    assert not intel.reputation.available
    assert intel.reputation.error == "client bug"
    assert intel.web_risk.safe

    again = await service.get_domain_intelligence("example.com")
    assert again is not intel


@pytest.mark.asyncio
async def test_check_url_survives_a_failing_source():
    web_risk = WebRiskClient(
        "key",
        timeout=2,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"threat": {"threatTypes": ["MALWARE"]}})),
    )
    service = offline_service(StubDmarc(DmarcResult()), rdap_client(status=404), vt=BrokenVirusTotal("key"), web_risk=web_risk)
    intel = await service.check_url("https://files.example/setup")
    assert not intel.reputation.available
    assert not intel.web_risk.safe
