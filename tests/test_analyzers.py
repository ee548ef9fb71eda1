import json

import httpx
import pytest

from agentshield.analyzers import (
    AttachmentSafetyAnalyzer,
    DraftSafetyAnalyzer,
    EmailSafetyAnalyzer,
    MessageSafetyAnalyzer,
    SenderReputationAnalyzer,
    ThreadAnalyzer,
    UrlSafetyAnalyzer,
)
from agentshield.domain_intel import DomainIntelService
from agentshield.fusion import ITEM_UNASSESSED_EXPLANATION, UNAVAILABLE_EXPLANATION
from agentshield.models import (
    AttachmentCheckRequest,
    DmarcResult,
    DomainAgeResult,
    DomainIntelligence,
    DraftCheckRequest,
    EmailCheckRequest,
    MessageCheckRequest,
    ReputationResult,
    SenderCheckRequest,
    ThreadCheckRequest,
    UrlCheckRequest,
    UrlIntelligence,
    WebRiskResult,
)
from agentshield.reputation import VirusTotalClient, WebRiskClient


class StubIntel:
    """Domain intelligence service returning canned results."""

    def __init__(self, domain_intel=None, url_intel=None):
        self.domain_intel = domain_intel
        self.url_intel = url_intel or {}
        self.domains = []

    async def get_domain_intelligence(self, domain):
        self.domains.append(domain)
        return self.domain_intel

    async def check_url(self, url):
        return self.url_intel[url]


def reply(**data):
    return json.dumps(data)


def domain_intel(domain="vendor.com", dmarc="found", policy="reject", age_days=4000, malicious=0):
    return DomainIntelligence(
        domain=domain,
        dmarc=DmarcResult(status=dmarc, policy=policy if dmarc == "found" else None),
        domain_age=DomainAgeResult(available=True, registration_date="2014-01-01", age_days=age_days),
        reputation=ReputationResult(
            available=True, found=True, malicious=malicious, harmless=70 - malicious, total_engines=70,
            summary="FLAGGED" if malicious else "Clean",
        ),
        web_risk=WebRiskResult(safe=True, available=True, summary="Clean"),
    )


# Email -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_email_lure_overrides_safe_model(make_llm):
    llm = make_llm(reply(verdict="safe", risk_score=0.3, confidence=0.8, threats=[], recommendation="proceed"))
    analyzer = EmailSafetyAnalyzer(llm)
    request = EmailCheckRequest(email={
        "sender": "ap@unknown-vendor.io",
        "subject": "Re: Invoice",
        "body": "Invoice attached, see link.",
        "links": ["https://unknown-vendor.io/pay"],
    })
    result = await analyzer.analyze(request)
    assert result.verdict == "dangerous"
    assert result.risk_score >= 0.85
    assert result.recommendation == "do_not_act"
    assert {"FAKE_REPLY_THREAD", "LURE_EMAIL"} <= {t.type for t in result.threats}
    assert result.unsafe_actions


@pytest.mark.asyncio
async def test_email_prompt_carries_domain_intelligence_and_writes_back(make_llm, memory):
    llm = make_llm(reply(verdict="safe", risk_score=0.05, recommendation="proceed", safe_actions=["Reply"]))
    intel = StubIntel(domain_intel("partner.com"))
    analyzer = EmailSafetyAnalyzer(llm, intel=intel, memory=memory)
    request = EmailCheckRequest(
        email={"sender": "Pat <pat@partner.com>", "subject": "Lunch", "body": "Thursday at noon works."},
        context={"known_sender": True, "previous_correspondence": True},
    )
    result = await analyzer.analyze(request)
    await memory.writer.drain()

    assert result.verdict == "safe"
    assert result.safe_actions == ["Reply"]
    assert result.domain_intelligence.dmarc_policy == "reject"
    prompt = llm._client.messages.calls[0]["messages"][0]["content"]
    assert "DOMAIN INTELLIGENCE for partner.com" in prompt

    rep = await memory.store.get_domain_reputation("partner.com")
    assert rep.total_checks == 1
    assert rep.safe_count == 1
    assert rep.dmarc_status == "found"


@pytest.mark.asyncio
async def test_email_with_flagged_sender_domain(offline_llm):
    analyzer = EmailSafetyAnalyzer(offline_llm, intel=StubIntel(domain_intel("evil.example", malicious=4)))
    request = EmailCheckRequest(
        email={"sender": "it@evil.example", "subject": "Mailbox", "body": "Your mailbox is fine."},
        context={"known_sender": True, "previous_correspondence": True},
    )
    result = await analyzer.analyze(request)
    assert result.verdict == "dangerous"
    assert result.risk_score >= 0.95
    assert result.ai_analysis == "unavailable"
    assert result.confidence <= 0.6


# URLs ----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ip_url_flagged_by_reputation(offline_llm):
    def vt_handler(request):
        return httpx.Response(
            200,
            json={"data": {"attributes": {"last_analysis_stats": {"malicious": 3, "harmless": 60, "undetected": 7}}}},
        )

    intel = DomainIntelService(
        virustotal=VirusTotalClient("key", timeout=2, transport=httpx.MockTransport(vt_handler)),
        web_risk=WebRiskClient(""),
    )
    analyzer = UrlSafetyAnalyzer(offline_llm, intel=intel)
    result = await analyzer.analyze(UrlCheckRequest(urls=["http://192.168.1.1/login"]))

    assert result.verdict == "dangerous"
    assert result.risk_score >= 0.95
    assert result.urls[0].verdict == "dangerous"
    assert "REPUTATION_MALICIOUS" in {t.type for t in result.urls[0].threats}


@pytest.mark.asyncio
async def test_overall_url_verdict_is_never_milder_than_worst_item(make_llm):
    llm = make_llm(reply(
        verdict="safe",
        risk_score=0.1,
        recommendation="safe_to_visit",
        urls=[
            {"url": "https://docs.example.com/", "verdict": "safe", "risk_score": 0.05, "recommendation": "safe_to_visit"},
            {"url": "javascript:alert(1)", "verdict": "safe", "risk_score": 0.05},
        ],
    ))
    result = await UrlSafetyAnalyzer(llm).analyze(UrlCheckRequest(urls=["https://docs.example.com/", "javascript:alert(1)"]))
    by_url = {item.url: item for item in result.urls}
    assert by_url["https://docs.example.com/"].verdict == "safe"
    assert by_url["javascript:alert(1)"].verdict == "dangerous"
    assert result.verdict == "dangerous"
    assert result.recommendation == "do_not_visit"


@pytest.mark.asyncio
async def test_url_without_item_assessment_says_so(make_llm):
    llm = make_llm(reply(verdict="safe", risk_score=0.1, recommendation="safe_to_visit", explanation="Looks fine."))
    result = await UrlSafetyAnalyzer(llm).analyze(UrlCheckRequest(urls=["https://docs.example.com/"]))
    assert result.ai_analysis == "complete"
    assert result.explanation == "Looks fine."
    assert result.urls[0].explanation == ITEM_UNASSESSED_EXPLANATION
    assert result.urls[0].explanation != UNAVAILABLE_EXPLANATION


# Attachments ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_attachment_lists(offline_llm):
    request = AttachmentCheckRequest(attachments=[
        {"name": "invoice.pdf.exe", "size": 2048},
        {"name": "notes.txt", "size": 10, "mime_type": "text/plain"},
        {"name": "q3.xlsm", "size": 999},
    ])
    result = await AttachmentSafetyAnalyzer(offline_llm).analyze(request)
    assert result.verdict == "dangerous"
    assert result.do_not_process == ["invoice.pdf.exe"]
    assert result.safe_to_process == ["notes.txt"]
    by_name = {a.filename: a for a in result.attachments}
    assert by_name["q3.xlsm"].verdict == "suspicious"
    assert by_name["invoice.pdf.exe"].recommendation == "do_not_open"


# Messages --------------------------------------------------------------------


@pytest.mark.asyncio
async def test_message_otp_request_is_dangerous(make_llm):
    llm = make_llm(reply(verdict="suspicious", risk_score=0.6))
    request = MessageCheckRequest(
        platform="WhatsApp",
        sender="+15550100",
        messages=[{"body": "Hi! I sent you a verification code by mistake, can you forward the code?"}],
    )
    result = await MessageSafetyAnalyzer(llm).analyze(request)
    assert result.verdict == "dangerous"
    assert result.recommendation == "do_not_engage"
    assert result.platform == "whatsapp"
    assert "saved number" in result.platform_tips


@pytest.mark.asyncio
async def test_message_urls_are_looked_up(offline_llm):
    url = "https://pay-toll.example/fee"
    flagged = UrlIntelligence(
        url=url,
        reputation=ReputationResult(),
        web_risk=WebRiskResult(safe=False, threats=["SOCIAL_ENGINEERING"], available=True, summary="DANGEROUS"),
    )
    intel = StubIntel(url_intel={url: flagged})
    request = MessageCheckRequest(platform="sms", sender="12345", messages=[{"body": f"Unpaid toll. Pay at {url} today"}])
    result = await MessageSafetyAnalyzer(offline_llm, intel=intel).analyze(request)
    assert result.verdict == "dangerous"
    assert "WEB_RISK_FLAGGED" in {t.type for t in result.threats}


# Drafts ------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_draft_with_ssn_is_blocked(make_llm):
    llm = make_llm(reply(verdict="safe_to_send", risk_score=0.1, recommendation="safe_to_send"))
    request = DraftCheckRequest(draft_to="hr@vendor.com", draft_body="Sure, my SSN is 123-45-6789.")
    result = await DraftSafetyAnalyzer(llm).analyze(request)
    assert result.verdict == "do_not_send"
    assert result.recommendation == "do_not_send"
    assert "Remove the Social Security Number from the draft" in result.suggested_revisions


# Senders -----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sender_new_domain_with_reply_to_mismatch(make_llm):
    llm = make_llm(reply(verdict="trusted", trust_score=0.9, bec_probability=0.1, recommendation="trust_sender"))
    intel = StubIntel(domain_intel("acme-payments.co", dmarc="missing", age_days=9))
    request = SenderCheckRequest(email="ceo@acme-payments.co", display_name="ACME CEO", reply_to="ceo.acme@gmail.com")
    result = await SenderReputationAnalyzer(llm, intel=intel).analyze(request)

    assert result.verdict == "suspicious"
    assert result.trust_score <= 0.3
    assert result.recommendation == "verify_identity"
    assert result.verification_steps
    assert {"NO_DMARC_POLICY", "DOMAIN_AGE_RISK", "REPLY_TO_MISMATCH"} <= {t.type for t in result.threats}
    assert result.domain_intelligence.domain_age_days == 9


@pytest.mark.asyncio
async def test_sender_flagged_domain_raises_bec(offline_llm):
    intel = StubIntel(domain_intel("evil.example", malicious=6))
    result = await SenderReputationAnalyzer(offline_llm, intel=intel).analyze(SenderCheckRequest(email="x@evil.example"))
    assert result.verdict == "likely_fraudulent"
    assert result.trust_score <= 0.05
    assert result.bec_probability >= 0.9


# Threads ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_thread_analysis_uses_model_progression(make_llm):
    llm = make_llm(reply(
        verdict="suspicious",
        risk_score=0.65,
        thread_progression="Friendly intro, then a sudden payment request.",
        threats=[{"type": "payment_redirect", "severity": "high", "evidence_messages": [2]}],
    ))
    request = ThreadCheckRequest(messages=[
        {"sender": "sam@vendor.com", "body": "Nice to meet you."},
        {"sender": "sam@vendor.com", "body": "Please update the wire transfer details."},
    ])
    result = await ThreadAnalyzer(llm).analyze(request)
    assert result.thread_progression.startswith("Friendly intro")
    harvesting = next(t for t in result.threats if t.type == "INFORMATION_HARVESTING")
    assert harvesting.evidence_messages == [2]
    assert next(t for t in result.threats if t.type == "PAYMENT_REDIRECT").source == "model"
