from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Optional

from . import heuristics, prompts
from .domain_intel import DomainIntelService
from .fusion import (
    ATTACHMENT_POLICY,
    DRAFT_POLICY,
    EMAIL_POLICY,
    MESSAGE_POLICY,
    SENDER_POLICY,
    THREAD_POLICY,
    URL_POLICY,
    FusionOutcome,
    FusionPolicy,
    ITEM_UNASSESSED_EXPLANATION,
    fuse,
    intelligence_signals,
)
from .intel_cache import ThreatMemory, build_historical_context
from .llm_adapter import Judgment, JudgmentModelAdapter, as_list, as_text
from .models import (
    AttachmentCheckRequest,
    AttachmentSafetyResult,
    AttachmentVerdict,
    DomainContext,
    DomainIntelligence,
    DomainIntelSummary,
    DraftCheckRequest,
    DraftSafetyResult,
    EmailCheckRequest,
    EmailSafetyResult,
    MessageCheckRequest,
    MessageSafetyResult,
    SenderCheckRequest,
    SenderReputationResult,
    ThreadAnalysisResult,
    ThreadCheckRequest,
    ThreatSignal,
    UrlCheckRequest,
    UrlIntelligence,
    UrlSafetyResult,
    UrlVerdict,
)
from .verdicts import clamp_score

logger = logging.getLogger(__name__)

MAX_MESSAGE_URLS = 5

DEFAULT_UNSAFE_ACTIONS = {
    "dangerous": ["Click links", "Open attachments", "Reply with personal or financial information"],
    "suspicious": ["Act on requests without independent verification"],
}

PLATFORM_TIPS = {
    "sms": "Carriers and delivery services never ask for payment or codes by text; contact them through their official app.",
    "imessage": "Blue bubbles do not prove identity; verify unexpected requests through a known number.",
    "whatsapp": "Check for 'new number' stories and verify by calling the contact's saved number.",
    "facebook_messenger": "Compromised friend accounts are common; confirm unusual requests by another channel.",
    "instagram_dm": "Brand and influencer accounts do not request payments or login codes in DMs.",
    "telegram": "Admins never DM first; treat investment or support offers as scams.",
    "slack": "Verify requests for credentials or payments with the colleague directly.",
    "discord": "Free Nitro and QR login links are common account-takeover lures.",
    "linkedin": "Be cautious of recruiters moving the conversation off-platform or sending files.",
    "signal": "Safety numbers changing unexpectedly may indicate a new device; verify in person.",
}


def _strings(value: Any) -> list[str]:
    return [item for item in as_list(value) if isinstance(item, str)]


def _unsafe_defaults(verdict: str) -> list[str]:
    return list(DEFAULT_UNSAFE_ACTIONS.get(verdict, []))


def summarize_domain_intel(intel: DomainIntelligence | None) -> DomainIntelSummary | None:
    if intel is None:
        return None
    return DomainIntelSummary(
        domain=intel.domain,
        dmarc_exists=intel.dmarc.exists,
        dmarc_status=intel.dmarc.status,
        dmarc_policy=intel.dmarc.policy,
        dmarc_record=intel.dmarc.record,
        domain_age_days=intel.domain_age.age_days,
        registration_date=intel.domain_age.registration_date,
        registrar=intel.domain_age.registrar,
        reputation_summary=intel.reputation.summary,
        reputation_malicious=intel.reputation.malicious,
        reputation_suspicious=intel.reputation.suspicious,
        reputation_total_engines=intel.reputation.total_engines,
        web_risk_summary=intel.web_risk.summary,
    )


class ContentAnalyzer:
    """Shared plumbing: model adapter, intelligence service and threat memory."""

    tool = ""
    policy: FusionPolicy

    def __init__(
        self,
        llm: JudgmentModelAdapter,
        *,
        intel: Optional[DomainIntelService] = None,
        memory: Optional[ThreatMemory] = None,
    ) -> None:
        self._llm = llm
        self._intel = intel
        self._memory = memory

    async def _judge(self, prompt: str) -> Judgment:
        return await self._llm.judge(
            prompts.SYSTEM,
            prompt,
            tool=self.tool,
            fallback=self.policy.fallback_judgment(),
        )

    async def _domain_intel(self, domain: str) -> Optional[DomainIntelligence]:
        if self._intel is None or not domain:
            return None
        try:
            return await self._intel.get_domain_intelligence(domain)
        except Exception as exc:
            logger.error("Domain intelligence failed for %s: %s", domain, exc)
            return None

    async def _domain_context(self, domain: str) -> Optional[DomainContext]:
        if self._memory is None or not domain:
            return None
        return await self._memory.get_domain_context(domain)

    async def _url_intel(self, urls: Sequence[str]) -> dict[str, UrlIntelligence]:
        if self._intel is None or not urls:
            return {}
        results = await asyncio.gather(*(self._intel.check_url(u) for u in urls), return_exceptions=True)
        intel = {}
        for url, result in zip(urls, results, strict=False):
            if isinstance(result, UrlIntelligence):
                intel[url] = result
            else:
                logger.error("URL intelligence failed for %s: %s", url[:60], result)
        return intel

    @staticmethod
    def _url_signals(intel: dict[str, UrlIntelligence]) -> dict[str, list[ThreatSignal]]:
        return {
            url: intelligence_signals(item.reputation, item.web_risk, url[:80])
            for url, item in intel.items()
        }


class EmailSafetyAnalyzer(ContentAnalyzer):
    tool = "check_email_safety"
    policy = EMAIL_POLICY

    async def analyze(self, request: EmailCheckRequest) -> EmailSafetyResult:
        heuristic = heuristics.check_email(request)
        domain = heuristics.email_domain(request.email.sender)
        intel, context = await asyncio.gather(self._domain_intel(domain), self._domain_context(domain))
        intel_signals = intelligence_signals(intel.reputation, intel.web_risk, domain) if intel else []

        intelligence = "\n".join(
            block for block in (prompts.domain_intel_block(intel), build_historical_context(context)) if block
        )
        judgment = await self._judge(prompts.email_prompt(request, intelligence))
        outcome = fuse(judgment, heuristic, intel_signals, self.policy)

        result = EmailSafetyResult(
            **outcome.base_fields(),
            safe_actions=_strings(outcome.data.get("safe_actions")),
            unsafe_actions=_strings(outcome.data.get("unsafe_actions")) or _unsafe_defaults(outcome.verdict),
            domain_intelligence=summarize_domain_intel(intel),
        )
        self._write_back(request, domain, heuristic, outcome, intel)
        return result

    def _write_back(
        self,
        request: EmailCheckRequest,
        domain: str,
        heuristic: list[ThreatSignal],
        outcome: FusionOutcome,
        intel: Optional[DomainIntelligence],
    ) -> None:
        if self._memory is None or not domain:
            return
        self._memory.record_scam_detection(
            heuristic,
            sender_domain=domain,
            verdict=outcome.verdict,
            risk_score=outcome.risk_score,
            tool_name=self.tool,
            subject=request.email.subject,
        )
        extra: dict[str, Any] = {}
        if intel is not None:
            extra["dmarc_status"] = intel.dmarc.status
            if intel.domain_age.age_days is not None:
                extra["domain_age_days"] = intel.domain_age.age_days
            if intel.reputation.available and not intel.reputation.cached:
                extra["vt_malicious_count"] = intel.reputation.malicious
                extra["vt_suspicious_count"] = intel.reputation.suspicious
            if intel.web_risk.available:
                extra["web_risk_flag_count"] = 0 if intel.web_risk.safe else 1
        self._memory.update_domain_reputation(domain, outcome.verdict, outcome.risk_score, **extra)


class UrlSafetyAnalyzer(ContentAnalyzer):
    tool = "check_url_safety"
    policy = URL_POLICY

    async def analyze(self, request: UrlCheckRequest) -> UrlSafetyResult:
        urls = [u.strip() for u in request.urls[:prompts.MAX_ITEMS] if u.strip()]
        per_url_heuristics = heuristics.check_urls(urls)
        # Lookups only make sense for fetchable http(s) URLs.
        lookups = [u for u in urls if u.lower().startswith(("http://", "https://"))]
        url_intel = await self._url_intel(lookups)
        per_url_intel = self._url_signals(url_intel)

        judgment = await self._judge(prompts.url_prompt(urls, prompts.url_intel_block(list(url_intel.values()))))
        outcome = fuse(
            judgment,
            [s for signals in per_url_heuristics.values() for s in signals],
            [s for signals in per_url_intel.values() for s in signals],
            self.policy,
        )

        model_items = {
            as_text(item.get("url")): item
            for item in as_list(outcome.data.get("urls"))
            if isinstance(item, dict)
        }
        verdicts = []
        for url in urls:
            item = model_items.get(url)
            per = _fuse_item(judgment, item, per_url_heuristics.get(url, []), per_url_intel.get(url, []), self.policy)
            verdicts.append(UrlVerdict(
                url=url,
                verdict=per.verdict,
                risk_score=per.risk_score,
                threats=per.threats,
                recommendation=per.recommendation,
                explanation=per.explanation,
            ))
        _raise_to_items(outcome, verdicts, self.policy)
        return UrlSafetyResult(**outcome.base_fields(), urls=verdicts)


class AttachmentSafetyAnalyzer(ContentAnalyzer):
    tool = "check_attachment_safety"
    policy = ATTACHMENT_POLICY

    async def analyze(self, request: AttachmentCheckRequest) -> AttachmentSafetyResult:
        attachments = request.attachments[:prompts.MAX_ITEMS]
        per_file = heuristics.check_attachments(attachments)
        judgment = await self._judge(prompts.attachment_prompt(attachments))
        outcome = fuse(judgment, [s for signals in per_file.values() for s in signals], [], self.policy)

        model_items = {
            as_text(item.get("filename")): item
            for item in as_list(outcome.data.get("attachments"))
            if isinstance(item, dict)
        }
        verdicts = []
        for attachment in attachments:
            item = model_items.get(attachment.name)
            per = _fuse_item(judgment, item, per_file.get(attachment.name, []), [], self.policy)
            verdicts.append(AttachmentVerdict(
                filename=attachment.name,
                verdict=per.verdict,
                risk_score=per.risk_score,
                threats=per.threats,
                recommendation=per.recommendation,
                explanation=per.explanation,
            ))
        _raise_to_items(outcome, verdicts, self.policy)
        return AttachmentSafetyResult(
            **outcome.base_fields(),
            attachments=verdicts,
            safe_to_process=[v.filename for v in verdicts if v.verdict == self.policy.verdicts.best],
            do_not_process=[v.filename for v in verdicts if v.verdict == self.policy.verdicts.worst],
        )


def _fuse_item(
    judgment: Judgment,
    item: Optional[dict],
    heuristic: list[ThreatSignal],
    intelligence: list[ThreatSignal],
    policy: FusionPolicy,
) -> FusionOutcome:
    if item and judgment.usable:
        return fuse(Judgment("ok", item), heuristic, intelligence, policy)
    per = fuse(Judgment("unavailable"), heuristic, intelligence, policy)
    if judgment.usable:
        per.explanation = ITEM_UNASSESSED_EXPLANATION
    return per


def _raise_to_items(outcome: FusionOutcome, items: Sequence[UrlVerdict | AttachmentVerdict], policy: FusionPolicy) -> None:
    """The overall verdict is never milder than the worst individual item."""
    for item in items:
        outcome.verdict = policy.verdicts.raise_to(outcome.verdict, item.verdict)
        outcome.risk_score = max(outcome.risk_score, item.risk_score)
        outcome.recommendation = policy.actions.raise_to(outcome.recommendation, item.recommendation)


class MessageSafetyAnalyzer(ContentAnalyzer):
    tool = "check_message_safety"
    policy = MESSAGE_POLICY

    async def analyze(self, request: MessageCheckRequest) -> MessageSafetyResult:
        heuristic = heuristics.check_message(request)
        inbound = " ".join(m.body for m in request.messages if m.direction == "inbound")
        urls = heuristics.extract_urls(inbound, limit=MAX_MESSAGE_URLS)
        url_intel = await self._url_intel(urls)
        intel_signals = [s for signals in self._url_signals(url_intel).values() for s in signals]

        judgment = await self._judge(
            prompts.message_prompt(request, prompts.url_intel_block(list(url_intel.values())))
        )
        outcome = fuse(judgment, heuristic, intel_signals, self.policy)
        platform = request.platform.lower()
        return MessageSafetyResult(
            **outcome.base_fields(),
            platform=platform,
            safe_actions=_strings(outcome.data.get("safe_actions")),
            unsafe_actions=_strings(outcome.data.get("unsafe_actions")) or _unsafe_defaults(outcome.verdict),
            platform_tips=as_text(outcome.data.get("platform_tips")) or PLATFORM_TIPS.get(platform, ""),
        )


REVISION_HINTS = {
    "Social Security Number": "Remove the Social Security Number from the draft",
    "Credit card number": "Remove the card number; never send payment card details by email",
    "Credentials/API keys": "Remove passwords, tokens and API keys; share secrets through a secure vault",
    "Banking details": "Confirm banking instructions by phone with a known contact before sending",
}


class DraftSafetyAnalyzer(ContentAnalyzer):
    tool = "check_response_safety"
    policy = DRAFT_POLICY

    async def analyze(self, request: DraftCheckRequest) -> DraftSafetyResult:
        heuristic = heuristics.check_draft(request.draft_body)
        judgment = await self._judge(prompts.draft_prompt(request))
        outcome = fuse(judgment, heuristic, [], self.policy)
        revisions = _strings(outcome.data.get("suggested_revisions"))
        for signal in heuristic:
            hint = REVISION_HINTS.get(signal.data_at_risk or "")
            if hint and hint not in revisions:
                revisions.append(hint)
        return DraftSafetyResult(**outcome.base_fields(), suggested_revisions=revisions)


DEFAULT_VERIFICATION_STEPS = [
    "Contact the sender through a phone number or address you already have on file",
    "Do not use contact details supplied in the message itself",
]


class SenderReputationAnalyzer(ContentAnalyzer):
    tool = "check_sender_reputation"
    policy = SENDER_POLICY

    async def analyze(self, request: SenderCheckRequest) -> SenderReputationResult:
        domain = heuristics.email_domain(request.email)
        intel, context = await asyncio.gather(self._domain_intel(domain), self._domain_context(domain))
        heuristic = heuristics.check_sender(request, intel)
        intel_signals = intelligence_signals(intel.reputation, intel.web_risk, domain) if intel else []

        intelligence = "\n".join(
            block for block in (prompts.domain_intel_block(intel), build_historical_context(context)) if block
        )
        judgment = await self._judge(prompts.sender_prompt(request, intelligence))
        outcome = fuse(judgment, heuristic, intel_signals, self.policy)

        bec = clamp_score(outcome.data.get("bec_probability"), 0.3)
        if any(s.severity == "critical" for s in intel_signals):
            bec = max(bec, 0.9)
        steps = _strings(outcome.data.get("verification_steps"))
        if not steps and outcome.verdict != "trusted":
            steps = list(DEFAULT_VERIFICATION_STEPS)
        return SenderReputationResult(
            **outcome.base_fields(),
            trust_score=outcome.trust_score,
            bec_probability=bec,
            verification_steps=steps,
            domain_intelligence=summarize_domain_intel(intel),
        )


class ThreadAnalyzer(ContentAnalyzer):
    tool = "analyze_email_thread"
    policy = THREAD_POLICY

    async def analyze(self, request: ThreadCheckRequest) -> ThreadAnalysisResult:
        messages = request.messages[:prompts.MAX_MESSAGES]
        heuristic = heuristics.check_thread(messages)
        judgment = await self._judge(prompts.thread_prompt(messages))
        outcome = fuse(judgment, heuristic, [], self.policy)
        return ThreadAnalysisResult(
            **outcome.base_fields(),
            thread_progression=as_text(outcome.data.get("thread_progression")),
            safe_actions=_strings(outcome.data.get("safe_actions")),
            unsafe_actions=_strings(outcome.data.get("unsafe_actions")) or _unsafe_defaults(outcome.verdict),
        )
