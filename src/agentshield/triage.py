"""Decide which checks apply to a piece of inbound content. Pure and synchronous."""

from __future__ import annotations

from .models import SkippedTool, ToolRecommendation, TriageInput, TriageResult

EMAIL = "check_email_safety"
MESSAGE = "check_message_safety"
SENDER = "check_sender_reputation"
URLS = "check_url_safety"
ATTACHMENTS = "check_attachment_safety"
THREAD = "analyze_email_thread"
DRAFT = "check_response_safety"
MEDIA = "check_media_authenticity"


def triage(payload: TriageInput) -> TriageResult:
    recommended: list[ToolRecommendation] = []
    skipped: list[SkippedTool] = []

    def recommend(tool: str, reason: str) -> None:
        recommended.append(ToolRecommendation(tool=tool, reason=reason, priority=len(recommended) + 1))

    def skip(tool: str, reason: str) -> None:
        skipped.append(SkippedTool(tool=tool, reason=reason))

    is_email = bool(payload.sender and payload.subject and payload.body) and not payload.platform
    has_draft = bool(payload.draft_to and payload.draft_body)
    scannable_media = [m for m in payload.media if m.url and m.type in ("image", "video")]

    if is_email:
        recommend(EMAIL, "Email detected (sender, subject and body provided); analyze for phishing and manipulation")
        skip(MESSAGE, "Email detected; check_message_safety is for SMS, chat and social platforms")
    elif payload.platform:
        recommend(MESSAGE, f"{payload.platform} message detected; analyze for platform-specific scams")
        skip(EMAIL, "Non-email platform detected; using check_message_safety instead")
    elif payload.body and not has_draft:
        recommend(
            EMAIL,
            "Message body provided; analyze for threats. Resubmit with 'platform' if this is not an email",
        )
        skip(MESSAGE, "No platform specified; use check_message_safety for SMS, WhatsApp, Slack, Discord and similar")
    else:
        skip(EMAIL, "No email content provided")
        skip(MESSAGE, "No platform message provided")

    if payload.sender:
        recommend(SENDER, f"Sender identified ({payload.sender}); verify DMARC, domain age and reputation")
    else:
        skip(SENDER, "No sender address provided")

    if payload.urls:
        recommend(URLS, f"{len(payload.urls)} URL(s) found; check for phishing, malware and redirects")
    else:
        skip(URLS, "No URLs or links provided")

    if payload.attachments:
        recommend(ATTACHMENTS, f"{len(payload.attachments)} attachment(s) found; assess before opening")
    else:
        skip(ATTACHMENTS, "No attachments provided")

    if len(payload.messages) >= 2:
        recommend(THREAD, f"Thread with {len(payload.messages)} messages; analyze for escalating manipulation")
    elif len(payload.messages) == 1:
        skip(THREAD, "Only 1 message provided; thread analysis requires at least 2")
    else:
        skip(THREAD, "No message thread provided")

    if has_draft:
        recommend(DRAFT, "Draft reply detected; check for data leakage before sending")
    else:
        skip(DRAFT, "No draft reply provided (draft_to, draft_body)")

    if scannable_media:
        recommend(MEDIA, f"{len(scannable_media)} image/video item(s) with URLs; check for AI generation")
    else:
        skip(MEDIA, "No image or video URLs provided")

    if recommended:
        summary = f"Recommended {len(recommended)} check(s): {', '.join(r.tool for r in recommended)}"
    else:
        summary = "No analyzable content provided"
    return TriageResult(recommended_tools=recommended, skipped_tools=skipped, summary=summary)
