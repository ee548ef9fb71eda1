from agentshield.models import TriageInput
from agentshield.triage import (
    ATTACHMENTS,
    DRAFT,
    EMAIL,
    MEDIA,
    MESSAGE,
    SENDER,
    THREAD,
    URLS,
    triage,
)


def tools(result):
    return [r.tool for r in result.recommended_tools]


def skipped(result):
    return {s.tool: s.reason for s in result.skipped_tools}


def test_full_email_recommends_email_sender_urls_attachments():
    result = triage(TriageInput(
        sender="billing@vendor.com",
        subject="Invoice overdue",
        body="Please pay the attached invoice.",
        urls=["https://vendor.com/pay"],
        attachments=[{"name": "invoice.pdf", "size": 1200}],
    ))
    assert tools(result) == [EMAIL, SENDER, URLS, ATTACHMENTS]
    assert [r.priority for r in result.recommended_tools] == [1, 2, 3, 4]
    assert MESSAGE in skipped(result)
    assert result.summary.startswith("Recommended 4 check(s)")


def test_platform_message_prefers_message_check():
    result = triage(TriageInput(sender="+15550100", body="Your parcel is held", platform="sms"))
    assert tools(result)[0] == MESSAGE
    assert "Non-email platform" in skipped(result)[EMAIL]


def test_body_only_falls_back_to_email_with_hint():
    result = triage(TriageInput(body="Click here to claim your prize"))
    assert tools(result) == [EMAIL]
    assert "platform" in result.recommended_tools[0].reason
    assert SENDER in skipped(result)


def test_single_message_thread_is_skipped_with_reason():
    result = triage(TriageInput(messages=[{"sender": "a@b.com", "body": "hi"}]))
    assert "at least 2" in skipped(result)[THREAD]


def test_thread_and_draft():
    result = triage(TriageInput(
        messages=[{"sender": "a@b.com", "body": "hi"}, {"sender": "a@b.com", "body": "send the file"}],
        draft_to="a@b.com",
        draft_body="Attached is the payroll export.",
    ))
    assert tools(result) == [THREAD, DRAFT]
    # a draft alone is not treated as inbound email
    assert EMAIL in skipped(result)


def test_media_needs_url_and_visual_type():
    result = triage(TriageInput(media=[
        {"type": "image", "url": "https://cdn.example/a.jpg"},
        {"type": "audio", "url": "https://cdn.example/a.mp3"},
        {"type": "video"},
    ]))
    assert tools(result) == [MEDIA]
    assert "1 image/video" in result.recommended_tools[0].reason


def test_empty_input():
    result = triage(TriageInput())
    assert result.recommended_tools == []
    assert result.summary == "No analyzable content provided"
    assert set(skipped(result)) == {EMAIL, MESSAGE, SENDER, URLS, ATTACHMENTS, THREAD, DRAFT, MEDIA}
