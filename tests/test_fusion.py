import pytest

from agentshield.fusion import (
    DRAFT_POLICY,
    EMAIL_POLICY,
    SENDER_POLICY,
    THREAD_POLICY,
    URL_POLICY,
    UNAVAILABLE_EXPLANATION,
    fuse,
    intelligence_signals,
    merge_threats,
)
from agentshield.llm_adapter import Judgment
from agentshield.models import ReputationResult, ThreatSignal, WebRiskResult


def signal(type_, severity, **kwargs):
    return ThreatSignal(type=type_, description=type_.lower(), severity=severity, **kwargs)


def ok(**data):
    return Judgment("ok", data)


UNAVAILABLE = Judgment("unavailable", error="down")


def test_critical_heuristic_forces_worst_verdict():
    outcome = fuse(ok(verdict="safe", risk_score=0.05, recommendation="proceed"), [signal("MALWARE", "critical")], [], EMAIL_POLICY)
    assert outcome.verdict == "dangerous"
    assert outcome.risk_score >= 0.9
    assert outcome.recommendation == "do_not_act"


def test_two_highs_escalate_over_safe_model():
    heuristic = [signal("FAKE_REPLY_THREAD", "high"), signal("LURE_EMAIL", "high")]
    outcome = fuse(ok(verdict="safe", risk_score=0.3, recommendation="proceed"), heuristic, [], EMAIL_POLICY)
    assert outcome.verdict == "dangerous"
    assert outcome.risk_score >= 0.85
    assert outcome.recommendation == "do_not_act"


def test_high_pair_for_threads_only_reaches_suspicious():
    heuristic = [signal("A", "high"), signal("B", "high")]
    outcome = fuse(ok(verdict="safe", risk_score=0.2), heuristic, [], THREAD_POLICY)
    assert outcome.verdict == "suspicious"
    assert outcome.risk_score == 0.7


def test_single_high_email_rule():
    outcome = fuse(ok(verdict="safe", risk_score=0.1), [signal("PHISHING", "high")], [], EMAIL_POLICY)
    assert outcome.verdict == "suspicious"
    assert outcome.risk_score == 0.7
    assert outcome.recommendation == "proceed_with_caution"


def test_model_can_raise_but_not_lower():
    outcome = fuse(ok(verdict="dangerous", risk_score=0.97, recommendation="do_not_act"), [signal("X", "medium")], [], EMAIL_POLICY)
    assert (outcome.verdict, outcome.risk_score) == ("dangerous", 0.97)


def test_flagged_intelligence_pins_risk():
    intel = intelligence_signals(
        ReputationResult(available=True, found=True, malicious=3, total_engines=70, summary="FLAGGED"),
        None,
        "http://192.168.1.1/login",
    )
    assert intel[0].severity == "critical"
    outcome = fuse(ok(verdict="safe", risk_score=0.1), [], intel, URL_POLICY)
    assert outcome.verdict == "dangerous"
    assert outcome.risk_score >= 0.95


def test_suspicious_reputation_is_high_and_web_risk_is_critical():
    intel = intelligence_signals(
        ReputationResult(available=True, found=True, suspicious=2, total_engines=70),
        WebRiskResult(safe=False, threats=["MALWARE"], available=True),
        "bad.example",
    )
    assert {(s.type, s.severity) for s in intel} == {("REPUTATION_SUSPICIOUS", "high"), ("WEB_RISK_FLAGGED", "critical")}
    assert all(s.source == "intelligence" for s in intel)


def test_unavailable_reputation_yields_no_signal():
    assert intelligence_signals(ReputationResult(error="timeout"), WebRiskResult(safe=True), "x") == []


@pytest.mark.parametrize(
    "heuristic, expected_verdict, expected_risk",
    [
        ([signal("MALWARE", "critical")], "dangerous", 0.9),
        ([signal("URGENCY_MANIPULATION", "medium")], "suspicious", 0.5),
        ([], "safe", 0.1),
    ],
)
def test_heuristic_only_when_model_unavailable(heuristic, expected_verdict, expected_risk):
    outcome = fuse(UNAVAILABLE, heuristic, [], URL_POLICY)
    assert outcome.verdict == expected_verdict
    assert outcome.risk_score == expected_risk
    assert outcome.confidence <= 0.6
    assert outcome.explanation == UNAVAILABLE_EXPLANATION
    assert outcome.ai_analysis == "unavailable"


def test_two_highs_without_model_stay_suspicious():
    heuristic = [signal("FAKE_REPLY_THREAD", "high"), signal("LURE_EMAIL", "high")]
    outcome = fuse(UNAVAILABLE, heuristic, [], EMAIL_POLICY)
    assert outcome.verdict == "suspicious"
    assert outcome.risk_score == 0.5
    assert outcome.recommendation == "proceed_with_caution"
    assert outcome.confidence == 0.6


def test_flagged_intelligence_without_model_keeps_its_floor():
    intel = intelligence_signals(
        ReputationResult(available=True, found=True, malicious=5, total_engines=70), None, "bad.example"
    )
    outcome = fuse(UNAVAILABLE, [], intel, URL_POLICY)
    assert outcome.verdict == "dangerous"
    assert outcome.risk_score >= 0.95


def test_heuristic_only_sender_without_findings_is_unverified():
    outcome = fuse(UNAVAILABLE, [], [], SENDER_POLICY)
    assert outcome.verdict == "unverified"
    assert outcome.trust_score == 0.5


def test_sender_model_reports_trust():
    outcome = fuse(ok(verdict="trusted", trust_score=0.9, recommendation="trust_sender"), [], [], SENDER_POLICY)
    assert outcome.risk_score == pytest.approx(0.1)
    assert outcome.trust_score == pytest.approx(0.9)


def test_malformed_judgment_caps_confidence():
    judgment = Judgment("malformed", EMAIL_POLICY.fallback_judgment())
    outcome = fuse(judgment, [], [], EMAIL_POLICY)
    assert outcome.verdict == "suspicious"
    assert outcome.confidence <= 0.5
    assert outcome.ai_analysis == "fallback"
    assert any(t.type == "ANALYSIS_ERROR" for t in outcome.threats)


def test_model_garbage_is_sanitized():
    outcome = fuse(ok(verdict="catastrophic", risk_score=4, confidence="high", recommendation="run"), [], [], EMAIL_POLICY)
    assert outcome.verdict == "suspicious"
    assert outcome.risk_score == 1.0
    assert outcome.confidence == 0.7
    assert outcome.recommendation == "proceed_with_caution"


def test_merge_keeps_most_severe_and_prefers_earlier_groups():
    heuristic = [signal("PHISHING", "high", source="heuristic")]
    model = [signal("PHISHING", "high", source="model"), signal("URGENCY", "low", source="model")]
    merged = merge_threats(heuristic, model)
    assert [(t.type, t.source) for t in merged] == [("PHISHING", "heuristic"), ("URGENCY", "model")]

    escalated = merge_threats(heuristic, [signal("PHISHING", "critical", source="model")])
    assert escalated[0].severity == "critical"


def test_draft_dedup_keys_on_data_at_risk():
    heuristic = [
        signal("DATA_LEAKAGE", "critical", data_at_risk="Social Security Number"),
        signal("DATA_LEAKAGE", "critical", data_at_risk="Credit card number"),
    ]
    outcome = fuse(ok(verdict="safe_to_send", risk_score=0.1), heuristic, [], DRAFT_POLICY)
    assert outcome.verdict == "do_not_send"
    assert len([t for t in outcome.threats if t.type == "DATA_LEAKAGE"]) == 2


def test_adding_findings_never_lowers_risk():
    base = ok(verdict="suspicious", risk_score=0.4)
    findings = [signal("A", "medium"), signal("B", "high"), signal("C", "high"), signal("D", "critical")]
    previous = 0.0
    for count in range(len(findings) + 1):
        outcome = fuse(base, findings[:count], [], EMAIL_POLICY)
        assert outcome.risk_score >= previous
        previous = outcome.risk_score
