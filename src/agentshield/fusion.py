"""
Verdict fusion.

Reconciles deterministic heuristic findings, reputation intelligence and one
model judgment into a single verdict. The ratchet only ever moves a result
toward risk: a probabilistic signal can raise a verdict but can never talk a
critical deterministic finding down.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .llm_adapter import Judgment, as_text, parse_model_threats
from .models import ReputationResult, ThreatSignal, WebRiskResult
from .verdicts import (
    ATTACHMENT_ACTIONS,
    DRAFT_VERDICTS,
    EMAIL_ACTIONS,
    MESSAGE_ACTIONS,
    SENDER_ACTIONS,
    SENDER_VERDICTS,
    SEVERITIES,
    THREAD_ACTIONS,
    THREAT_VERDICTS,
    URL_ACTIONS,
    VerdictLadder,
    clamp_score,
)

logger = logging.getLogger(__name__)

CRITICAL_RISK_FLOOR = 0.9
FLAGGED_INTEL_FLOOR = 0.95
HEURISTIC_ONLY_CONFIDENCE = 0.6
MODEL_CONFIDENCE_DEFAULT = 0.7
UNAVAILABLE_EXPLANATION = "Analysis performed using pattern matching. AI analysis temporarily unavailable."
ITEM_UNASSESSED_EXPLANATION = "Analysis performed using pattern matching. The model gave no assessment for this item."
MALFORMED_EXPLANATION = "AI analysis returned an unreadable response; verdict based on deterministic checks."


@dataclass(frozen=True)
class FusionPolicy:
    """Per content type escalation constants."""

    name: str
    verdicts: VerdictLadder
    actions: VerdictLadder
    high_pair_verdict: str
    high_pair_floor: float
    single_high_floor: Optional[float] = None
    dedup_on_data: bool = False
    # The model reports trust instead of risk (risk = 1 - trust).
    inverted_score: bool = False
    clean_verdict: Optional[str] = None

    @property
    def score_key(self) -> str:
        return "trust_score" if self.inverted_score else "risk_score"

    @property
    def caution_verdict(self) -> str:
        return self.verdicts.middle

    def action_for(self, verdict: str) -> str:
        """Recommendation at the same relative rung as ``verdict``."""
        rank = self.verdicts.rank(verdict)
        top = len(self.verdicts.levels) - 1
        index = round(rank * (len(self.actions.levels) - 1) / top) if top else 0
        return self.actions.levels[index]

    def fallback_judgment(self) -> Dict[str, Any]:
        middle = 0.5
        return {
            "verdict": self.verdicts.fallback,
            self.score_key: middle,
            "confidence": 0.5,
            "threats": [{
                "type": "ANALYSIS_ERROR",
                "description": "Could not fully analyze content",
                "severity": "medium",
            }],
            "recommendation": self.actions.fallback,
            "explanation": MALFORMED_EXPLANATION,
        }


EMAIL_POLICY = FusionPolicy("email", THREAT_VERDICTS, EMAIL_ACTIONS, "dangerous", 0.85, single_high_floor=0.7)
URL_POLICY = FusionPolicy("url", THREAT_VERDICTS, URL_ACTIONS, "suspicious", 0.7)
ATTACHMENT_POLICY = FusionPolicy("attachment", THREAT_VERDICTS, ATTACHMENT_ACTIONS, "dangerous", 0.8)
MESSAGE_POLICY = FusionPolicy("message", THREAT_VERDICTS, MESSAGE_ACTIONS, "dangerous", 0.8)
DRAFT_POLICY = FusionPolicy("draft", DRAFT_VERDICTS, DRAFT_VERDICTS, "do_not_send", 0.8, dedup_on_data=True)
THREAD_POLICY = FusionPolicy("thread", THREAT_VERDICTS, THREAD_ACTIONS, "suspicious", 0.7)
SENDER_POLICY = FusionPolicy(
    "sender",
    SENDER_VERDICTS,
    SENDER_ACTIONS,
    "suspicious",
    0.7,
    inverted_score=True,
    clean_verdict="unverified",
)


@dataclass
class FusionOutcome:
    verdict: str
    risk_score: float
    confidence: float
    threats: List[ThreatSignal]
    recommendation: str
    explanation: str
    ai_analysis: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def trust_score(self) -> float:
        return round(1.0 - self.risk_score, 4)

    def base_fields(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "threats": self.threats,
            "recommendation": self.recommendation,
            "explanation": self.explanation,
            "ai_analysis": self.ai_analysis,
        }


def _severity_rank(signal: ThreatSignal) -> int:
    return SEVERITIES.index(signal.severity)


def merge_threats(*groups: Iterable[ThreatSignal], key_on_data: bool = False) -> List[ThreatSignal]:
    """Union of signal groups, one entry per type; the most severe entry wins.

    Earlier groups win ties, so pass deterministic findings first.
    """
    merged: Dict[Tuple[str, Optional[str]], ThreatSignal] = {}
    for group in groups:
        for signal in group:
            key = (signal.type, signal.data_at_risk if key_on_data else None)
            current = merged.get(key)
            if current is None or _severity_rank(signal) > _severity_rank(current):
                merged[key] = signal
    return list(merged.values())


def intelligence_signals(
    reputation: Optional[ReputationResult],
    web_risk: Optional[WebRiskResult],
    subject: str,
) -> List[ThreatSignal]:
    """Flagged intelligence becomes critical signals, suspicious becomes high."""
    signals: List[ThreatSignal] = []
    if reputation is not None and reputation.available and reputation.found:
        if reputation.malicious > 0:
            signals.append(ThreatSignal(
                type="REPUTATION_MALICIOUS",
                description=f"{subject}: {reputation.summary}",
                severity="critical",
                source="intelligence",
            ))
        elif reputation.suspicious > 0:
            signals.append(ThreatSignal(
                type="REPUTATION_SUSPICIOUS",
                description=f"{subject}: {reputation.summary}",
                severity="high",
                source="intelligence",
            ))
    if web_risk is not None and not web_risk.safe:
        signals.append(ThreatSignal(
            type="WEB_RISK_FLAGGED",
            description=f"{subject}: {web_risk.summary}",
            severity="critical",
            source="intelligence",
        ))
    return signals


def apply_floors(
    verdict: str,
    risk: float,
    recommendation: str,
    deterministic: List[ThreatSignal],
    policy: FusionPolicy,
) -> Tuple[str, float, str]:
    """Critical-signal and flagged-intelligence floors only."""
    if any(s.severity == "critical" for s in deterministic):
        verdict = policy.verdicts.worst
        risk = max(risk, CRITICAL_RISK_FLOOR)
        recommendation = policy.actions.worst
    if any(s.source == "intelligence" and s.severity == "critical" for s in deterministic):
        risk = max(risk, FLAGGED_INTEL_FLOOR)
    return verdict, risk, recommendation


def ratchet(
    verdict: str,
    risk: float,
    recommendation: str,
    deterministic: List[ThreatSignal],
    policy: FusionPolicy,
) -> Tuple[str, float, str]:
    """Apply escalation rules; never lowers verdict, risk or recommendation."""
    verdict, risk, recommendation = apply_floors(verdict, risk, recommendation, deterministic, policy)
    highs = [s.severity for s in deterministic].count("high")

    if highs >= 2 and risk < policy.high_pair_floor:
        verdict = policy.verdicts.raise_to(verdict, policy.high_pair_verdict)
        risk = policy.high_pair_floor
        recommendation = policy.actions.raise_to(recommendation, policy.action_for(policy.high_pair_verdict))
    elif highs == 1 and policy.single_high_floor is not None and risk < policy.single_high_floor:
        verdict = policy.verdicts.raise_to(verdict, policy.caution_verdict)
        risk = policy.single_high_floor
        recommendation = policy.actions.raise_to(recommendation, policy.action_for(policy.caution_verdict))
    return verdict, risk, recommendation


def heuristic_only(deterministic: List[ThreatSignal], policy: FusionPolicy) -> Tuple[str, float, str]:
    severities = {s.severity for s in deterministic}
    if "critical" in severities:
        verdict, risk = policy.verdicts.worst, CRITICAL_RISK_FLOOR
    elif deterministic:
        verdict, risk = policy.caution_verdict, 0.5
    elif policy.clean_verdict is not None:
        verdict, risk = policy.clean_verdict, 0.5
    else:
        verdict, risk = policy.verdicts.best, 0.1
    return verdict, risk, policy.action_for(verdict)


def fuse(
    judgment: Judgment,
    heuristic: List[ThreatSignal],
    intelligence: List[ThreatSignal],
    policy: FusionPolicy,
) -> FusionOutcome:
    deterministic = list(heuristic) + list(intelligence)

    if not judgment.usable:
        verdict, risk, recommendation = heuristic_only(deterministic, policy)
        verdict, risk, recommendation = apply_floors(verdict, risk, recommendation, deterministic, policy)
        return FusionOutcome(
            verdict=verdict,
            risk_score=round(risk, 4),
            confidence=HEURISTIC_ONLY_CONFIDENCE,
            threats=merge_threats(heuristic, intelligence, key_on_data=policy.dedup_on_data),
            recommendation=recommendation,
            explanation=UNAVAILABLE_EXPLANATION,
            ai_analysis="unavailable",
        )

    data = judgment.data
    verdict = policy.verdicts.coerce(data.get("verdict"))
    score = clamp_score(data.get(policy.score_key), 0.5)
    risk = 1.0 - score if policy.inverted_score else score
    confidence = clamp_score(data.get("confidence"), MODEL_CONFIDENCE_DEFAULT)
    recommendation = policy.actions.coerce(data.get("recommendation"))
    model_threats = parse_model_threats(data.get("threats"))

    verdict, risk, recommendation = ratchet(verdict, risk, recommendation, deterministic, policy)
    if judgment.status == "malformed":
        confidence = min(confidence, 0.5)

    return FusionOutcome(
        verdict=verdict,
        risk_score=round(risk, 4),
        confidence=confidence,
        threats=merge_threats(heuristic, intelligence, model_threats, key_on_data=policy.dedup_on_data),
        recommendation=recommendation,
        explanation=as_text(data.get("explanation")),
        ai_analysis="complete" if judgment.status == "ok" else "fallback",
        data=data,
    )
