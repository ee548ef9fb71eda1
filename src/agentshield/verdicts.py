"""
Verdict ladders and score sanitizers shared by every analyzer.

A ladder is an ordered tuple of category names, least severe first. Values
coming back from the judgment model are always coerced through a ladder so an
unknown category can never leak into a result.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable

SEVERITIES = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class VerdictLadder:
    levels: tuple[str, ...]
    fallback: str

    def __post_init__(self) -> None:
        if self.fallback not in self.levels:
            raise ValueError(f"fallback {self.fallback!r} is not a ladder level")

    @property
    def best(self) -> str:
        return self.levels[0]

    @property
    def worst(self) -> str:
        return self.levels[-1]

    @property
    def next_worst(self) -> str:
        return self.levels[-2]

    @property
    def middle(self) -> str:
        return self.levels[len(self.levels) // 2]

    def coerce(self, value: Any) -> str:
        if isinstance(value, str) and value in self.levels:
            return value
        return self.fallback

    def rank(self, value: str) -> int:
        return self.levels.index(value)

    def raise_to(self, current: str, floor: str) -> str:
        """Return whichever of the two levels is more severe."""
        return current if self.rank(current) >= self.rank(floor) else floor


THREAT_VERDICTS = VerdictLadder(("safe", "suspicious", "dangerous"), fallback="suspicious")
DRAFT_VERDICTS = VerdictLadder(("safe_to_send", "review_required", "do_not_send"), fallback="review_required")
SENDER_VERDICTS = VerdictLadder(
    ("trusted", "unverified", "suspicious", "likely_fraudulent"),
    fallback="unverified",
)
MEDIA_VERDICTS = VerdictLadder(
    (
        "likely_authentic",
        "inconclusive",
        "possibly_ai_generated",
        "likely_ai_generated",
        "highly_likely_ai_generated",
    ),
    fallback="inconclusive",
)

EMAIL_ACTIONS = VerdictLadder(("proceed", "proceed_with_caution", "do_not_act"), fallback="proceed_with_caution")
URL_ACTIONS = VerdictLadder(("safe_to_visit", "visit_with_caution", "do_not_visit"), fallback="visit_with_caution")
ATTACHMENT_ACTIONS = VerdictLadder(("safe_to_open", "open_with_caution", "do_not_open"), fallback="open_with_caution")
MESSAGE_ACTIONS = VerdictLadder(("proceed", "proceed_with_caution", "do_not_engage"), fallback="proceed_with_caution")
THREAD_ACTIONS = VerdictLadder(
    ("continue_conversation", "proceed_with_caution", "disengage"),
    fallback="proceed_with_caution",
)
SENDER_ACTIONS = VerdictLadder(("trust_sender", "verify_identity", "do_not_trust"), fallback="verify_identity")


def clamp_score(value: Any, default: float = 0.5) -> float:
    """Coerce anything into a float in [0, 1]; non-numeric input yields ``default``."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return max(0.0, min(1.0, number))


def sanitize_severity(value: Any) -> str:
    if isinstance(value, str) and value.lower() in SEVERITIES:
        return value.lower()
    return "medium"


def severity_counts(severities: Iterable[str]) -> dict[str, int]:
    counts = {level: 0 for level in SEVERITIES}
    for severity in severities:
        if severity in counts:
            counts[severity] += 1
    return counts
