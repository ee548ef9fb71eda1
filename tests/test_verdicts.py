import math

import pytest

from agentshield.fusion import ATTACHMENT_POLICY, DRAFT_POLICY, SENDER_POLICY
from agentshield.verdicts import (
    SENDER_VERDICTS,
    THREAT_VERDICTS,
    VerdictLadder,
    clamp_score,
    sanitize_severity,
    severity_counts,
)


@pytest.mark.parametrize(
    "value, expected",
    [(0.42, 0.42), (-3, 0.0), (7, 1.0), ("0.8", 0.8), ("high", 0.5), (None, 0.5), (True, 0.5), (math.nan, 0.5)],
)
def test_clamp_score_always_lands_in_unit_interval(value, expected):
    assert clamp_score(value) == expected


def test_ladder_coerces_unknown_values_to_fallback():
    assert THREAT_VERDICTS.coerce("dangerous") == "dangerous"
    assert THREAT_VERDICTS.coerce("catastrophic") == "suspicious"
    assert THREAT_VERDICTS.coerce(3) == "suspicious"


def test_ladder_raise_to_never_lowers():
    assert THREAT_VERDICTS.raise_to("dangerous", "safe") == "dangerous"
    assert THREAT_VERDICTS.raise_to("safe", "suspicious") == "suspicious"


def test_ladder_positions():
    assert SENDER_VERDICTS.best == "trusted"
    assert SENDER_VERDICTS.worst == "likely_fraudulent"
    assert SENDER_VERDICTS.next_worst == "suspicious"
    assert THREAT_VERDICTS.middle == "suspicious"


def test_ladder_rejects_fallback_outside_levels():
    with pytest.raises(ValueError):
        VerdictLadder(("a", "b"), fallback="c")


def test_action_for_maps_to_same_rung():
    assert ATTACHMENT_POLICY.action_for("safe") == "safe_to_open"
    assert ATTACHMENT_POLICY.action_for("suspicious") == "open_with_caution"
    assert ATTACHMENT_POLICY.action_for("dangerous") == "do_not_open"
    assert DRAFT_POLICY.action_for("review_required") == "review_required"
    # four sender verdicts onto three actions
    assert SENDER_POLICY.action_for("trusted") == "trust_sender"
    assert SENDER_POLICY.action_for("likely_fraudulent") == "do_not_trust"


def test_severity_helpers():
    assert sanitize_severity("HIGH") == "high"
    assert sanitize_severity("severe") == "medium"
    assert severity_counts(["high", "high", "low", "bogus"]) == {"low": 1, "medium": 0, "high": 2, "critical": 0}
