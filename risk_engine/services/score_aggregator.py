"""
score_aggregator.py
-------------------
Turns a list of FraudSignal into the numbers of a FraudScore.

Every function here is pure: same signals in, same verdict out.

  total_score = clamp(round_half_up(Σ(score·weight) / Σ(weight)), 0, 100)
  risk_level  → ≥80 critical | ≥60 high | ≥30 medium | else low
  confidence  → 0.5 with no signals, else min(1, 0.3 + 0.7·share_high)
                scaled by check coverage when collectors failed
  actions     → block / flag / review + admin notification target
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Sequence

from risk_engine.domain.schemas import FraudActions, FraudSignal, RiskLevel, Severity

# ------------------------------------------------------------------ #
#  Risk level thresholds (inclusive lower bounds)                    #
# ------------------------------------------------------------------ #
CRITICAL_THRESHOLD = 80
HIGH_THRESHOLD     = 60
MEDIUM_THRESHOLD   = 30

NEUTRAL_CONFIDENCE = 0.5

_SEVERE = frozenset({Severity.HIGH, Severity.CRITICAL})


def calculate_fraud_score(signals: Sequence[FraudSignal]) -> int:
    if not signals:
        return 0

    weighted = sum(Decimal(str(s.score)) * Decimal(str(s.weight)) for s in signals)
    weights  = sum(Decimal(str(s.weight)) for s in signals)
    score    = (weighted / weights).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, min(100, int(score)))


def determine_risk_level(score: int) -> RiskLevel:
    if score >= CRITICAL_THRESHOLD:
        return RiskLevel.CRITICAL
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def calculate_confidence(
    signals:      Sequence[FraudSignal],
    total_checks: int = 0,
    failed:       int = 0,
) -> float:
    """
    Confidence in the verdict, in [0, 1].

    With no signals the engine has nothing to stand on → exactly 0.5.
    Otherwise the share of high/critical signals raises it, and every
    collector that failed lowers it proportionally.
    """
    if not signals:
        return NEUTRAL_CONFIDENCE

    severe     = sum(1 for s in signals if s.severity in _SEVERE)
    confidence = min(1.0, 0.3 + 0.7 * (severe / len(signals)))

    if failed and total_checks:
        coverage   = max(0, total_checks - failed) / total_checks
        confidence = confidence * coverage

    return max(0.0, min(1.0, confidence))


def determine_actions(score: int, risk_level: RiskLevel) -> FraudActions:
    if score >= CRITICAL_THRESHOLD or risk_level == RiskLevel.CRITICAL:
        return FraudActions(
            flagged                 = True,
            blocked                 = True,
            requires_review         = True,
            notifications_triggered = ["admin_critical_fraud"],
        )
    if score >= HIGH_THRESHOLD or risk_level == RiskLevel.HIGH:
        return FraudActions(
            flagged                 = True,
            requires_review         = True,
            notifications_triggered = ["admin_high_fraud"],
        )
    if score >= MEDIUM_THRESHOLD or risk_level == RiskLevel.MEDIUM:
        return FraudActions(
            flagged                 = True,
            notifications_triggered = ["admin_medium_fraud"],
        )
    return FraudActions()
