"""
signal_evaluators.py
--------------------
Pure evaluators: (evidence, rule) → FraudSignal | None.

Every evaluator compares one typed evidence payload against the threshold
of its rule and, when the threshold is crossed, emits a signal whose score
grows with the excess (capped at 100) and whose weight and severity are
copied from the Rule Registry.

No I/O and no clock here. The same evidence always produces the same signal.
"""

from typing import Callable, Optional

from risk_engine.domain.evidence import (
    ChargebackHistoryEvidence,
    CopyPasteMessagesEvidence,
    FailedPaymentsEvidence,
    FingerprintMismatchEvidence,
    ImpossibleTravelEvidence,
    NewUserHighValueEvidence,
    PaymentMethodCyclingEvidence,
    ProfileInteractionEvidence,
    RapidBookingsEvidence,
    SuspiciousUserAgentEvidence,
    VelocityAnomalyEvidence,
    VpnProxyEvidence,
)
from risk_engine.domain.rules import FraudRule, RuleRegistry
from risk_engine.domain.schemas import FraudSignal

# ------------------------------------------------------------------ #
#  Fixed windows that are not part of the rule thresholds            #
# ------------------------------------------------------------------ #
NEW_ACCOUNT_DAYS            = 7     # "new user" below this age
IMPOSSIBLE_TRAVEL_MAX_HOURS = 2.0   # travel window for impossible_travel
MIN_MESSAGES_FOR_SIMILARITY = 2


def _cap(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def _signal(rule: FraudRule, score: float, description: str, evidence) -> FraudSignal:
    return FraudSignal(
        type        = rule.name,
        severity    = rule.severity,
        score       = _cap(score),
        weight      = rule.weight,
        description = description,
        evidence    = evidence,
    )


# ─────────────────────────────────────────────────────────────────────
# Booking velocity
# ─────────────────────────────────────────────────────────────────────

def evaluate_rapid_bookings(ev: RapidBookingsEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.recent_bookings < rule.threshold:
        return None
    return _signal(
        rule, 15 * ev.recent_bookings,
        f"{ev.recent_bookings} bookings in the last {ev.window_minutes} minutes",
        ev,
    )


def evaluate_new_user_high_value(ev: NewUserHighValueEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    age_days = ev.account_age_hours / 24
    value    = float(ev.booking_value)
    if age_days >= NEW_ACCOUNT_DAYS or value < rule.threshold:
        return None
    return _signal(
        rule, value / 100 + (NEW_ACCOUNT_DAYS - age_days),
        f"${value:.2f} booking from an account {ev.account_age_days} days old",
        ev,
    )


def evaluate_velocity_anomaly(ev: VelocityAnomalyEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.baseline_per_day <= 0 or ev.ratio < rule.threshold:
        return None
    return _signal(
        rule, 10 * ev.ratio,
        f"Booking velocity {ev.ratio:.1f}x above the user's daily baseline",
        ev,
    )


# ─────────────────────────────────────────────────────────────────────
# Payments
# ─────────────────────────────────────────────────────────────────────

def evaluate_failed_payments(ev: FailedPaymentsEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.failed_payments < rule.threshold:
        return None
    return _signal(
        rule, 25 * ev.failed_payments,
        f"{ev.failed_payments} failed payment attempts in {ev.window_hours}h",
        ev,
    )


def evaluate_payment_method_cycling(ev: PaymentMethodCyclingEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.payment_methods < rule.threshold:
        return None
    return _signal(
        rule, 20 * ev.payment_methods,
        f"{ev.payment_methods} payment methods added in {ev.window_hours}h",
        ev,
    )


def evaluate_chargeback_history(ev: ChargebackHistoryEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.chargebacks < rule.threshold:
        return None
    return _signal(
        rule, 50 + 25 * (ev.chargebacks - 1),
        f"{ev.chargebacks} previous chargeback(s) or dispute(s)",
        ev,
    )


# ─────────────────────────────────────────────────────────────────────
# Geolocation
# ─────────────────────────────────────────────────────────────────────

def evaluate_impossible_travel(ev: ImpossibleTravelEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.distance_miles <= rule.threshold or ev.hours_elapsed >= IMPOSSIBLE_TRAVEL_MAX_HOURS:
        return None
    return _signal(
        rule, ev.distance_miles / 10,
        f"{ev.distance_miles:.0f} miles travelled in {ev.hours_elapsed:.1f} hours",
        ev,
    )


def evaluate_vpn_or_proxy(ev: VpnProxyEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.vpn_probability <= rule.threshold:
        return None
    return _signal(
        rule, 100 * ev.vpn_probability,
        f"VPN/proxy probability {ev.vpn_probability:.0%}",
        ev,
    )


# ─────────────────────────────────────────────────────────────────────
# Device and session
# ─────────────────────────────────────────────────────────────────────

def evaluate_fingerprint_mismatch(ev: FingerprintMismatchEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    # threshold is the share of attributes that must differ
    if ev.fingerprint_similarity >= round(1 - rule.threshold, 6):
        return None
    return _signal(
        rule, 100 * (1 - ev.fingerprint_similarity),
        f"Device fingerprint {1 - ev.fingerprint_similarity:.0%} different from last session",
        ev,
    )


def evaluate_suspicious_user_agent(ev: SuspiciousUserAgentEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if len(ev.matched_keywords) < rule.threshold:
        return None
    return _signal(
        rule, 60,
        f"Automation or emulator markers in user agent: {', '.join(ev.matched_keywords)}",
        ev,
    )


# ─────────────────────────────────────────────────────────────────────
# Communication and research
# ─────────────────────────────────────────────────────────────────────

def evaluate_copy_paste_messages(ev: CopyPasteMessagesEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.message_count < MIN_MESSAGES_FOR_SIMILARITY or ev.message_similarity <= rule.threshold:
        return None
    return _signal(
        rule, 100 * ev.message_similarity,
        f"{ev.message_similarity:.0%} of recent messages are identical",
        ev,
    )


def evaluate_no_profile_interaction(ev: ProfileInteractionEvidence, rule: FraudRule) -> Optional[FraudSignal]:
    if ev.profile_views + ev.listing_views >= rule.threshold:
        return None
    return _signal(rule, 40, "Booked without viewing the owner profile or the listing", ev)


EVALUATORS: dict[str, Callable] = {
    "rapid_bookings":              evaluate_rapid_bookings,
    "new_user_high_value":         evaluate_new_user_high_value,
    "velocity_anomaly":            evaluate_velocity_anomaly,
    "multiple_failed_payments":    evaluate_failed_payments,
    "payment_method_cycling":      evaluate_payment_method_cycling,
    "chargeback_history":          evaluate_chargeback_history,
    "impossible_travel":           evaluate_impossible_travel,
    "vpn_or_proxy":                evaluate_vpn_or_proxy,
    "device_fingerprint_mismatch": evaluate_fingerprint_mismatch,
    "suspicious_user_agent":       evaluate_suspicious_user_agent,
    "copy_paste_messages":         evaluate_copy_paste_messages,
    "no_profile_interaction":      evaluate_no_profile_interaction,
}


def evaluate(evidence, registry: RuleRegistry) -> Optional[FraudSignal]:
    """Route one evidence payload to its evaluator using evidence.kind."""
    rule = registry.fraud_rule(evidence.kind)
    return EVALUATORS[evidence.kind](evidence, rule)


def evaluate_all(evidence_items, registry: RuleRegistry) -> list[FraudSignal]:
    signals = []
    for evidence in evidence_items:
        signal = evaluate(evidence, registry)
        if signal is not None:
            signals.append(signal)
    return signals
