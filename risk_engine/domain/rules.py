"""
rules.py
--------
Rule Registry of the engine: fraud rules and refund triggers.

Both tables are read-only mappings built once at import time. Any change
to a weight, threshold or refund percentage ships as a new MODEL_VERSION
so every persisted FraudScore can be traced to the table that produced it.

Fraud rule fields:
  weight      → multiplier applied by the score aggregator
  threshold   → rule specific (count, amount, probability, ratio…)
  severity    → copied to every signal the rule emits
  description → human readable summary

Refund trigger fields:
  timeout_hours          → defines the response deadline of the case
  refund_percentage      → share of the booking total to refund (0-1)
  requires_manual_review → False means the case is processed on creation
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from risk_engine.core.exceptions import UnknownRuleException
from risk_engine.domain.schemas import RefundTrigger, Severity, TriggerType

MODEL_VERSION = "1.0.0"


@dataclass(frozen=True)
class FraudRule:
    name:        str
    weight:      float
    threshold:   float
    severity:    Severity
    description: str


def _rule(name: str, weight: float, threshold: float, severity: Severity, description: str) -> tuple:
    return name, FraudRule(name, weight, threshold, severity, description)


FRAUD_RULES: Mapping[str, FraudRule] = MappingProxyType(dict([
    # ── User behaviour ────────────────────────────────────────────────
    _rule("rapid_bookings",           0.8, 5,   Severity.HIGH,     # 5+ bookings in 1 hour
          "Unusually rapid booking pattern detected"),
    _rule("new_user_high_value",      0.6, 500, Severity.MEDIUM,   # $500+ for account < 7 days
          "New user attempting high-value booking"),
    _rule("multiple_failed_payments", 0.9, 3,   Severity.HIGH,     # 3+ failed payments in 24h
          "Multiple failed payment attempts"),
    _rule("velocity_anomaly",         0.7, 10,  Severity.MEDIUM,   # 10x normal booking velocity
          "Booking velocity significantly above normal"),

    # ── Geography ─────────────────────────────────────────────────────
    _rule("impossible_travel",        0.9, 500, Severity.CRITICAL, # 500+ miles in < 2 hours
          "Impossible travel pattern detected"),
    _rule("vpn_or_proxy",             0.5, 0.8, Severity.LOW,      # > 80% VPN/proxy probability
          "VPN or proxy usage detected"),

    # ── Device and session ────────────────────────────────────────────
    _rule("device_fingerprint_mismatch", 0.6, 0.7, Severity.MEDIUM,  # 70% different from last session
          "Device fingerprint inconsistency"),
    _rule("suspicious_user_agent",    0.4, 1,   Severity.LOW,      # known automation tooling
          "Suspicious browser or automated tool detected"),

    # ── Communication ─────────────────────────────────────────────────
    _rule("copy_paste_messages",      0.5, 0.9, Severity.MEDIUM,   # > 90% similar messages
          "Copy-paste or template messages detected"),
    _rule("no_profile_interaction",   0.3, 1,   Severity.LOW,      # no views before booking
          "No profile or gear research before booking"),

    # ── Financial ─────────────────────────────────────────────────────
    _rule("payment_method_cycling",   0.8, 3,   Severity.HIGH,     # 3+ methods added in 24h
          "Rapid cycling through payment methods"),
    _rule("chargeback_history",       0.9, 1,   Severity.HIGH,     # any chargeback
          "Previous chargeback or dispute history"),
]))


REFUND_TRIGGERS: Mapping[str, RefundTrigger] = MappingProxyType({
    "no_initial_response": RefundTrigger(
        name                   = "no_initial_response",
        type                   = TriggerType.NO_INITIAL_RESPONSE,
        description            = "Owner did not respond to booking request within 24 hours",
        timeout_hours          = 24,
        refund_percentage      = 1.0,
        requires_manual_review = False,
    ),
    "no_show_pickup": RefundTrigger(
        name                   = "no_show_pickup",
        type                   = TriggerType.NO_SHOW,
        description            = "Owner did not show up for scheduled pickup",
        timeout_hours          = 2,
        refund_percentage      = 1.0,
        requires_manual_review = False,
    ),
    "no_show_delivery": RefundTrigger(
        name                   = "no_show_delivery",
        type                   = TriggerType.NO_SHOW,
        description            = "Owner did not deliver gear as scheduled",
        timeout_hours          = 2,
        refund_percentage      = 1.0,
        requires_manual_review = False,
    ),
    "unresponsive_during_rental": RefundTrigger(
        name                   = "unresponsive_during_rental",
        type                   = TriggerType.UNRESPONSIVE_DURING_RENTAL,
        description            = "Owner became unresponsive during active rental period",
        timeout_hours          = 12,
        refund_percentage      = 0.5,   # part of the rental already happened
        requires_manual_review = True,
    ),
    "late_cancellation_by_owner": RefundTrigger(
        name                   = "late_cancellation_by_owner",
        type                   = TriggerType.LATE_CANCELLATION_BY_OWNER,
        description            = "Owner cancelled within 24 hours of rental start",
        timeout_hours          = 0,
        refund_percentage      = 1.0,
        requires_manual_review = False,
    ),
})


class RuleRegistry:
    """
    Read-only lookup over both tables.

    Services receive the registry through their constructor; tests can
    build one with custom tables and a different version string.
    """

    def __init__(
        self,
        fraud_rules:     Mapping[str, FraudRule]     = FRAUD_RULES,
        refund_triggers: Mapping[str, RefundTrigger] = REFUND_TRIGGERS,
        version:         str = MODEL_VERSION,
    ):
        self._fraud_rules     = MappingProxyType(dict(fraud_rules))
        self._refund_triggers = MappingProxyType(dict(refund_triggers))
        self.version          = version

    @property
    def fraud_rules(self) -> Mapping[str, FraudRule]:
        return self._fraud_rules

    @property
    def refund_triggers(self) -> Mapping[str, RefundTrigger]:
        return self._refund_triggers

    def fraud_rule(self, name: str) -> FraudRule:
        try:
            return self._fraud_rules[name]
        except KeyError:
            raise UnknownRuleException(f"Unknown fraud rule '{name}'.") from None

    def refund_trigger(self, name: str) -> RefundTrigger:
        try:
            return self._refund_triggers[name]
        except KeyError:
            raise UnknownRuleException(f"Unknown refund trigger '{name}'.") from None

    def describe_fraud_rules(self) -> dict[str, dict]:
        """Plain dict view for the admin listing endpoint."""
        return {
            name: {
                "weight":      rule.weight,
                "threshold":   rule.threshold,
                "severity":    rule.severity.value,
                "description": rule.description,
            }
            for name, rule in self._fraud_rules.items()
        }


# ── Singleton ─────────────────────────────────────────────────────────
rule_registry = RuleRegistry()
