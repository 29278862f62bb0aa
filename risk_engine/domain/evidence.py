"""
evidence.py
-----------
Typed evidence payloads, one per fraud rule.

Each variant carries a literal `kind` equal to the rule key, so a
FraudSignal.evidence can be pattern-matched exhaustively and pydantic
picks the right model when an audit record is read back from JSONB.
Values are validated at construction: a negative count or a
probability above 1 never reaches an evaluator.
"""

from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Evidence(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class GeoPoint(_Evidence):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


# ─────────────────────────────────────────────────────────────────────
# Booking velocity
# ─────────────────────────────────────────────────────────────────────

class RapidBookingsEvidence(_Evidence):
    kind: Literal["rapid_bookings"] = "rapid_bookings"
    recent_bookings: int = Field(..., ge=0)
    window_minutes:  int = Field(60, gt=0)


class NewUserHighValueEvidence(_Evidence):
    kind: Literal["new_user_high_value"] = "new_user_high_value"
    account_age_hours: float   = Field(..., ge=0)
    booking_value:     Decimal = Field(..., ge=0)

    @property
    def account_age_days(self) -> int:
        return int(self.account_age_hours // 24)


class VelocityAnomalyEvidence(_Evidence):
    kind: Literal["velocity_anomaly"] = "velocity_anomaly"
    recent_bookings:  int   = Field(..., ge=0)
    baseline_per_day: float = Field(..., ge=0)
    ratio:            float = Field(..., ge=0)


# ─────────────────────────────────────────────────────────────────────
# Payments
# ─────────────────────────────────────────────────────────────────────

class FailedPaymentsEvidence(_Evidence):
    kind: Literal["multiple_failed_payments"] = "multiple_failed_payments"
    failed_payments: int = Field(..., ge=0)
    window_hours:    int = Field(24, gt=0)


class PaymentMethodCyclingEvidence(_Evidence):
    kind: Literal["payment_method_cycling"] = "payment_method_cycling"
    payment_methods: int = Field(..., ge=0)
    window_hours:    int = Field(24, gt=0)


class ChargebackHistoryEvidence(_Evidence):
    kind: Literal["chargeback_history"] = "chargeback_history"
    chargebacks: int = Field(..., ge=0)


# ─────────────────────────────────────────────────────────────────────
# Geolocation
# ─────────────────────────────────────────────────────────────────────

class ImpossibleTravelEvidence(_Evidence):
    kind: Literal["impossible_travel"] = "impossible_travel"
    distance_miles: float = Field(..., ge=0)
    hours_elapsed:  float = Field(..., ge=0)
    from_location:  GeoPoint
    to_location:    GeoPoint


class VpnProxyEvidence(_Evidence):
    kind: Literal["vpn_or_proxy"] = "vpn_or_proxy"
    vpn_probability: float = Field(..., ge=0, le=1)


# ─────────────────────────────────────────────────────────────────────
# Device and session
# ─────────────────────────────────────────────────────────────────────

class FingerprintMismatchEvidence(_Evidence):
    kind: Literal["device_fingerprint_mismatch"] = "device_fingerprint_mismatch"
    fingerprint_similarity: float     = Field(..., ge=0, le=1)
    changed_attributes:     list[str] = Field(default_factory=list)


class SuspiciousUserAgentEvidence(_Evidence):
    kind: Literal["suspicious_user_agent"] = "suspicious_user_agent"
    user_agent:       str
    matched_keywords: list[str] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────
# Communication and research
# ─────────────────────────────────────────────────────────────────────

class CopyPasteMessagesEvidence(_Evidence):
    kind: Literal["copy_paste_messages"] = "copy_paste_messages"
    message_similarity: float = Field(..., ge=0, le=1)
    message_count:      int   = Field(..., ge=0)


class ProfileInteractionEvidence(_Evidence):
    kind: Literal["no_profile_interaction"] = "no_profile_interaction"
    profile_views: int = Field(..., ge=0)
    listing_views: int = Field(..., ge=0)


Evidence = Annotated[
    Union[
        RapidBookingsEvidence,
        NewUserHighValueEvidence,
        VelocityAnomalyEvidence,
        FailedPaymentsEvidence,
        PaymentMethodCyclingEvidence,
        ChargebackHistoryEvidence,
        ImpossibleTravelEvidence,
        VpnProxyEvidence,
        FingerprintMismatchEvidence,
        SuspiciousUserAgentEvidence,
        CopyPasteMessagesEvidence,
        ProfileInteractionEvidence,
    ],
    Field(discriminator="kind"),
]
