"""
schemas.py
----------
Pydantic schemas of the engine: the domain records it produces
(FraudSignal, FraudScore, AutoRefundCase), the read models it consumes
from the marketplace (Booking, RentalIssue, sessions) and the
request/response bodies of the HTTP surface.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from risk_engine.domain.evidence import Evidence, GeoPoint


# ─────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────

class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class UserType(str, Enum):
    RENTER = "renter"
    OWNER  = "owner"


class BookingStatus(str, Enum):
    PENDING       = "pending"
    CONFIRMED     = "confirmed"
    ACTIVE        = "active"
    COMPLETED     = "completed"
    CANCELLED     = "cancelled"
    REFUNDED      = "refunded"
    BLOCKED_FRAUD = "blocked_fraud"


class DeliveryMethod(str, Enum):
    PICKUP   = "pickup"
    DELIVERY = "delivery"


class TriggerType(str, Enum):
    NO_INITIAL_RESPONSE        = "no_initial_response"
    NO_SHOW                    = "no_show"
    UNRESPONSIVE_DURING_RENTAL = "unresponsive_during_rental"
    LATE_CANCELLATION_BY_OWNER = "late_cancellation_by_owner"


class CaseStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"
    CANCELLED  = "cancelled"


# ─────────────────────────────────────────────────────────────────────
# FRAUD SCORING
# ─────────────────────────────────────────────────────────────────────

class FraudSignal(BaseModel):
    """One weighted piece of evidence. Immutable once an evaluator emits it."""
    model_config = ConfigDict(frozen=True)

    type:        str
    severity:    Severity
    score:       float = Field(..., ge=0, le=100)
    weight:      float = Field(..., gt=0)
    description: str
    evidence:    Evidence

    @model_validator(mode="after")
    def evidence_matches_rule(self) -> "FraudSignal":
        if self.evidence.kind != self.type:
            raise ValueError(
                f"evidence kind '{self.evidence.kind}' does not match signal type '{self.type}'"
            )
        return self


class FraudActions(BaseModel):
    model_config = ConfigDict(frozen=True)

    flagged:                 bool = False
    blocked:                 bool = False
    requires_review:         bool = False
    notifications_triggered: list[str] = Field(default_factory=list)


class FraudScore(BaseModel):
    """Verdict for one (booking, user) pair. Persisted once as an audit record."""
    model_config = ConfigDict(frozen=True)

    booking_id:         str
    user_id:            str
    user_type:          UserType
    signals:            list[FraudSignal] = Field(default_factory=list)
    total_score:        int   = Field(..., ge=0, le=100)
    risk_level:         RiskLevel
    confidence:         float = Field(..., ge=0, le=1)
    actions:            FraudActions
    analyzed_at:        datetime
    model_version:      str
    data_points:        int = 0
    failed_checks:      list[str] = Field(default_factory=list)
    processing_time_ms: int = 0


class BookingData(BaseModel):
    """Booking fields the workflow hands over when it asks for a score."""
    total_price: Decimal = Field(..., ge=0)
    gear_id:     Optional[str] = None
    start_date:  Optional[datetime] = None


class SessionContext(BaseModel):
    """Request-time session facts supplied by the booking workflow."""
    ip_address:         Optional[str] = None
    location:           Optional[GeoPoint] = None
    user_agent:         str = ""
    device_fingerprint: dict[str, str] = Field(default_factory=dict)
    vpn_probability:    float = Field(0.0, ge=0, le=1)


class SessionSnapshot(BaseModel):
    """Last known session of a user, kept by the SessionStore."""
    location:           Optional[GeoPoint] = None
    device_fingerprint: dict[str, str] = Field(default_factory=dict)
    user_agent:         str = ""
    recorded_at:        datetime


class UserAccount(BaseModel):
    id:         str
    created_at: datetime


class FraudAnalysisRequest(BaseModel):
    booking_id: str = Field(..., min_length=1)
    user_id:    str = Field(..., min_length=1)
    user_type:  UserType
    booking:    BookingData
    session:    SessionContext = Field(default_factory=SessionContext)


class FraudScoreStats(BaseModel):
    total:            int = 0
    by_risk_level:    dict[str, int] = Field(default_factory=dict)
    by_user_type:     dict[str, int] = Field(default_factory=dict)
    average_score:    float = 0.0
    flagged_bookings: int = 0
    blocked_bookings: int = 0
    last_24_hours:    int = 0
    top_signals:      list[dict[str, Any]] = Field(default_factory=list)


class FraudScoreListResponse(BaseModel):
    fraud_scores: list[FraudScore]
    stats:        FraudScoreStats
    rules:        dict[str, dict[str, Any]]


# ─────────────────────────────────────────────────────────────────────
# BOOKINGS (read model of the marketplace record)
# ─────────────────────────────────────────────────────────────────────

class Booking(BaseModel):
    id:                  str
    renter_id:           str
    owner_id:            str
    gear_title:          str = "Unknown Item"
    total_price:         Decimal = Field(..., ge=0)
    status:              BookingStatus
    created_at:          datetime
    start_date:          Optional[datetime] = None
    pickup_confirmed:    bool = False
    delivery_confirmed:  bool = False
    delivery_method:     DeliveryMethod = DeliveryMethod.PICKUP
    cancelled_by:        Optional[str] = None
    cancelled_at:        Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    payment_charge_id:   Optional[str] = None
    refund_amount:       Optional[Decimal] = None
    refund_reason:       Optional[str] = None
    refunded_at:         Optional[datetime] = None
    auto_refund_case_id: Optional[str] = None


class RentalIssue(BaseModel):
    id:          str
    booking_id:  str
    priority:    str
    status:      str
    description: str = ""
    created_at:  datetime


# ─────────────────────────────────────────────────────────────────────
# AUTO-REFUND CASES
# ─────────────────────────────────────────────────────────────────────

class RefundTrigger(BaseModel):
    """Static trigger configuration, part of the rule registry."""
    model_config = ConfigDict(frozen=True)

    name:                   str
    type:                   TriggerType
    description:            str
    timeout_hours:          int   = Field(..., ge=0)
    refund_percentage:      float = Field(..., ge=0, le=1)
    requires_manual_review: bool


class TimelineEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp:   datetime
    event:       str
    description: str
    actor:       Optional[str] = None
    metadata:    dict[str, Any] = Field(default_factory=dict)


class CaseDetection(BaseModel):
    model_config = ConfigDict(frozen=True)

    detected_at:       datetime
    trigger_event:     str
    response_deadline: datetime
    evidence_data:     dict[str, Any] = Field(default_factory=dict)


class CaseRefund(BaseModel):
    initiated_at:       Optional[datetime] = None
    completed_at:       Optional[datetime] = None
    failed_at:          Optional[datetime] = None
    external_refund_id: Optional[str] = None
    failure_reason:     Optional[str] = None
    attempts:           int = 0


class AutoRefundCase(BaseModel):
    id:                str
    booking_id:        str
    renter_id:         str
    owner_id:          str
    gear_title:        str
    total_amount:      Decimal = Field(..., ge=0)
    refund_amount:     Decimal = Field(..., ge=0)
    payment_charge_id: Optional[str] = None
    trigger:           RefundTrigger
    status:            CaseStatus = CaseStatus.PENDING
    timeline:          list[TimelineEntry] = Field(default_factory=list)
    detection:         CaseDetection
    refund:            CaseRefund = Field(default_factory=CaseRefund)
    created_at:        datetime
    updated_at:        datetime

    @model_validator(mode="after")
    def refund_within_total(self) -> "AutoRefundCase":
        if self.refund_amount > self.total_amount:
            raise ValueError("refund_amount cannot exceed total_amount")
        return self

    @property
    def idempotency_key(self) -> str:
        return f"auto-refund-{self.id}"


class CaseDecisionRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class CaseRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class MonitorReport(BaseModel):
    started_at:       datetime
    finished_at:      Optional[datetime] = None
    checked:          int = 0
    triggered:        int = 0
    skipped_existing: int = 0
    errors:           int = 0
    reconciled:       int = 0
    case_ids:         list[str] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────
# COLLABORATOR PAYLOADS
# ─────────────────────────────────────────────────────────────────────

class RefundResult(BaseModel):
    external_refund_id: str
    status:             str = "succeeded"
    amount:             Optional[Decimal] = None

    @property
    def settled(self) -> bool:
        return self.status == "succeeded"


class Notification(BaseModel):
    """Directive for the notification collaborator. Content formatting is theirs."""
    type:         str
    audience:     str = "user"          # "user" | "admin"
    recipient_id: Optional[str] = None  # None for admin broadcasts
    title:        str
    message:      str
    data:         dict[str, Any] = Field(default_factory=dict)
    created_at:   datetime


# ─────────────────────────────────────────────────────────────────────
# AUTH
# ─────────────────────────────────────────────────────────────────────

class CurrentUser(BaseModel):
    """
    Caller identity extracted from the JWT.
    Injected in the routers via Depends(get_current_user).
    """
    user_id: str
    role:    str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_service(self) -> bool:
        return self.role == "service"
