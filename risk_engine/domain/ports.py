"""
ports.py
--------
Interfaces of the collaborators the engine talks to.

The services only depend on these protocols. The PostgreSQL, Redis and
Stripe adapters under risk_engine/infrastructure implement them for
production; the test suite swaps in in-memory fakes.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol

from risk_engine.domain.schemas import (
    AutoRefundCase,
    Booking,
    CaseStatus,
    FraudScore,
    FraudScoreStats,
    Notification,
    RefundResult,
    RentalIssue,
    RiskLevel,
    SessionSnapshot,
    TimelineEntry,
    UserAccount,
)


class BookingRepository(Protocol):
    """Marketplace bookings as seen by the trigger monitor."""

    async def get(self, booking_id: str) -> Optional[Booking]: ...

    async def list_pending_created_before(self, cutoff: datetime) -> list[Booking]: ...

    async def list_confirmed_starting_before(self, cutoff: datetime) -> list[Booking]: ...

    async def list_active(self) -> list[Booking]: ...

    async def list_owner_cancellations_since(self, since: datetime) -> list[Booking]: ...

    async def has_message_from(self, booking_id: str, sender_id: str) -> bool: ...

    async def last_message_at(self, booking_id: str, sender_id: str) -> Optional[datetime]: ...

    async def list_open_urgent_issues(
        self, booking_id: str, opened_before: datetime
    ) -> list[RentalIssue]: ...

    async def mark_blocked(self, booking_id: str, fraud_score: int, at: datetime) -> None: ...


class SignalSource(Protocol):
    """Read-only evidence about a user, consumed by the signal collectors."""

    async def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    async def count_bookings_since(self, user_id: str, since: datetime) -> int: ...

    async def count_failed_payments_since(self, user_id: str, since: datetime) -> int: ...

    async def count_payment_methods_since(self, user_id: str, since: datetime) -> int: ...

    async def count_chargebacks(self, user_id: str) -> int: ...

    async def recent_messages(self, user_id: str, limit: int) -> list[str]: ...

    async def count_profile_views(
        self, user_id: str, booking_id: str, before: datetime
    ) -> tuple[int, int]: ...


class SessionStore(Protocol):
    async def last_session(self, user_id: str) -> Optional[SessionSnapshot]: ...

    async def record_session(self, user_id: str, snapshot: SessionSnapshot) -> None: ...


class CaseRepository(Protocol):
    """
    Owner of AutoRefundCase persistence. Every write is conditional so
    overlapping monitor passes and concurrent admin actions are safe.
    """

    async def create_if_absent(self, case: AutoRefundCase) -> bool:
        """Insert unless a case already exists for (booking_id, trigger_event)."""
        ...

    async def get(self, case_id: str) -> Optional[AutoRefundCase]: ...

    async def list_cases(
        self, status: Optional[CaseStatus] = None, limit: int = 50
    ) -> list[AutoRefundCase]: ...

    async def transition(
        self,
        case_id:       str,
        from_statuses: frozenset[CaseStatus],
        to_status:     CaseStatus,
        entry:         TimelineEntry,
        refund_fields: Optional[dict[str, Any]] = None,
    ) -> Optional[AutoRefundCase]:
        """Conditional status change + timeline append. None if the guard failed."""
        ...

    async def complete_with_booking_refund(
        self,
        case_id:            str,
        external_refund_id: str,
        completed_at:       datetime,
        entry:              TimelineEntry,
        refund_amount:      Decimal,
        refund_reason:      str,
    ) -> Optional[AutoRefundCase]:
        """processing → completed and booking → refunded in one transaction."""
        ...

    async def append_timeline(self, case_id: str, entry: TimelineEntry) -> None: ...

    async def list_stale(
        self, status: CaseStatus, updated_before: datetime, limit: int = 100
    ) -> list[AutoRefundCase]:
        """Cases sitting in `status` since before `updated_before`, oldest first."""
        ...


class FraudScoreRepository(Protocol):
    async def save(self, score: FraudScore) -> None: ...

    async def list_scores(
        self,
        booking_id: Optional[str] = None,
        user_id:    Optional[str] = None,
        risk_level: Optional[RiskLevel] = None,
        limit:      int = 50,
    ) -> list[FraudScore]: ...

    async def stats(self, since_24h: datetime) -> FraudScoreStats: ...


class PaymentGateway(Protocol):
    async def refund(
        self, charge_ref: str, amount: Decimal, idempotency_key: str
    ) -> RefundResult:
        """Raises RefundGatewayException on any failure."""
        ...

    async def find_refund(
        self, charge_ref: str, idempotency_key: str
    ) -> Optional[RefundResult]: ...


class NotificationQueue(Protocol):
    async def enqueue(self, notification: Notification) -> None: ...
