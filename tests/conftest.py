"""
In-memory collaborators and a pinned clock for the service tests.

The fakes implement the protocols in risk_engine/domain/ports.py with the
same guarantees the PostgreSQL adapters give: conditional transitions,
create-if-absent on (booking_id, trigger_event) and an atomic
case-complete + booking-refunded write.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

import pytest

from risk_engine.core.exceptions import RefundGatewayException
from risk_engine.domain.rules import RuleRegistry
from risk_engine.domain.schemas import (
    AutoRefundCase,
    Booking,
    BookingStatus,
    CaseStatus,
    FraudScore,
    FraudScoreStats,
    Notification,
    RefundResult,
    RentalIssue,
    SessionSnapshot,
    TimelineEntry,
    UserAccount,
)
from risk_engine.services.action_dispatcher import ActionDispatcher
from risk_engine.services.case_manager import CaseManager
from risk_engine.services.fraud_analyzer import FraudAnalyzer
from risk_engine.services.signal_collectors import SignalCollectors
from risk_engine.services.trigger_monitor import TriggerMonitor

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now = self._now + timedelta(**kwargs)


# ── Bookings ──────────────────────────────────────────────────────────

class FakeBookingRepository:

    def __init__(self):
        self.bookings: dict[str, Booking] = {}
        self.messages: list[tuple[str, str, datetime]] = []   # (booking_id, sender_id, sent_at)
        self.issues:   list[RentalIssue] = []
        self.broken:   set[str] = set()                       # booking ids whose reads raise

    def add(self, booking: Booking) -> Booking:
        self.bookings[booking.id] = booking
        return booking

    def _check(self, booking_id: str) -> None:
        if booking_id in self.broken:
            raise RuntimeError(f"storage error reading booking {booking_id}")

    async def get(self, booking_id: str) -> Optional[Booking]:
        return self.bookings.get(booking_id)

    async def list_pending_created_before(self, cutoff: datetime) -> list[Booking]:
        return [
            b for b in self.bookings.values()
            if b.status == BookingStatus.PENDING and b.created_at <= cutoff
        ]

    async def list_confirmed_starting_before(self, cutoff: datetime) -> list[Booking]:
        return [
            b for b in self.bookings.values()
            if b.status == BookingStatus.CONFIRMED and b.start_date is not None and b.start_date <= cutoff
        ]

    async def list_active(self) -> list[Booking]:
        return [b for b in self.bookings.values() if b.status == BookingStatus.ACTIVE]

    async def list_owner_cancellations_since(self, since: datetime) -> list[Booking]:
        return [
            b for b in self.bookings.values()
            if b.status == BookingStatus.CANCELLED
            and b.cancelled_by == "owner"
            and b.cancelled_at is not None
            and b.cancelled_at >= since
        ]

    async def has_message_from(self, booking_id: str, sender_id: str) -> bool:
        self._check(booking_id)
        return any(m[0] == booking_id and m[1] == sender_id for m in self.messages)

    async def last_message_at(self, booking_id: str, sender_id: str) -> Optional[datetime]:
        self._check(booking_id)
        sent = [m[2] for m in self.messages if m[0] == booking_id and m[1] == sender_id]
        return max(sent) if sent else None

    async def list_open_urgent_issues(self, booking_id: str, opened_before: datetime) -> list[RentalIssue]:
        self._check(booking_id)
        return [
            i for i in self.issues
            if i.booking_id == booking_id
            and i.priority in ("high", "urgent")
            and i.status == "open"
            and i.created_at <= opened_before
        ]

    async def mark_blocked(self, booking_id: str, fraud_score: int, at: datetime) -> None:
        booking = self.bookings[booking_id]
        self.bookings[booking_id] = booking.model_copy(update={"status": BookingStatus.BLOCKED_FRAUD})

    def apply_refund(self, booking_id: str, case_id: str, amount: Decimal, reason: str, at: datetime) -> None:
        booking = self.bookings[booking_id]
        self.bookings[booking_id] = booking.model_copy(update={
            "status":              BookingStatus.REFUNDED,
            "refund_amount":       amount,
            "refund_reason":       reason,
            "refunded_at":         at,
            "auto_refund_case_id": case_id,
        })


# ── Signal evidence ───────────────────────────────────────────────────

class FakeSignalSource:

    def __init__(self):
        self.users:           dict[str, UserAccount] = {}
        self.booking_times:   dict[str, list[datetime]] = {}
        self.failed_payments: dict[str, list[datetime]] = {}
        self.payment_methods: dict[str, list[datetime]] = {}
        self.chargebacks:     dict[str, int] = {}
        self.messages:        dict[str, list[str]] = {}
        self.profile_views:   dict[str, tuple[int, int]] = {}
        self.broken:          set[str] = set()   # method names that raise

    def _check(self, method: str) -> None:
        if method in self.broken:
            raise ConnectionError(f"{method} unavailable")

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        self._check("get_user")
        return self.users.get(user_id)

    async def count_bookings_since(self, user_id: str, since: datetime) -> int:
        self._check("count_bookings_since")
        return sum(1 for t in self.booking_times.get(user_id, []) if t >= since)

    async def count_failed_payments_since(self, user_id: str, since: datetime) -> int:
        self._check("count_failed_payments_since")
        return sum(1 for t in self.failed_payments.get(user_id, []) if t >= since)

    async def count_payment_methods_since(self, user_id: str, since: datetime) -> int:
        self._check("count_payment_methods_since")
        return sum(1 for t in self.payment_methods.get(user_id, []) if t >= since)

    async def count_chargebacks(self, user_id: str) -> int:
        self._check("count_chargebacks")
        return self.chargebacks.get(user_id, 0)

    async def recent_messages(self, user_id: str, limit: int) -> list[str]:
        self._check("recent_messages")
        return self.messages.get(user_id, [])[:limit]

    async def count_profile_views(self, user_id: str, booking_id: str, before: datetime) -> tuple[int, int]:
        self._check("count_profile_views")
        return self.profile_views.get(user_id, (1, 1))


class FakeSessionStore:

    def __init__(self):
        self.snapshots: dict[str, SessionSnapshot] = {}

    async def last_session(self, user_id: str) -> Optional[SessionSnapshot]:
        return self.snapshots.get(user_id)

    async def record_session(self, user_id: str, snapshot: SessionSnapshot) -> None:
        self.snapshots[user_id] = snapshot


# ── Cases ─────────────────────────────────────────────────────────────

class FakeCaseRepository:

    def __init__(self, bookings: FakeBookingRepository):
        self.bookings = bookings
        self.cases: dict[str, AutoRefundCase] = {}

    async def create_if_absent(self, case: AutoRefundCase) -> bool:
        for existing in self.cases.values():
            if (
                existing.booking_id == case.booking_id
                and existing.detection.trigger_event == case.detection.trigger_event
            ):
                return False
        self.cases[case.id] = case
        return True

    async def get(self, case_id: str) -> Optional[AutoRefundCase]:
        return self.cases.get(case_id)

    async def list_cases(self, status: Optional[CaseStatus] = None, limit: int = 50) -> list[AutoRefundCase]:
        cases = [c for c in self.cases.values() if status is None or c.status == status]
        return sorted(cases, key=lambda c: c.created_at, reverse=True)[:limit]

    async def transition(
        self,
        case_id:       str,
        from_statuses: frozenset[CaseStatus],
        to_status:     CaseStatus,
        entry:         TimelineEntry,
        refund_fields: Optional[dict[str, Any]] = None,
    ) -> Optional[AutoRefundCase]:
        case = self.cases.get(case_id)
        if case is None or case.status not in from_statuses:
            return None
        updated = case.model_copy(update={
            "status":     to_status,
            "timeline":   [*case.timeline, entry],
            "refund":     case.refund.model_copy(update=refund_fields or {}),
            "updated_at": entry.timestamp,
        })
        self.cases[case_id] = updated
        return updated

    async def complete_with_booking_refund(
        self,
        case_id:            str,
        external_refund_id: str,
        completed_at:       datetime,
        entry:              TimelineEntry,
        refund_amount:      Decimal,
        refund_reason:      str,
    ) -> Optional[AutoRefundCase]:
        completed = await self.transition(
            case_id,
            frozenset({CaseStatus.PROCESSING}),
            CaseStatus.COMPLETED,
            entry,
            refund_fields = {"external_refund_id": external_refund_id, "completed_at": completed_at},
        )
        if completed is not None:
            self.bookings.apply_refund(
                completed.booking_id, case_id, refund_amount, refund_reason, completed_at
            )
        return completed

    async def append_timeline(self, case_id: str, entry: TimelineEntry) -> None:
        case = self.cases[case_id]
        self.cases[case_id] = case.model_copy(update={
            "timeline":   [*case.timeline, entry],
            "updated_at": entry.timestamp,
        })

    async def list_stale(
        self, status: CaseStatus, updated_before: datetime, limit: int = 100
    ) -> list[AutoRefundCase]:
        stale = [c for c in self.cases.values() if c.status == status and c.updated_at < updated_before]
        return sorted(stale, key=lambda c: c.updated_at)[:limit]


# ── Fraud audit ───────────────────────────────────────────────────────

class FakeFraudScoreRepository:

    def __init__(self):
        self.saved: list[FraudScore] = []
        self.fail = False

    async def save(self, score: FraudScore) -> None:
        if self.fail:
            raise ConnectionError("audit store down")
        self.saved.append(score)

    async def list_scores(self, booking_id=None, user_id=None, risk_level=None, limit=50) -> list[FraudScore]:
        scores = [
            s for s in self.saved
            if (booking_id is None or s.booking_id == booking_id)
            and (user_id is None or s.user_id == user_id)
            and (risk_level is None or s.risk_level == risk_level)
        ]
        return scores[:limit]

    async def stats(self, since_24h: datetime) -> FraudScoreStats:
        return FraudScoreStats(
            total            = len(self.saved),
            blocked_bookings = sum(1 for s in self.saved if s.actions.blocked),
            last_24_hours    = sum(1 for s in self.saved if s.analyzed_at >= since_24h),
        )


# ── Payments and notifications ────────────────────────────────────────

class FakePaymentGateway:

    def __init__(self):
        self.refunds: dict[str, RefundResult] = {}   # idempotency_key → refund
        self.calls:   list[tuple[str, Decimal, str]] = []
        self.lookups: list[str] = []
        self.error:   Optional[str] = None
        self.status   = "succeeded"                  # status of newly issued refunds

    async def refund(self, charge_ref: str, amount: Decimal, idempotency_key: str) -> RefundResult:
        self.calls.append((charge_ref, amount, idempotency_key))
        if self.error:
            raise RefundGatewayException(self.error)
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = RefundResult(
                external_refund_id = f"re_{len(self.refunds) + 1}",
                status             = self.status,
                amount             = amount,
            )
        return self.refunds[idempotency_key]

    async def find_refund(self, charge_ref: str, idempotency_key: str) -> Optional[RefundResult]:
        self.lookups.append(idempotency_key)
        refund = self.refunds.get(idempotency_key)
        if refund is None or refund.status not in ("succeeded", "pending"):
            return None
        return refund


class FakeNotificationQueue:

    def __init__(self):
        self.sent: list[Notification] = []
        self.fail = False

    async def enqueue(self, notification: Notification) -> None:
        if self.fail:
            raise ConnectionError("queue unavailable")
        self.sent.append(notification)

    def of_type(self, type_: str) -> list[Notification]:
        return [n for n in self.sent if n.type == type_]


# ── Wiring ────────────────────────────────────────────────────────────

@dataclass
class Harness:
    clock:         FixedClock
    registry:      RuleRegistry
    bookings:      FakeBookingRepository
    signals:       FakeSignalSource
    sessions:      FakeSessionStore
    cases:         FakeCaseRepository
    scores:        FakeFraudScoreRepository
    payments:      FakePaymentGateway
    notifications: FakeNotificationQueue
    dispatcher:    ActionDispatcher
    case_manager:  CaseManager
    monitor:       TriggerMonitor
    analyzer:      FraudAnalyzer


@pytest.fixture
def harness() -> Harness:
    clock         = FixedClock()
    registry      = RuleRegistry()
    bookings      = FakeBookingRepository()
    signals       = FakeSignalSource()
    sessions      = FakeSessionStore()
    cases         = FakeCaseRepository(bookings)
    scores        = FakeFraudScoreRepository()
    payments      = FakePaymentGateway()
    notifications = FakeNotificationQueue()

    dispatcher   = ActionDispatcher(notifications, bookings, clock)
    case_manager = CaseManager(cases, payments, dispatcher, clock)

    return Harness(
        clock         = clock,
        registry      = registry,
        bookings      = bookings,
        signals       = signals,
        sessions      = sessions,
        cases         = cases,
        scores        = scores,
        payments      = payments,
        notifications = notifications,
        dispatcher    = dispatcher,
        case_manager  = case_manager,
        monitor       = TriggerMonitor(
            bookings, case_manager, registry, clock,
            concurrency=4, lookback_hours=72, stale_minutes=30,
        ),
        analyzer      = FraudAnalyzer(
            SignalCollectors(signals, sessions, clock),
            scores, sessions, dispatcher, registry, clock,
        ),
    )


@pytest.fixture
def make_booking():
    counter = {"n": 0}

    def _make(**overrides) -> Booking:
        counter["n"] += 1
        fields = {
            "id":                f"bk-{counter['n']}",
            "renter_id":         "renter-1",
            "owner_id":          "owner-1",
            "gear_title":        "Canon EOS R5",
            "total_price":       Decimal("150.00"),
            "status":            BookingStatus.PENDING,
            "created_at":        NOW - timedelta(hours=1),
            "payment_charge_id": "ch_test_1",
        }
        fields.update(overrides)
        return Booking(**fields)

    return _make
