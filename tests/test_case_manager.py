import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from risk_engine.core.exceptions import CaseNotFoundException, InvalidCaseTransitionException
from risk_engine.domain.schemas import BookingStatus, CaseStatus, RefundResult
from risk_engine.services.case_manager import compute_refund_amount

from conftest import NOW


def _open(harness, booking, trigger_name, event="test_event"):
    trigger = harness.registry.refund_trigger(trigger_name)
    return asyncio.run(harness.case_manager.open_case(booking, trigger, event, {"source": "test"}))


def _events(case):
    return [entry.event for entry in case.timeline]


# ── Refund amount ─────────────────────────────────────────────────────

@pytest.mark.parametrize("total, percentage, expected", [
    (Decimal("200"),    1.0, Decimal("200")),
    (Decimal("150.00"), 0.5, Decimal("75")),
    (Decimal("99.00"),  0.5, Decimal("50")),    # 49.5 rounds up
    (Decimal("99.98"),  1.0, Decimal("99.98")), # never above the total
    (Decimal("0"),      1.0, Decimal("0")),
])
def test_compute_refund_amount(total, percentage, expected):
    assert compute_refund_amount(total, percentage) == expected


# ── Automatic cases ───────────────────────────────────────────────────

def test_automatic_case_completes_and_refunds_booking(harness, make_booking):
    booking = harness.bookings.add(make_booking(total_price=Decimal("200")))

    case = _open(harness, booking, "late_cancellation_by_owner")

    assert case.status == CaseStatus.COMPLETED
    assert _events(case) == ["case_created", "processing_started", "refund_completed"]
    assert case.refund.attempts == 1
    assert case.refund.external_refund_id == "re_1"
    assert harness.payments.calls == [("ch_test_1", Decimal("200"), f"auto-refund-{case.id}")]

    refunded = harness.bookings.bookings[booking.id]
    assert refunded.status == BookingStatus.REFUNDED
    assert refunded.refund_amount == Decimal("200")
    assert refunded.auto_refund_case_id == case.id
    assert refunded.refund_reason == case.trigger.description

    assert [n.type for n in harness.notifications.sent] == [
        "auto_refund_initiated", "auto_refund_warning", "auto_refund_case", "auto_refund_completed",
    ]


def test_timeline_is_ordered_and_attributed(harness, make_booking):
    booking = harness.bookings.add(make_booking())
    case = _open(harness, booking, "no_initial_response")

    timestamps = [entry.timestamp for entry in case.timeline]
    assert timestamps == sorted(timestamps)
    assert all(entry.actor == "system" for entry in case.timeline)
    assert case.detection.detected_at == NOW
    assert case.detection.response_deadline == NOW + timedelta(hours=24)


def test_payment_error_fails_case_and_leaves_booking_untouched(harness, make_booking):
    booking = harness.bookings.add(make_booking())
    harness.payments.error = "Your card was declined."

    case = _open(harness, booking, "no_initial_response")

    assert case.status == CaseStatus.FAILED
    assert case.refund.failure_reason == "Your card was declined."
    assert case.refund.failed_at == NOW
    assert _events(case)[-1] == "refund_failed"
    assert harness.bookings.bookings[booking.id].status == BookingStatus.PENDING
    assert harness.bookings.bookings[booking.id].refund_amount is None
    assert len(harness.notifications.of_type("auto_refund_failed")) == 1
    assert harness.notifications.of_type("auto_refund_completed") == []


def test_booking_without_charge_fails_without_calling_payments(harness, make_booking):
    booking = harness.bookings.add(make_booking(payment_charge_id=None))

    case = _open(harness, booking, "no_initial_response")

    assert case.status == CaseStatus.FAILED
    assert "no payment charge" in case.refund.failure_reason
    assert harness.payments.calls == []


def test_notification_outage_does_not_block_refunds(harness, make_booking):
    booking = harness.bookings.add(make_booking())
    harness.notifications.fail = True

    case = _open(harness, booking, "no_initial_response")

    assert case.status == CaseStatus.COMPLETED
    assert harness.bookings.bookings[booking.id].status == BookingStatus.REFUNDED


def test_second_case_for_same_event_is_not_created(harness, make_booking):
    booking = harness.bookings.add(make_booking())
    harness.payments.error = "timeout"

    first  = _open(harness, booking, "no_initial_response", event="no_owner_response_24h")
    second = _open(harness, booking, "no_initial_response", event="no_owner_response_24h")

    assert first.status == CaseStatus.FAILED
    assert second is None
    assert len(harness.cases.cases) == 1
    assert len(harness.payments.calls) == 1


# ── Manual review ─────────────────────────────────────────────────────

def test_manual_review_case_waits_for_approval(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE, total_price=Decimal("150")))

    case = _open(harness, booking, "unresponsive_during_rental")

    assert case.status == CaseStatus.PENDING
    assert case.refund_amount == Decimal("75")
    assert harness.payments.calls == []
    assert harness.notifications.of_type("auto_refund_case")[0].data["requires_review"] is True

    with pytest.raises(InvalidCaseTransitionException):
        asyncio.run(harness.case_manager.process_case(case.id))

    approved = asyncio.run(harness.case_manager.approve_case(case.id, "admin-7", "owner unreachable"))

    assert approved.status == CaseStatus.COMPLETED
    assert _events(approved) == ["case_created", "case_approved", "refund_completed"]
    assert approved.timeline[1].actor == "admin-7"
    assert approved.timeline[1].metadata == {"notes": "owner unreachable"}
    assert harness.bookings.bookings[booking.id].refund_amount == Decimal("75")


def test_rejected_case_is_terminal(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    case = _open(harness, booking, "unresponsive_during_rental")

    rejected = asyncio.run(harness.case_manager.reject_case(case.id, "admin-7", "owner replied by phone"))

    assert rejected.status == CaseStatus.CANCELLED
    assert rejected.timeline[-1].metadata == {"reason": "owner replied by phone"}
    assert harness.notifications.of_type("auto_refund_rejected")[0].recipient_id == booking.renter_id
    assert harness.payments.calls == []

    with pytest.raises(InvalidCaseTransitionException):
        asyncio.run(harness.case_manager.approve_case(case.id, "admin-7"))
    with pytest.raises(InvalidCaseTransitionException):
        asyncio.run(harness.case_manager.reject_case(case.id, "admin-7", "again"))


def test_unknown_case_raises_not_found(harness):
    with pytest.raises(CaseNotFoundException):
        asyncio.run(harness.case_manager.get_case("missing"))
    with pytest.raises(CaseNotFoundException):
        asyncio.run(harness.case_manager.approve_case("missing", "admin-7"))


# ── Retry and reconciliation ──────────────────────────────────────────

def test_retry_issues_a_new_refund_attempt(harness, make_booking):
    booking = harness.bookings.add(make_booking())
    harness.payments.error = "provider unavailable"
    failed = _open(harness, booking, "no_initial_response")

    harness.payments.error = None
    retried = asyncio.run(harness.case_manager.retry_case(failed.id, "admin-7"))

    assert retried.status == CaseStatus.COMPLETED
    assert retried.refund.attempts == 2
    assert retried.refund.failure_reason is None
    assert "retry_started" in _events(retried)
    assert len(harness.payments.calls) == 2
    assert harness.payments.lookups == [failed.idempotency_key]


def test_retry_completes_from_existing_refund_without_new_call(harness, make_booking):
    booking = harness.bookings.add(make_booking())
    harness.payments.error = "read timeout"
    failed = _open(harness, booking, "no_initial_response")
    # the provider did process the first attempt
    harness.payments.refunds[failed.idempotency_key] = RefundResult(external_refund_id="re_late")

    retried = asyncio.run(harness.case_manager.retry_case(failed.id, "admin-7"))

    assert retried.status == CaseStatus.COMPLETED
    assert retried.refund.external_refund_id == "re_late"
    assert "existing_refund_found" in _events(retried)
    assert len(harness.payments.calls) == 1
    assert harness.bookings.bookings[booking.id].status == BookingStatus.REFUNDED


def test_retry_requires_failed_status(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    case = _open(harness, booking, "unresponsive_during_rental")

    with pytest.raises(InvalidCaseTransitionException):
        asyncio.run(harness.case_manager.retry_case(case.id, "admin-7"))


def _stuck_in_processing(harness, booking):
    case = _open(harness, booking, "unresponsive_during_rental")
    return asyncio.run(harness.case_manager._start_processing(
        case, "admin-7", "case_approved", "Refund approved by reviewer"
    ))


def test_reconcile_completes_when_provider_has_the_refund(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    stuck = _stuck_in_processing(harness, booking)
    harness.payments.refunds[stuck.idempotency_key] = RefundResult(external_refund_id="re_found")

    resolved = asyncio.run(harness.case_manager.reconcile_stale_case(stuck))

    assert resolved.status == CaseStatus.COMPLETED
    assert resolved.timeline[-1].actor == "reconciler"
    assert harness.payments.calls == []


def test_reconcile_fails_when_provider_has_nothing(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    stuck = _stuck_in_processing(harness, booking)

    resolved = asyncio.run(harness.case_manager.reconcile_stale_case(stuck))

    assert resolved.status == CaseStatus.FAILED
    assert resolved.timeline[-1].actor == "reconciler"
    assert harness.payments.calls == []
    assert harness.bookings.bookings[booking.id].status == BookingStatus.ACTIVE


# ── Pending refunds ───────────────────────────────────────────────────

def test_pending_refund_keeps_case_processing(harness, make_booking):
    booking = harness.bookings.add(make_booking(total_price=Decimal("200")))
    harness.payments.status = "pending"

    case = _open(harness, booking, "late_cancellation_by_owner")

    assert case.status == CaseStatus.PROCESSING
    assert _events(case)[-1] == "refund_pending"
    assert case.timeline[-1].metadata["external_refund_id"] == "re_1"
    assert harness.bookings.bookings[booking.id].status == BookingStatus.PENDING
    assert harness.notifications.of_type("auto_refund_completed") == []


def test_reconcile_waits_for_pending_refund_then_completes(harness, make_booking):
    booking = harness.bookings.add(make_booking(total_price=Decimal("200")))
    harness.payments.status = "pending"
    case = _open(harness, booking, "late_cancellation_by_owner")

    still = asyncio.run(harness.case_manager.reconcile_stale_case(case))
    assert still.status == CaseStatus.PROCESSING

    harness.payments.refunds[case.idempotency_key] = RefundResult(external_refund_id="re_1")
    settled = asyncio.run(harness.case_manager.reconcile_stale_case(still))

    assert settled.status == CaseStatus.COMPLETED
    assert settled.refund.external_refund_id == "re_1"
    assert harness.bookings.bookings[booking.id].status == BookingStatus.REFUNDED
    assert len(harness.payments.calls) == 1


def test_pending_refund_that_later_fails_fails_the_case(harness, make_booking):
    booking = harness.bookings.add(make_booking(total_price=Decimal("200")))
    harness.payments.status = "pending"
    case = _open(harness, booking, "late_cancellation_by_owner")

    harness.payments.refunds[case.idempotency_key] = RefundResult(external_refund_id="re_1", status="failed")
    resolved = asyncio.run(harness.case_manager.reconcile_stale_case(case))

    assert resolved.status == CaseStatus.FAILED
    assert harness.bookings.bookings[booking.id].status == BookingStatus.PENDING
