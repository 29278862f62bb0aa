import asyncio
from datetime import timedelta
from decimal import Decimal

from risk_engine.domain.schemas import (
    AutoRefundCase,
    BookingStatus,
    CaseDetection,
    CaseStatus,
    DeliveryMethod,
    RefundResult,
    RentalIssue,
)
from risk_engine.services.trigger_monitor import EVENT_LATE_CANCELLATION

from conftest import NOW


def _run(harness):
    return asyncio.run(harness.monitor.run_pass())


def _only_case(harness):
    (case,) = harness.cases.cases.values()
    return case


# ── No initial response ───────────────────────────────────────────────

def test_owner_silent_for_a_day_gets_full_automatic_refund(harness, make_booking):
    booking = harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=25)))

    report = _run(harness)

    case = _only_case(harness)
    assert report.checked == 1
    assert report.triggered == 1
    assert report.case_ids == [case.id]
    assert case.trigger.name == "no_initial_response"
    assert case.trigger.refund_percentage == 1.0
    assert case.status == CaseStatus.COMPLETED

    refunded = harness.bookings.bookings[booking.id]
    assert refunded.status == BookingStatus.REFUNDED
    assert refunded.refund_amount == booking.total_price


def test_owner_reply_prevents_no_response_case(harness, make_booking):
    booking = harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=30)))
    harness.bookings.messages.append((booking.id, booking.owner_id, NOW - timedelta(hours=29)))

    report = _run(harness)

    assert report.checked == 1
    assert report.triggered == 0
    assert harness.cases.cases == {}


def test_recent_pending_booking_is_not_a_candidate(harness, make_booking):
    harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=23)))

    assert _run(harness).checked == 0


# ── Late cancellation ─────────────────────────────────────────────────

def test_owner_cancelling_ten_hours_before_start_refunds_in_full(harness, make_booking):
    booking = harness.bookings.add(make_booking(
        status       = BookingStatus.CANCELLED,
        total_price  = Decimal("200"),
        start_date   = NOW + timedelta(hours=9),
        cancelled_by = "owner",
        cancelled_at = NOW - timedelta(hours=1),
    ))

    _run(harness)

    case = _only_case(harness)
    assert case.trigger.name == "late_cancellation_by_owner"
    assert case.trigger.requires_manual_review is False
    assert case.detection.trigger_event == EVENT_LATE_CANCELLATION
    assert case.detection.evidence_data["hours_before_start"] == 10
    assert case.refund_amount == Decimal("200")
    assert case.status == CaseStatus.COMPLETED
    assert harness.bookings.bookings[booking.id].refund_amount == Decimal("200")


def test_cancellation_with_enough_notice_or_by_renter_is_ignored(harness, make_booking):
    harness.bookings.add(make_booking(
        status=BookingStatus.CANCELLED, start_date=NOW + timedelta(hours=30),
        cancelled_by="owner", cancelled_at=NOW - timedelta(hours=1),
    ))
    harness.bookings.add(make_booking(
        status=BookingStatus.CANCELLED, start_date=NOW + timedelta(hours=2),
        cancelled_by="renter", cancelled_at=NOW - timedelta(hours=1),
    ))

    report = _run(harness)

    assert report.triggered == 0
    assert harness.cases.cases == {}


# ── No-show ───────────────────────────────────────────────────────────

def test_undelivered_booking_uses_delivery_trigger(harness, make_booking):
    harness.bookings.add(make_booking(
        status          = BookingStatus.CONFIRMED,
        start_date      = NOW - timedelta(hours=3),
        delivery_method = DeliveryMethod.DELIVERY,
    ))

    _run(harness)

    case = _only_case(harness)
    assert case.trigger.name == "no_show_delivery"
    assert case.detection.evidence_data["delivery_method"] == "delivery"


def test_confirmed_pickup_is_not_a_no_show(harness, make_booking):
    harness.bookings.add(make_booking(
        status=BookingStatus.CONFIRMED, start_date=NOW - timedelta(hours=3), pickup_confirmed=True,
    ))
    harness.bookings.add(make_booking(
        status=BookingStatus.CONFIRMED, start_date=NOW - timedelta(hours=1),
    ))

    report = _run(harness)

    assert report.checked == 1
    assert harness.cases.cases == {}


# ── Unresponsive during rental ────────────────────────────────────────

def _urgent_issue(booking, hours_ago, priority="urgent"):
    return RentalIssue(
        id          = f"issue-{booking.id}-{hours_ago}",
        booking_id  = booking.id,
        priority    = priority,
        status      = "open",
        description = "Battery charger missing",
        created_at  = NOW - timedelta(hours=hours_ago),
    )


def test_unresponsive_owner_opens_case_for_review(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    harness.bookings.issues.append(_urgent_issue(booking, hours_ago=13))
    harness.bookings.messages.append((booking.id, booking.owner_id, NOW - timedelta(hours=20)))

    report = _run(harness)

    case = _only_case(harness)
    assert report.triggered == 1
    assert case.trigger.name == "unresponsive_during_rental"
    assert case.status == CaseStatus.PENDING
    assert case.refund_amount == Decimal("75")
    assert harness.payments.calls == []


def test_owner_reply_after_issue_prevents_case(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    harness.bookings.issues.append(_urgent_issue(booking, hours_ago=13))
    harness.bookings.messages.append((booking.id, booking.owner_id, NOW - timedelta(hours=2)))

    _run(harness)

    assert harness.cases.cases == {}


def test_recent_or_low_priority_issues_are_ignored(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    harness.bookings.issues.append(_urgent_issue(booking, hours_ago=5))
    harness.bookings.issues.append(_urgent_issue(booking, hours_ago=20, priority="low"))

    _run(harness)

    assert harness.cases.cases == {}


# ── Idempotence and isolation ─────────────────────────────────────────

def test_second_pass_does_not_duplicate_cases(harness, make_booking):
    harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=26)))
    active = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    harness.bookings.issues.append(_urgent_issue(active, hours_ago=14))
    harness.payments.error = "card_declined"

    first  = _run(harness)
    second = _run(harness)

    assert first.triggered == 2
    assert second.triggered == 0
    assert second.skipped_existing == 2
    assert len(harness.cases.cases) == 2
    assert len(harness.payments.calls) == 1


def test_overlapping_passes_open_a_single_case(harness, make_booking):
    harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=26)))

    async def overlapping():
        return await asyncio.gather(harness.monitor.run_pass(), harness.monitor.run_pass())

    reports = asyncio.run(overlapping())

    assert sum(r.triggered for r in reports) == 1
    assert len(harness.cases.cases) == 1
    assert len(harness.payments.calls) == 1


def test_one_broken_booking_does_not_abort_the_pass(harness, make_booking):
    broken = harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=30)))
    healthy = harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=30)))
    harness.bookings.broken.add(broken.id)

    report = _run(harness)

    assert report.checked == 2
    assert report.errors == 1
    assert report.triggered == 1
    assert _only_case(harness).booking_id == healthy.id


def test_notification_outage_does_not_abort_the_pass(harness, make_booking):
    harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=30)))
    harness.notifications.fail = True

    report = _run(harness)

    assert report.errors == 0
    assert _only_case(harness).status == CaseStatus.COMPLETED


# ── Reconciliation ────────────────────────────────────────────────────

def test_stale_processing_case_is_reconciled_from_the_provider(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    case = asyncio.run(harness.case_manager.open_case(
        booking, harness.registry.refund_trigger("unresponsive_during_rental"), "manual", {},
    ))
    asyncio.run(harness.case_manager._start_processing(case, "admin-7", "case_approved", "approved"))
    harness.payments.refunds[case.idempotency_key] = RefundResult(external_refund_id="re_found")

    harness.clock.advance(minutes=10)
    assert _run(harness).reconciled == 0

    harness.clock.advance(minutes=30)
    report = _run(harness)

    assert report.reconciled == 1
    assert _only_case(harness).status == CaseStatus.COMPLETED
    assert _only_case(harness).refund.external_refund_id == "re_found"
    assert harness.payments.calls == []


def test_stale_automatic_pending_case_is_processed(harness, make_booking):
    booking = harness.bookings.add(make_booking(
        status=BookingStatus.CONFIRMED, start_date=NOW + timedelta(days=3),
    ))
    stranded = AutoRefundCase(
        id                = "case-stranded",
        booking_id        = booking.id,
        renter_id         = booking.renter_id,
        owner_id          = booking.owner_id,
        gear_title        = booking.gear_title,
        total_amount      = booking.total_price,
        refund_amount     = booking.total_price,
        payment_charge_id = booking.payment_charge_id,
        trigger           = harness.registry.refund_trigger("late_cancellation_by_owner"),
        detection         = CaseDetection(
            detected_at       = NOW,
            trigger_event     = EVENT_LATE_CANCELLATION,
            response_deadline = NOW,
        ),
        created_at        = NOW,
        updated_at        = NOW,
    )
    asyncio.run(harness.cases.create_if_absent(stranded))
    harness.clock.advance(hours=1)

    report = _run(harness)

    assert report.reconciled == 1
    assert harness.cases.cases["case-stranded"].status == CaseStatus.COMPLETED
    assert len(harness.payments.calls) == 1


def test_pending_review_cases_are_left_alone(harness, make_booking):
    booking = harness.bookings.add(make_booking(status=BookingStatus.ACTIVE))
    asyncio.run(harness.case_manager.open_case(
        booking, harness.registry.refund_trigger("unresponsive_during_rental"), "manual", {},
    ))
    harness.clock.advance(days=2)

    report = _run(harness)

    assert report.reconciled == 0
    assert _only_case(harness).status == CaseStatus.PENDING


def test_pending_refund_is_settled_by_a_later_pass(harness, make_booking):
    booking = harness.bookings.add(make_booking(created_at=NOW - timedelta(hours=25)))
    harness.payments.status = "pending"

    first = _run(harness)
    case  = _only_case(harness)
    assert first.triggered == 1
    assert case.status == CaseStatus.PROCESSING

    harness.clock.advance(minutes=31)
    waiting = _run(harness)
    assert waiting.reconciled == 0
    assert _only_case(harness).status == CaseStatus.PROCESSING

    harness.payments.refunds[case.idempotency_key] = RefundResult(external_refund_id="re_1")
    settled = _run(harness)

    assert settled.reconciled == 1
    assert _only_case(harness).status == CaseStatus.COMPLETED
    assert harness.bookings.bookings[booking.id].status == BookingStatus.REFUNDED
    assert len(harness.payments.calls) == 1
