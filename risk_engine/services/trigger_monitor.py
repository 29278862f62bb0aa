"""
trigger_monitor.py
------------------
One monitoring pass over in-flight bookings.

Invoked by an external scheduler (jobs/refund_monitor.py or
POST /v1/refunds/monitor/run). It owns no loop and keeps no state between
passes: every detection is re-derived from the bookings themselves, so
running it twice against unchanged data creates nothing new.

Detectors:
  no_initial_response        → pending ≥ 24h, owner never wrote
  no_show_pickup / _delivery → confirmed, start ≥ 2h ago, nothing confirmed
  unresponsive_during_rental → active, open high/urgent issue ≥ 12h,
                               no owner message since the oldest one
  late_cancellation_by_owner → owner cancelled ≤ 24h before start

Per-booking work runs under an asyncio.Semaphore. A failure on one booking
is logged and counted; the rest of the pass continues.

After detection the pass reconciles cases stuck in processing (and
automatic cases left pending) for longer than PROCESSING_STALE_MINUTES.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from risk_engine.core.clock import Clock
from risk_engine.core.config import settings
from risk_engine.domain.ports import BookingRepository
from risk_engine.domain.rules import RuleRegistry
from risk_engine.domain.schemas import Booking, CaseStatus, DeliveryMethod, MonitorReport
from risk_engine.services.case_manager import CaseManager

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
#  Trigger events (dedup key together with booking_id)               #
# ------------------------------------------------------------------ #
EVENT_NO_OWNER_RESPONSE   = "no_owner_response_24h"
EVENT_NO_SHOW             = "no_show_detected"
EVENT_UNRESPONSIVE        = "unresponsive_to_urgent_issue"
EVENT_LATE_CANCELLATION   = "owner_cancelled_within_24h"

LATE_CANCELLATION_WINDOW_HOURS = 24


@dataclass
class TriggerMatch:
    trigger_name:  str
    trigger_event: str
    evidence:      dict[str, Any] = field(default_factory=dict)


Detector = Callable[[Booking, datetime], Awaitable[Optional[TriggerMatch]]]


def _hours(delta: timedelta) -> float:
    return round(delta.total_seconds() / 3600, 2)


class TriggerMonitor:

    def __init__(
        self,
        bookings:       BookingRepository,
        case_manager:   CaseManager,
        registry:       RuleRegistry,
        clock:          Clock,
        concurrency:    int = settings.MONITOR_CONCURRENCY,
        lookback_hours: int = settings.LATE_CANCELLATION_LOOKBACK_HOURS,
        stale_minutes:  int = settings.PROCESSING_STALE_MINUTES,
    ):
        self.bookings       = bookings
        self.case_manager   = case_manager
        self.registry       = registry
        self.clock          = clock
        self.concurrency    = max(1, concurrency)
        self.lookback_hours = lookback_hours
        self.stale_minutes  = stale_minutes

    # ------------------------------------------------------------------ #
    #  Entry point                                                       #
    # ------------------------------------------------------------------ #

    async def run_pass(self) -> MonitorReport:
        now       = self.clock.now()
        report    = MonitorReport(started_at=now)
        semaphore = asyncio.Semaphore(self.concurrency)

        logger.info("[TriggerMonitor] Pass started")

        work: list[tuple[Booking, Detector]] = []
        for name, query, detector in self._candidate_sources(now):
            try:
                candidates = await query()
            except Exception as e:
                report.errors += 1
                logger.error(f"[TriggerMonitor] Candidate query '{name}' failed: {e}")
                continue
            work.extend((booking, detector) for booking in candidates)

        report.checked = len(work)
        await asyncio.gather(*[
            self._check_booking(booking, detector, now, semaphore, report)
            for booking, detector in work
        ])

        await self._reconcile(now, semaphore, report)

        report.finished_at = self.clock.now()
        logger.info(
            f"[TriggerMonitor] Pass finished | checked={report.checked} "
            f"triggered={report.triggered} skipped={report.skipped_existing} "
            f"reconciled={report.reconciled} errors={report.errors}"
        )
        return report

    def _candidate_sources(self, now: datetime) -> list[tuple[str, Callable, Detector]]:
        no_response = self.registry.refund_trigger("no_initial_response")
        no_show     = self.registry.refund_trigger("no_show_pickup")
        return [
            (
                "no_initial_response",
                lambda: self.bookings.list_pending_created_before(
                    now - timedelta(hours=no_response.timeout_hours)
                ),
                self._detect_no_initial_response,
            ),
            (
                "no_show",
                lambda: self.bookings.list_confirmed_starting_before(
                    now - timedelta(hours=no_show.timeout_hours)
                ),
                self._detect_no_show,
            ),
            (
                "unresponsive_during_rental",
                self.bookings.list_active,
                self._detect_unresponsive_during_rental,
            ),
            (
                "late_cancellation_by_owner",
                lambda: self.bookings.list_owner_cancellations_since(
                    now - timedelta(hours=self.lookback_hours)
                ),
                self._detect_late_cancellation,
            ),
        ]

    async def _check_booking(
        self,
        booking:   Booking,
        detector:  Detector,
        now:       datetime,
        semaphore: asyncio.Semaphore,
        report:    MonitorReport,
    ) -> None:
        async with semaphore:
            try:
                match = await detector(booking, now)
                if match is None:
                    return

                case = await self.case_manager.open_case(
                    booking,
                    self.registry.refund_trigger(match.trigger_name),
                    match.trigger_event,
                    match.evidence,
                )
                if case is None:
                    report.skipped_existing += 1
                    return

                report.triggered += 1
                report.case_ids.append(case.id)
                logger.info(
                    f"[TriggerMonitor] {match.trigger_name} triggered for booking {booking.id} "
                    f"→ case {case.id} ({case.status.value})"
                )
            except Exception as e:
                report.errors += 1
                logger.error(
                    f"[TriggerMonitor] Booking {booking.id} failed in {detector.__name__}: {e}"
                )

    # ------------------------------------------------------------------ #
    #  Detectors                                                         #
    # ------------------------------------------------------------------ #

    async def _detect_no_initial_response(self, booking: Booking, now: datetime) -> Optional[TriggerMatch]:
        trigger = self.registry.refund_trigger("no_initial_response")
        if booking.created_at > now - timedelta(hours=trigger.timeout_hours):
            return None
        if await self.bookings.has_message_from(booking.id, booking.owner_id):
            return None
        return TriggerMatch(
            trigger_name  = trigger.name,
            trigger_event = EVENT_NO_OWNER_RESPONSE,
            evidence      = {
                "booking_created_at":  booking.created_at.isoformat(),
                "hours_since_created": _hours(now - booking.created_at),
                "owner_messages":      0,
            },
        )

    async def _detect_no_show(self, booking: Booking, now: datetime) -> Optional[TriggerMatch]:
        if booking.start_date is None:
            return None
        if booking.pickup_confirmed or booking.delivery_confirmed:
            return None

        name = (
            "no_show_delivery"
            if booking.delivery_method == DeliveryMethod.DELIVERY
            else "no_show_pickup"
        )
        trigger = self.registry.refund_trigger(name)
        if booking.start_date > now - timedelta(hours=trigger.timeout_hours):
            return None

        return TriggerMatch(
            trigger_name  = name,
            trigger_event = EVENT_NO_SHOW,
            evidence      = {
                "scheduled_start": booking.start_date.isoformat(),
                "hours_overdue":   _hours(now - booking.start_date),
                "delivery_method": booking.delivery_method.value,
            },
        )

    async def _detect_unresponsive_during_rental(self, booking: Booking, now: datetime) -> Optional[TriggerMatch]:
        trigger = self.registry.refund_trigger("unresponsive_during_rental")
        issues  = await self.bookings.list_open_urgent_issues(
            booking.id, now - timedelta(hours=trigger.timeout_hours)
        )
        if not issues:
            return None

        oldest     = min(issue.created_at for issue in issues)
        last_reply = await self.bookings.last_message_at(booking.id, booking.owner_id)
        if last_reply is not None and last_reply >= oldest:
            return None

        return TriggerMatch(
            trigger_name  = trigger.name,
            trigger_event = EVENT_UNRESPONSIVE,
            evidence      = {
                "issue_ids":             [issue.id for issue in issues],
                "oldest_issue_at":       oldest.isoformat(),
                "hours_unresolved":      _hours(now - oldest),
                "last_owner_message_at": last_reply.isoformat() if last_reply else None,
            },
        )

    async def _detect_late_cancellation(self, booking: Booking, now: datetime) -> Optional[TriggerMatch]:
        if booking.cancelled_by != "owner":
            return None
        if booking.cancelled_at is None or booking.start_date is None:
            return None
        if booking.cancelled_at < now - timedelta(hours=self.lookback_hours):
            return None

        notice = booking.start_date - booking.cancelled_at
        if notice > timedelta(hours=LATE_CANCELLATION_WINDOW_HOURS):
            return None

        return TriggerMatch(
            trigger_name  = "late_cancellation_by_owner",
            trigger_event = EVENT_LATE_CANCELLATION,
            evidence      = {
                "cancelled_at":        booking.cancelled_at.isoformat(),
                "scheduled_start":     booking.start_date.isoformat(),
                "hours_before_start":  _hours(notice),
                "cancellation_reason": booking.cancellation_reason,
            },
        )

    # ------------------------------------------------------------------ #
    #  Reconciliation                                                    #
    # ------------------------------------------------------------------ #

    async def _reconcile(self, now: datetime, semaphore: asyncio.Semaphore, report: MonitorReport) -> None:
        cutoff = now - timedelta(minutes=self.stale_minutes)
        cases  = self.case_manager.cases

        try:
            processing = await cases.list_stale(CaseStatus.PROCESSING, cutoff)
            pending    = [
                case for case in await cases.list_stale(CaseStatus.PENDING, cutoff)
                if not case.trigger.requires_manual_review
            ]
        except Exception as e:
            report.errors += 1
            logger.error(f"[TriggerMonitor] Stale case query failed: {e}")
            return

        async def resolve(case, action):
            async with semaphore:
                try:
                    resolved = await action(case)
                    if resolved.status != case.status:
                        report.reconciled += 1
                except Exception as e:
                    report.errors += 1
                    logger.error(f"[TriggerMonitor] Reconciling case {case.id} failed: {e}")

        await asyncio.gather(
            *[resolve(case, self.case_manager.reconcile_stale_case) for case in processing],
            *[resolve(case, lambda c: self.case_manager.process_case(c.id)) for case in pending],
        )
