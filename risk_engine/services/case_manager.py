"""
case_manager.py
---------------
Case Manager / Refund Processor.

Sole writer of AutoRefundCase.status and AutoRefundCase.refund.

State machine:

    pending ──process/approve──► processing ──refund succeeded──► completed
       │                             │
       └──reject──► cancelled        └──refund error──► failed ──retry──► processing

A refund the provider reports as pending leaves the case in processing.
Reconciliation completes it once the provider reports it succeeded, and
fails it if the refund is gone or failed.

Every transition is a conditional write in the CaseRepository
(UPDATE … WHERE status IN (…)) that appends one timeline entry and bumps
updated_at in the same statement. Losing the race raises
InvalidCaseTransitionException and nothing else happens: no refund call,
no notification.

The refund call is keyed by `auto-refund-{case_id}`. Before any retry
or reconciliation the payment collaborator is asked whether that key
already produced a refund, so a case can never be refunded twice.
"""

import logging
import uuid
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from risk_engine.core.clock import Clock
from risk_engine.core.exceptions import CaseNotFoundException, InvalidCaseTransitionException
from risk_engine.domain.ports import CaseRepository, PaymentGateway
from risk_engine.domain.schemas import (
    AutoRefundCase,
    Booking,
    CaseDetection,
    CaseStatus,
    RefundResult,
    RefundTrigger,
    TimelineEntry,
)
from risk_engine.services.action_dispatcher import ActionDispatcher

logger = logging.getLogger(__name__)

SYSTEM_ACTOR     = "system"
RECONCILER_ACTOR = "reconciler"


def compute_refund_amount(total_amount: Decimal, refund_percentage: float) -> Decimal:
    """
    round_half_up(total × percentage) to whole currency units,
    clamped to [0, total].
    """
    raw     = Decimal(total_amount) * Decimal(str(refund_percentage))
    rounded = raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(Decimal("0"), min(rounded, Decimal(total_amount)))


class CaseManager:

    def __init__(
        self,
        cases:      CaseRepository,
        payments:   PaymentGateway,
        dispatcher: ActionDispatcher,
        clock:      Clock,
    ):
        self.cases      = cases
        self.payments   = payments
        self.dispatcher = dispatcher
        self.clock      = clock

    # ------------------------------------------------------------------ #
    #  Creation                                                          #
    # ------------------------------------------------------------------ #

    async def open_case(
        self,
        booking:       Booking,
        trigger:       RefundTrigger,
        trigger_event: str,
        evidence:      dict[str, Any],
    ) -> Optional[AutoRefundCase]:
        """
        Create a pending case unless one already exists for
        (booking_id, trigger_event). Returns None in that case.

        Persistence errors propagate: nothing is half written and the
        next monitor pass re-detects the booking.
        """
        now           = self.clock.now()
        refund_amount = compute_refund_amount(booking.total_price, trigger.refund_percentage)

        case = AutoRefundCase(
            id                = str(uuid.uuid4()),
            booking_id        = booking.id,
            renter_id         = booking.renter_id,
            owner_id          = booking.owner_id,
            gear_title        = booking.gear_title,
            total_amount      = booking.total_price,
            refund_amount     = refund_amount,
            payment_charge_id = booking.payment_charge_id,
            trigger           = trigger,
            status            = CaseStatus.PENDING,
            timeline          = [TimelineEntry(
                timestamp   = now,
                event       = "case_created",
                description = f"Auto-refund case created: {trigger.description}",
                actor       = SYSTEM_ACTOR,
                metadata    = {
                    "trigger":       trigger.name,
                    "trigger_event": trigger_event,
                    "refund_amount": str(refund_amount),
                },
            )],
            detection         = CaseDetection(
                detected_at       = now,
                trigger_event     = trigger_event,
                response_deadline = now + timedelta(hours=trigger.timeout_hours),
                evidence_data     = evidence,
            ),
            created_at        = now,
            updated_at        = now,
        )

        if not await self.cases.create_if_absent(case):
            logger.info(
                f"[CaseManager] Case already exists for booking {booking.id} "
                f"({trigger_event}), skipping"
            )
            return None

        logger.info(
            f"[CaseManager] Case {case.id} created | booking={booking.id} "
            f"trigger={trigger.name} refund={refund_amount}"
        )
        await self.dispatcher.case_created(case)

        if trigger.requires_manual_review:
            return case
        return await self.process_case(case.id)

    # ------------------------------------------------------------------ #
    #  Transitions                                                       #
    # ------------------------------------------------------------------ #

    async def process_case(self, case_id: str, actor: str = SYSTEM_ACTOR) -> AutoRefundCase:
        """Automatic pending → processing → completed | failed."""
        case = await self.get_case(case_id)
        if case.trigger.requires_manual_review:
            raise InvalidCaseTransitionException(
                f"Case {case_id} requires manual review; approve it instead."
            )
        processing = await self._start_processing(
            case, actor, "processing_started", "Automatic refund processing started"
        )
        return await self._execute_refund(processing)

    async def approve_case(
        self, case_id: str, admin_id: str, notes: Optional[str] = None
    ) -> AutoRefundCase:
        case = await self.get_case(case_id)
        processing = await self._start_processing(
            case, admin_id, "case_approved", "Refund approved by reviewer", notes=notes
        )
        return await self._execute_refund(processing)

    async def reject_case(self, case_id: str, admin_id: str, reason: str) -> AutoRefundCase:
        await self.get_case(case_id)
        entry = TimelineEntry(
            timestamp   = self.clock.now(),
            event       = "case_rejected",
            description = "Refund rejected by reviewer",
            actor       = admin_id,
            metadata    = {"reason": reason},
        )
        cancelled = await self.cases.transition(
            case_id, frozenset({CaseStatus.PENDING}), CaseStatus.CANCELLED, entry
        )
        if cancelled is None:
            raise InvalidCaseTransitionException(f"Case {case_id} is not pending.")

        logger.info(f"[CaseManager] Case {case_id} rejected by {admin_id}")
        await self.dispatcher.case_cancelled(cancelled, reason)
        return cancelled

    async def retry_case(self, case_id: str, admin_id: str) -> AutoRefundCase:
        """
        failed → processing. Asks the payment collaborator first: if the
        idempotency key already produced a refund, complete without a new call.
        """
        case = await self.get_case(case_id)
        if case.status != CaseStatus.FAILED:
            raise InvalidCaseTransitionException(f"Case {case_id} is not failed.")

        existing = None
        if case.payment_charge_id:
            existing = await self.payments.find_refund(case.payment_charge_id, case.idempotency_key)

        entry = TimelineEntry(
            timestamp   = self.clock.now(),
            event       = "retry_started",
            description = "Refund retry requested",
            actor       = admin_id,
            metadata    = {"attempt": case.refund.attempts + 1},
        )
        processing = await self.cases.transition(
            case_id,
            frozenset({CaseStatus.FAILED}),
            CaseStatus.PROCESSING,
            entry,
            refund_fields = {
                "initiated_at":   entry.timestamp,
                "attempts":       case.refund.attempts + 1,
                "failed_at":      None,
                "failure_reason": None,
            },
        )
        if processing is None:
            raise InvalidCaseTransitionException(f"Case {case_id} is not failed.")

        if existing is not None:
            await self.cases.append_timeline(case_id, TimelineEntry(
                timestamp   = self.clock.now(),
                event       = "existing_refund_found",
                description = "Payment provider already holds a refund for this case",
                actor       = SYSTEM_ACTOR,
                metadata    = {"external_refund_id": existing.external_refund_id},
            ))
            return await self._settle(processing, existing)

        return await self._execute_refund(processing)

    async def reconcile_stale_case(self, case: AutoRefundCase) -> AutoRefundCase:
        """
        Resolve a case left in processing (crash between refund call and
        status write, or a refund still pending at the provider). Never
        issues a refund: succeeded → completed, pending → unchanged,
        missing or failed → failed.
        """
        if case.status != CaseStatus.PROCESSING:
            return case

        existing = None
        if case.payment_charge_id:
            existing = await self.payments.find_refund(case.payment_charge_id, case.idempotency_key)

        if existing is not None and not existing.settled:
            logger.info(
                f"[CaseManager] Case {case.id}: refund {existing.external_refund_id} "
                f"still {existing.status}"
            )
            return case

        if existing is not None:
            logger.info(f"[CaseManager] Reconciled case {case.id}: refund {existing.external_refund_id} found")
            return await self._complete(case, existing.external_refund_id, actor=RECONCILER_ACTOR)

        logger.warning(f"[CaseManager] Reconciled case {case.id}: no refund found, marking failed")
        return await self._fail(
            case,
            "Refund not confirmed by the payment provider after the processing window",
            actor=RECONCILER_ACTOR,
        )

    # ------------------------------------------------------------------ #
    #  Reads                                                             #
    # ------------------------------------------------------------------ #

    async def get_case(self, case_id: str) -> AutoRefundCase:
        case = await self.cases.get(case_id)
        if case is None:
            raise CaseNotFoundException(f"Auto-refund case {case_id} not found.")
        return case

    async def list_cases(
        self, status: Optional[CaseStatus] = None, limit: int = 50
    ) -> list[AutoRefundCase]:
        return await self.cases.list_cases(status=status, limit=limit)

    # ------------------------------------------------------------------ #
    #  Internals                                                         #
    # ------------------------------------------------------------------ #

    async def _start_processing(
        self,
        case:        AutoRefundCase,
        actor:       str,
        event:       str,
        description: str,
        notes:       Optional[str] = None,
    ) -> AutoRefundCase:
        now   = self.clock.now()
        entry = TimelineEntry(
            timestamp   = now,
            event       = event,
            description = description,
            actor       = actor,
            metadata    = {"notes": notes} if notes else {},
        )
        processing = await self.cases.transition(
            case.id,
            frozenset({CaseStatus.PENDING}),
            CaseStatus.PROCESSING,
            entry,
            refund_fields = {"initiated_at": now, "attempts": case.refund.attempts + 1},
        )
        if processing is None:
            raise InvalidCaseTransitionException(f"Case {case.id} is not pending.")
        return processing

    async def _execute_refund(self, case: AutoRefundCase) -> AutoRefundCase:
        if not case.payment_charge_id:
            return await self._fail(case, "Booking has no payment charge to refund")

        try:
            result = await self.payments.refund(
                case.payment_charge_id, case.refund_amount, case.idempotency_key
            )
        except Exception as e:
            reason = getattr(e, "message", None) or str(e) or e.__class__.__name__
            logger.error(f"[CaseManager] Refund for case {case.id} failed: {reason}")
            return await self._fail(case, reason)

        return await self._settle(case, result)

    async def _settle(
        self, case: AutoRefundCase, result: RefundResult, actor: str = SYSTEM_ACTOR
    ) -> AutoRefundCase:
        if result.settled:
            return await self._complete(case, result.external_refund_id, actor=actor)

        logger.info(
            f"[CaseManager] Refund {result.external_refund_id} for case {case.id} "
            f"is {result.status}, waiting for settlement"
        )
        await self.cases.append_timeline(case.id, TimelineEntry(
            timestamp   = self.clock.now(),
            event       = "refund_pending",
            description = f"Refund accepted by the payment provider with status '{result.status}'",
            actor       = actor,
            metadata    = {"external_refund_id": result.external_refund_id},
        ))
        return await self.get_case(case.id)

    async def _complete(
        self, case: AutoRefundCase, external_refund_id: str, actor: str = SYSTEM_ACTOR
    ) -> AutoRefundCase:
        now   = self.clock.now()
        entry = TimelineEntry(
            timestamp   = now,
            event       = "refund_completed",
            description = f"Refund of ${case.refund_amount} issued",
            actor       = actor,
            metadata    = {"external_refund_id": external_refund_id},
        )
        completed = await self.cases.complete_with_booking_refund(
            case.id,
            external_refund_id = external_refund_id,
            completed_at       = now,
            entry              = entry,
            refund_amount      = case.refund_amount,
            refund_reason      = case.trigger.description,
        )
        if completed is None:
            raise InvalidCaseTransitionException(f"Case {case.id} is not processing.")

        logger.info(
            f"[CaseManager] Case {case.id} completed | booking={case.booking_id} "
            f"refund_id={external_refund_id}"
        )
        await self.dispatcher.case_completed(completed)
        return completed

    async def _fail(
        self, case: AutoRefundCase, reason: str, actor: str = SYSTEM_ACTOR
    ) -> AutoRefundCase:
        now   = self.clock.now()
        entry = TimelineEntry(
            timestamp   = now,
            event       = "refund_failed",
            description = f"Refund failed: {reason}",
            actor       = actor,
        )
        failed = await self.cases.transition(
            case.id,
            frozenset({CaseStatus.PROCESSING}),
            CaseStatus.FAILED,
            entry,
            refund_fields = {"failed_at": now, "failure_reason": reason},
        )
        if failed is None:
            raise InvalidCaseTransitionException(f"Case {case.id} is not processing.")

        await self.dispatcher.case_failed(failed)
        return failed
