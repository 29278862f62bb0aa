"""
action_dispatcher.py
--------------------
Translates engine outcomes into directives for the collaborators.

  FraudScore        → one admin notification per notifications_triggered
                      entry; blocked → booking status=blocked_fraud
  case created      → renter auto_refund_initiated, owner auto_refund_warning,
                      admin auto_refund_case
  case completed    → renter auto_refund_completed
  case failed       → admin auto_refund_failed
  case cancelled    → renter auto_refund_rejected

Notifications are fire-and-forget: a queue failure is logged and
swallowed, the state transition that caused it already happened.
"""

import logging

from risk_engine.core.clock import Clock
from risk_engine.domain.ports import BookingRepository, NotificationQueue
from risk_engine.domain.schemas import AutoRefundCase, FraudScore, Notification

logger = logging.getLogger(__name__)

_FRAUD_TITLES = {
    "admin_critical_fraud": "Critical fraud risk: booking blocked",
    "admin_high_fraud":     "High fraud risk: review required",
    "admin_medium_fraud":   "Medium fraud risk: booking flagged",
}


class ActionDispatcher:

    def __init__(self, notifications: NotificationQueue, bookings: BookingRepository, clock: Clock):
        self.notifications = notifications
        self.bookings      = bookings
        self.clock         = clock

    # ------------------------------------------------------------------ #
    #  Fraud scores                                                      #
    # ------------------------------------------------------------------ #

    async def dispatch_fraud_score(self, score: FraudScore) -> None:
        for target in score.actions.notifications_triggered:
            await self._notify(Notification(
                type       = target,
                audience   = "admin",
                title      = _FRAUD_TITLES.get(target, "Fraud risk detected"),
                message    = (
                    f"Booking {score.booking_id} scored {score.total_score} "
                    f"({score.risk_level.value}) for {score.user_type.value} {score.user_id}"
                ),
                data       = {
                    "booking_id":  score.booking_id,
                    "user_id":     score.user_id,
                    "total_score": score.total_score,
                    "risk_level":  score.risk_level.value,
                    "signals":     [s.type for s in score.signals],
                },
                created_at = self.clock.now(),
            ))

        if score.actions.blocked:
            try:
                await self.bookings.mark_blocked(score.booking_id, score.total_score, self.clock.now())
                logger.warning(
                    f"[ActionDispatcher] Booking {score.booking_id} blocked "
                    f"(score={score.total_score})"
                )
            except Exception as e:
                logger.error(
                    f"[ActionDispatcher] Could not block booking {score.booking_id}: {e}"
                )

    # ------------------------------------------------------------------ #
    #  Refund cases                                                      #
    # ------------------------------------------------------------------ #

    async def case_created(self, case: AutoRefundCase) -> None:
        now  = self.clock.now()
        data = {
            "case_id":       case.id,
            "booking_id":    case.booking_id,
            "refund_amount": str(case.refund_amount),
            "trigger":       case.trigger.name,
        }
        await self._notify(Notification(
            type         = "auto_refund_initiated",
            recipient_id = case.renter_id,
            title        = "Automatic Refund Initiated",
            message      = f"We've initiated a refund for your booking of {case.gear_title}.",
            data         = data,
            created_at   = now,
        ))
        await self._notify(Notification(
            type         = "auto_refund_warning",
            recipient_id = case.owner_id,
            title        = "Automatic Refund Opened",
            message      = f"A refund case was opened for {case.gear_title}: {case.trigger.description}.",
            data         = data,
            created_at   = now,
        ))
        await self._notify(Notification(
            type       = "auto_refund_case",
            audience   = "admin",
            title      = "Auto-Refund Case Created",
            message    = f"{case.trigger.description} - ${case.refund_amount} refund",
            data       = {**data, "requires_review": case.trigger.requires_manual_review},
            created_at = now,
        ))

    async def case_completed(self, case: AutoRefundCase) -> None:
        await self._notify(Notification(
            type         = "auto_refund_completed",
            recipient_id = case.renter_id,
            title        = "Refund Completed",
            message      = f"Your refund of ${case.refund_amount} for {case.gear_title} has been issued.",
            data         = {
                "case_id":            case.id,
                "booking_id":         case.booking_id,
                "external_refund_id": case.refund.external_refund_id,
            },
            created_at   = self.clock.now(),
        ))

    async def case_failed(self, case: AutoRefundCase) -> None:
        await self._notify(Notification(
            type       = "auto_refund_failed",
            audience   = "admin",
            title      = "Auto-Refund Failed",
            message    = f"Refund for booking {case.booking_id} failed: {case.refund.failure_reason}",
            data       = {
                "case_id":        case.id,
                "booking_id":     case.booking_id,
                "failure_reason": case.refund.failure_reason,
                "attempts":       case.refund.attempts,
            },
            created_at = self.clock.now(),
        ))

    async def case_cancelled(self, case: AutoRefundCase, reason: str) -> None:
        await self._notify(Notification(
            type         = "auto_refund_rejected",
            recipient_id = case.renter_id,
            title        = "Refund Request Reviewed",
            message      = f"The automatic refund for {case.gear_title} was not approved.",
            data         = {"case_id": case.id, "booking_id": case.booking_id, "reason": reason},
            created_at   = self.clock.now(),
        ))

    # ------------------------------------------------------------------ #

    async def _notify(self, notification: Notification) -> None:
        try:
            await self.notifications.enqueue(notification)
        except Exception as e:
            logger.error(
                f"[ActionDispatcher] Notification '{notification.type}' "
                f"to {notification.recipient_id or 'admins'} dropped: {e}"
            )
