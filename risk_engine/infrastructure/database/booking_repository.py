"""
booking_repository.py
---------------------
Read side of the marketplace bookings for the trigger monitor, plus the
one write the fraud path owns: blocking a booking.

Each candidate query filters on the same status / time window the
matching detector re-checks, so the monitor only loads bookings that can
actually trigger.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from risk_engine.core.exceptions import PersistenceUnavailableException
from risk_engine.domain.models import BookingMessage, BookingRow, RentalIssueRow
from risk_engine.domain.schemas import Booking, BookingStatus, RentalIssue

logger = logging.getLogger(__name__)

URGENT_PRIORITIES = ("high", "urgent")


def _to_booking(row: BookingRow) -> Booking:
    return Booking(
        id                  = row.id,
        renter_id           = row.renter_id,
        owner_id            = row.owner_id,
        gear_title          = row.gear_title or "Unknown Item",
        total_price         = row.total_price,
        status              = row.status,
        created_at          = row.created_at,
        start_date          = row.start_date,
        pickup_confirmed    = bool(row.pickup_confirmed),
        delivery_confirmed  = bool(row.delivery_confirmed),
        delivery_method     = row.delivery_method or "pickup",
        cancelled_by        = row.cancelled_by,
        cancelled_at        = row.cancelled_at,
        cancellation_reason = row.cancellation_reason,
        payment_charge_id   = row.payment_charge_id,
        refund_amount       = row.refund_amount,
        refund_reason       = row.refund_reason,
        refunded_at         = row.refunded_at,
        auto_refund_case_id = row.auto_refund_case_id,
    )


class SqlBookingRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _bookings(self, q) -> list[Booking]:
        async with self.session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [_to_booking(row) for row in rows]

    # ── Point reads ───────────────────────────────────────────────────

    async def get(self, booking_id: str) -> Optional[Booking]:
        async with self.session_factory() as session:
            row = await session.get(BookingRow, booking_id)
        return _to_booking(row) if row else None

    # ── Candidate queries (one per trigger) ───────────────────────────

    async def list_pending_created_before(self, cutoff: datetime) -> list[Booking]:
        return await self._bookings(
            select(BookingRow)
            .where(BookingRow.status == BookingStatus.PENDING.value)
            .where(BookingRow.created_at <= cutoff)
            .order_by(BookingRow.created_at)
        )

    async def list_confirmed_starting_before(self, cutoff: datetime) -> list[Booking]:
        return await self._bookings(
            select(BookingRow)
            .where(BookingRow.status == BookingStatus.CONFIRMED.value)
            .where(BookingRow.start_date <= cutoff)
            .where(BookingRow.pickup_confirmed.is_(False))
            .where(BookingRow.delivery_confirmed.is_(False))
            .order_by(BookingRow.start_date)
        )

    async def list_active(self) -> list[Booking]:
        return await self._bookings(
            select(BookingRow).where(BookingRow.status == BookingStatus.ACTIVE.value)
        )

    async def list_owner_cancellations_since(self, since: datetime) -> list[Booking]:
        return await self._bookings(
            select(BookingRow)
            .where(BookingRow.status == BookingStatus.CANCELLED.value)
            .where(BookingRow.cancelled_by == "owner")
            .where(BookingRow.cancelled_at >= since)
            .order_by(BookingRow.cancelled_at)
        )

    # ── Messages and issues ───────────────────────────────────────────

    async def has_message_from(self, booking_id: str, sender_id: str) -> bool:
        q = select(exists().where(
            BookingMessage.booking_id == booking_id,
            BookingMessage.sender_id == sender_id,
        ))
        async with self.session_factory() as session:
            return bool((await session.execute(q)).scalar())

    async def last_message_at(self, booking_id: str, sender_id: str) -> Optional[datetime]:
        q = (
            select(func.max(BookingMessage.created_at))
            .where(BookingMessage.booking_id == booking_id)
            .where(BookingMessage.sender_id == sender_id)
        )
        async with self.session_factory() as session:
            return (await session.execute(q)).scalar()

    async def list_open_urgent_issues(
        self, booking_id: str, opened_before: datetime
    ) -> list[RentalIssue]:
        q = (
            select(RentalIssueRow)
            .where(RentalIssueRow.booking_id == booking_id)
            .where(RentalIssueRow.status == "open")
            .where(RentalIssueRow.priority.in_(URGENT_PRIORITIES))
            .where(RentalIssueRow.created_at <= opened_before)
            .order_by(RentalIssueRow.created_at)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [
            RentalIssue(
                id          = row.id,
                booking_id  = row.booking_id,
                priority    = row.priority,
                status      = row.status,
                description = row.description or "",
                created_at  = row.created_at,
            )
            for row in rows
        ]

    # ── Writes ────────────────────────────────────────────────────────

    async def mark_blocked(self, booking_id: str, fraud_score: int, at: datetime) -> None:
        q = (
            update(BookingRow)
            .where(BookingRow.id == booking_id)
            .values(
                status      = BookingStatus.BLOCKED_FRAUD.value,
                fraud_score = fraud_score,
                blocked_at  = at,
                updated_at  = at,
            )
        )
        try:
            async with self.session_factory() as session:
                await session.execute(q)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableException(
                f"Could not block booking {booking_id}: {exc}"
            ) from exc
