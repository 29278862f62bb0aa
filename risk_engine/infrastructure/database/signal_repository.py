"""
signal_repository.py
--------------------
SignalSource over the marketplace tables. Counts and samples only, the
thresholds live in the evaluators.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from risk_engine.domain.models import (
    BookingMessage,
    BookingRow,
    Chargeback,
    PaymentAttempt,
    PaymentMethodRow,
    ProfileView,
    UserAccountRow,
)
from risk_engine.domain.schemas import UserAccount


class SqlSignalSource:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _scalar(self, q) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(q)).scalar() or 0)

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        async with self.session_factory() as session:
            row = await session.get(UserAccountRow, user_id)
        return UserAccount(id=row.id, created_at=row.created_at) if row else None

    async def count_bookings_since(self, user_id: str, since: datetime) -> int:
        return await self._scalar(
            select(func.count())
            .select_from(BookingRow)
            .where(BookingRow.renter_id == user_id)
            .where(BookingRow.created_at >= since)
        )

    async def count_failed_payments_since(self, user_id: str, since: datetime) -> int:
        return await self._scalar(
            select(func.count())
            .select_from(PaymentAttempt)
            .where(PaymentAttempt.user_id == user_id)
            .where(PaymentAttempt.status == "failed")
            .where(PaymentAttempt.created_at >= since)
        )

    async def count_payment_methods_since(self, user_id: str, since: datetime) -> int:
        return await self._scalar(
            select(func.count())
            .select_from(PaymentMethodRow)
            .where(PaymentMethodRow.user_id == user_id)
            .where(PaymentMethodRow.created_at >= since)
        )

    async def count_chargebacks(self, user_id: str) -> int:
        return await self._scalar(
            select(func.count())
            .select_from(Chargeback)
            .where(Chargeback.user_id == user_id)
        )

    async def recent_messages(self, user_id: str, limit: int) -> list[str]:
        q = (
            select(BookingMessage.content)
            .where(BookingMessage.sender_id == user_id)
            .order_by(BookingMessage.created_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.execute(q)).scalars().all())

    async def count_profile_views(
        self, user_id: str, booking_id: str, before: datetime
    ) -> tuple[int, int]:
        """(profile views, listing views) by the user before `before`."""
        q = (
            select(
                func.count().filter(ProfileView.target_type == "profile"),
                func.count().filter(ProfileView.target_type == "listing"),
            )
            .where(ProfileView.viewer_id == user_id)
            .where(ProfileView.created_at < before)
            .where((ProfileView.booking_id.is_(None)) | (ProfileView.booking_id == booking_id))
        )
        async with self.session_factory() as session:
            profile_views, listing_views = (await session.execute(q)).one()
        return int(profile_views or 0), int(listing_views or 0)
