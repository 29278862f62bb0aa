"""
case_repository.py
------------------
AutoRefundCase persistence in PostgreSQL (`auto_refund_cases`).

Every write is a single conditional statement:

  create_if_absent  → INSERT … ON CONFLICT DO NOTHING against the
                      unique constraint (booking_id, trigger_event)
  transition        → UPDATE … WHERE id = :id AND status IN (:from)
                      SET status, timeline = timeline || [entry],
                          refund = refund || :fields, updated_at
                      RETURNING *
  complete_with_booking_refund
                    → the transition above plus the booking update, in one
                      transaction

A guard that matches no row returns None; the CaseManager turns that into
InvalidCaseTransitionException.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy import cast, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from risk_engine.core.exceptions import PersistenceUnavailableException
from risk_engine.domain.models import AutoRefundCaseRow, BookingRow
from risk_engine.domain.schemas import (
    AutoRefundCase,
    BookingStatus,
    CaseStatus,
    TimelineEntry,
)

logger = logging.getLogger(__name__)


def _jsonb(value: Any):
    return cast(json.dumps(to_jsonable_python(value)), JSONB)


def _append_entry(entry: TimelineEntry):
    return AutoRefundCaseRow.timeline.op("||")(_jsonb([entry.model_dump(mode="json")]))


def _merge_refund(fields: dict[str, Any]):
    return AutoRefundCaseRow.refund.op("||")(_jsonb(fields))


def _to_domain(row: AutoRefundCaseRow) -> AutoRefundCase:
    return AutoRefundCase.model_validate({
        "id":                row.id,
        "booking_id":        row.booking_id,
        "renter_id":         row.renter_id,
        "owner_id":          row.owner_id,
        "gear_title":        row.gear_title,
        "total_amount":      row.total_amount,
        "refund_amount":     row.refund_amount,
        "payment_charge_id": row.payment_charge_id,
        "trigger":           row.trigger,
        "status":            row.status,
        "timeline":          row.timeline or [],
        "detection":         row.detection,
        "refund":            row.refund or {},
        "created_at":        row.created_at,
        "updated_at":        row.updated_at,
    })


class SqlCaseRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    # ── Creation ──────────────────────────────────────────────────────

    async def create_if_absent(self, case: AutoRefundCase) -> bool:
        stmt = (
            pg_insert(AutoRefundCaseRow)
            .values(
                id                = case.id,
                booking_id        = case.booking_id,
                renter_id         = case.renter_id,
                owner_id          = case.owner_id,
                gear_title        = case.gear_title,
                total_amount      = case.total_amount,
                refund_amount     = case.refund_amount,
                payment_charge_id = case.payment_charge_id,
                trigger_name      = case.trigger.name,
                trigger           = case.trigger.model_dump(mode="json"),
                trigger_event     = case.detection.trigger_event,
                status            = case.status.value,
                timeline          = [e.model_dump(mode="json") for e in case.timeline],
                detection         = case.detection.model_dump(mode="json"),
                refund            = case.refund.model_dump(mode="json"),
                created_at        = case.created_at,
                updated_at        = case.updated_at,
            )
            .on_conflict_do_nothing(index_elements=["booking_id", "trigger_event"])
            .returning(AutoRefundCaseRow.id)
        )
        try:
            async with self.session_factory() as session:
                inserted = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableException(
                f"Could not create refund case for booking {case.booking_id}: {exc}"
            ) from exc
        return inserted is not None

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, case_id: str) -> Optional[AutoRefundCase]:
        async with self.session_factory() as session:
            row = await session.get(AutoRefundCaseRow, case_id)
        return _to_domain(row) if row else None

    async def list_cases(
        self, status: Optional[CaseStatus] = None, limit: int = 50
    ) -> list[AutoRefundCase]:
        q = select(AutoRefundCaseRow).order_by(AutoRefundCaseRow.created_at.desc()).limit(limit)
        if status is not None:
            q = q.where(AutoRefundCaseRow.status == status.value)
        async with self.session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [_to_domain(row) for row in rows]

    async def list_stale(
        self, status: CaseStatus, updated_before: datetime, limit: int = 100
    ) -> list[AutoRefundCase]:
        q = (
            select(AutoRefundCaseRow)
            .where(AutoRefundCaseRow.status == status.value)
            .where(AutoRefundCaseRow.updated_at < updated_before)
            .order_by(AutoRefundCaseRow.updated_at)
            .limit(limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [_to_domain(row) for row in rows]

    # ── Conditional writes ────────────────────────────────────────────

    def _transition_stmt(
        self,
        case_id:       str,
        from_statuses: frozenset[CaseStatus],
        to_status:     CaseStatus,
        entry:         TimelineEntry,
        refund_fields: Optional[dict[str, Any]],
    ):
        values: dict[str, Any] = {
            "status":     to_status.value,
            "timeline":   _append_entry(entry),
            "updated_at": entry.timestamp,
        }
        if refund_fields:
            values["refund"] = _merge_refund(refund_fields)

        return (
            update(AutoRefundCaseRow)
            .where(AutoRefundCaseRow.id == case_id)
            .where(AutoRefundCaseRow.status.in_([s.value for s in from_statuses]))
            .values(**values)
            .returning(AutoRefundCaseRow)
            .execution_options(synchronize_session=False)
        )

    async def transition(
        self,
        case_id:       str,
        from_statuses: frozenset[CaseStatus],
        to_status:     CaseStatus,
        entry:         TimelineEntry,
        refund_fields: Optional[dict[str, Any]] = None,
    ) -> Optional[AutoRefundCase]:
        stmt = self._transition_stmt(case_id, from_statuses, to_status, entry, refund_fields)
        try:
            async with self.session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableException(
                f"Could not move case {case_id} to {to_status.value}: {exc}"
            ) from exc

        if row is None:
            logger.warning(
                f"[CaseRepository] Guard failed for case {case_id}: "
                f"not in {sorted(s.value for s in from_statuses)}"
            )
            return None
        return _to_domain(row)

    async def complete_with_booking_refund(
        self,
        case_id:            str,
        external_refund_id: str,
        completed_at:       datetime,
        entry:              TimelineEntry,
        refund_amount:      Decimal,
        refund_reason:      str,
    ) -> Optional[AutoRefundCase]:
        stmt = self._transition_stmt(
            case_id,
            frozenset({CaseStatus.PROCESSING}),
            CaseStatus.COMPLETED,
            entry,
            {"completed_at": completed_at, "external_refund_id": external_refund_id},
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = (await session.execute(stmt)).scalar_one_or_none()
                    if row is None:
                        return None
                    await session.execute(
                        update(BookingRow)
                        .where(BookingRow.id == row.booking_id)
                        .values(
                            status              = BookingStatus.REFUNDED.value,
                            refund_amount       = refund_amount,
                            refund_reason       = refund_reason,
                            refunded_at         = completed_at,
                            auto_refund_case_id = case_id,
                            updated_at          = completed_at,
                        )
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableException(
                f"Could not complete case {case_id}: {exc}"
            ) from exc
        return _to_domain(row)

    async def append_timeline(self, case_id: str, entry: TimelineEntry) -> None:
        stmt = (
            update(AutoRefundCaseRow)
            .where(AutoRefundCaseRow.id == case_id)
            .values(timeline=_append_entry(entry), updated_at=entry.timestamp)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableException(
                f"Could not append to the timeline of case {case_id}: {exc}"
            ) from exc
