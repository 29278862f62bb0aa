"""
audit_repository.py
-------------------
Fraud score audit trail in PostgreSQL (`fraud_scores`).

Responsibilities:
  - Insert one immutable row per analyze_fraud_risk call.
  - Encrypt the full signal list (evidence holds user agents, coordinates
    and device fingerprints) with AES-256-GCM when AUDIT_ENCRYPTION is on.
    Signal types stay in clear so statistics never need the key.
  - Serve the admin listing and the aggregated statistics.

Rows are never updated nor deleted.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from pydantic import TypeAdapter
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from risk_engine.core.config import settings
from risk_engine.core.crypto import decrypt_blob, encrypt_blob
from risk_engine.core.exceptions import PersistenceUnavailableException
from risk_engine.domain.models import FraudScoreAudit
from risk_engine.domain.schemas import (
    FraudActions,
    FraudScore,
    FraudScoreStats,
    FraudSignal,
    RiskLevel,
)

logger = logging.getLogger(__name__)

_signals_adapter = TypeAdapter(list[FraudSignal])

TOP_SIGNALS_LIMIT = 10


class FraudScoreAuditRepository:
    """
    FraudScoreRepository backed by PostgreSQL.

    Holds the session factory, not a session: every call opens and closes
    its own AsyncSession.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encrypt:         bool = settings.AUDIT_ENCRYPTION,
    ) -> None:
        self.session_factory = session_factory
        self.encrypt         = encrypt

    # ── Write ─────────────────────────────────────────────────────────

    async def save(self, score: FraudScore) -> None:
        signals = _signals_adapter.dump_python(score.signals, mode="json")

        row = FraudScoreAudit(
            booking_id         = score.booking_id,
            user_id            = score.user_id,
            user_type          = score.user_type.value,
            total_score        = score.total_score,
            risk_level         = score.risk_level.value,
            confidence         = score.confidence,
            signal_types       = [s.type for s in score.signals],
            signals            = None if self.encrypt else signals,
            encrypted_signals  = (
                encrypt_blob(json.dumps(signals, ensure_ascii=False).encode())
                if self.encrypt else None
            ),
            actions            = score.actions.model_dump(mode="json"),
            flagged            = score.actions.flagged,
            blocked            = score.actions.blocked,
            model_version      = score.model_version,
            data_points        = score.data_points,
            failed_checks      = score.failed_checks,
            processing_time_ms = score.processing_time_ms,
            analyzed_at        = score.analyzed_at,
        )

        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceUnavailableException(
                f"Could not store fraud score for booking {score.booking_id}: {exc}"
            ) from exc

        logger.info(
            f"[AuditRepository] INSERT OK | booking={score.booking_id} "
            f"user={score.user_id} score={score.total_score} level={score.risk_level.value}"
        )

    # ── Reads ─────────────────────────────────────────────────────────

    async def list_scores(
        self,
        booking_id: Optional[str] = None,
        user_id:    Optional[str] = None,
        risk_level: Optional[RiskLevel] = None,
        limit:      int = 50,
    ) -> list[FraudScore]:
        q = select(FraudScoreAudit).order_by(FraudScoreAudit.created_at.desc()).limit(limit)
        if booking_id:
            q = q.where(FraudScoreAudit.booking_id == booking_id)
        if user_id:
            q = q.where(FraudScoreAudit.user_id == user_id)
        if risk_level:
            q = q.where(FraudScoreAudit.risk_level == risk_level.value)

        async with self.session_factory() as session:
            rows = (await session.execute(q)).scalars().all()
        return [self._to_domain(row) for row in rows]

    async def stats(self, since_24h: datetime) -> FraudScoreStats:
        async with self.session_factory() as session:
            totals = (await session.execute(text("""
                SELECT
                    COUNT(*)                                   AS total,
                    COALESCE(AVG(total_score), 0)              AS average_score,
                    COUNT(*) FILTER (WHERE flagged)            AS flagged,
                    COUNT(*) FILTER (WHERE blocked)            AS blocked,
                    COUNT(*) FILTER (WHERE created_at >= :since) AS last_24_hours
                FROM fraud_scores
            """), {"since": since_24h})).mappings().one()

            by_level = (await session.execute(text("""
                SELECT risk_level, COUNT(*) AS cnt
                FROM fraud_scores
                GROUP BY risk_level
            """))).mappings().all()

            by_user_type = (await session.execute(text("""
                SELECT user_type, COUNT(*) AS cnt
                FROM fraud_scores
                GROUP BY user_type
            """))).mappings().all()

            top_signals = (await session.execute(text("""
                SELECT signal_type, COUNT(*) AS cnt
                FROM fraud_scores, jsonb_array_elements_text(signal_types) AS signal_type
                GROUP BY signal_type
                ORDER BY cnt DESC, signal_type
                LIMIT :limit
            """), {"limit": TOP_SIGNALS_LIMIT})).mappings().all()

        return FraudScoreStats(
            total            = int(totals["total"]),
            by_risk_level    = {r["risk_level"]: int(r["cnt"]) for r in by_level},
            by_user_type     = {r["user_type"]: int(r["cnt"]) for r in by_user_type},
            average_score    = round(float(totals["average_score"]), 2),
            flagged_bookings = int(totals["flagged"]),
            blocked_bookings = int(totals["blocked"]),
            last_24_hours    = int(totals["last_24_hours"]),
            top_signals      = [{"type": r["signal_type"], "count": int(r["cnt"])} for r in top_signals],
        )

    # ── Mapping ───────────────────────────────────────────────────────

    def _to_domain(self, row: FraudScoreAudit) -> FraudScore:
        signals: list = row.signals or []
        if row.encrypted_signals is not None:
            try:
                signals = json.loads(decrypt_blob(row.encrypted_signals))
            except ValueError as exc:
                logger.warning(f"[AuditRepository] Could not decrypt signals of {row.id}: {exc}")
                signals = []

        return FraudScore(
            booking_id         = row.booking_id,
            user_id            = row.user_id,
            user_type          = row.user_type,
            signals            = _signals_adapter.validate_python(signals),
            total_score        = row.total_score,
            risk_level         = row.risk_level,
            confidence         = row.confidence,
            actions            = FraudActions.model_validate(row.actions),
            analyzed_at        = row.analyzed_at,
            model_version      = row.model_version,
            data_points        = row.data_points,
            failed_checks      = row.failed_checks or [],
            processing_time_ms = row.processing_time_ms,
        )
