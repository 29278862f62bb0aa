"""
models.py
---------
SQLAlchemy models for the Risk & Refund Engine.

Tables owned by the engine:
  - FraudScoreAudit   → immutable record of every fraud analysis
  - AutoRefundCaseRow → refund cases, timeline kept as an append-only JSONB array

Marketplace tables the engine reads (and, for bookings, updates as the
side effect of a refund or a fraud block):
  - BookingRow, BookingMessage, RentalIssueRow
  - UserAccountRow, PaymentAttempt, PaymentMethodRow, Chargeback, ProfileView

Design principles:
  - Marketplace ids are opaque strings (document-store ids)
  - Money as Numeric → exact amounts, no float drift
  - created_at always timezone=True → correct audit ordering
  - One unique constraint allows a single refund case per
    (booking_id, trigger_event) in any status; case creation relies on it
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import BYTEA, JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────
# FRAUD SCORE AUDIT
# Insert only, never updated nor deleted.
# ─────────────────────────────────────────────────────────────────────
class FraudScoreAudit(Base):
    __tablename__ = "fraud_scores"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_type: Mapped[str] = mapped_column(String(10), nullable=False)

    total_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    # Signal types in clear for statistics; full signals (evidence holds
    # user agents, locations, fingerprints) encrypted with AES-256-GCM
    signal_types: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    signals: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    encrypted_signals: Mapped[bytes | None] = mapped_column(BYTEA, nullable=True)

    actions: Mapped[dict] = mapped_column(JSONB, nullable=False)
    flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    blocked: Mapped[bool] = mapped_column(Boolean, default=False)

    model_version: Mapped[str] = mapped_column(String(20), nullable=False)
    data_points: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    failed_checks: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_fraud_scores_booking", "booking_id"),
        Index("idx_fraud_scores_user_created", "user_id", "created_at"),
        Index("idx_fraud_scores_risk_level", "risk_level"),
    )


# ─────────────────────────────────────────────────────────────────────
# AUTO-REFUND CASES
# status and refund are written only by the CaseManager, always through
# conditional UPDATE … WHERE status IN (…) statements.
# ─────────────────────────────────────────────────────────────────────
class AutoRefundCaseRow(Base):
    __tablename__ = "auto_refund_cases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    renter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gear_title: Mapped[str] = mapped_column(String(255), nullable=False)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    payment_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Snapshot of the RefundTrigger at detection time
    trigger_name: Mapped[str] = mapped_column(String(50), nullable=False)
    trigger: Mapped[dict] = mapped_column(JSONB, nullable=False)
    trigger_event: Mapped[str] = mapped_column(String(64), nullable=False)

    # "pending" | "processing" | "completed" | "failed" | "cancelled"
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="pending"
    )

    timeline: Mapped[list] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    detection: Mapped[dict] = mapped_column(JSONB, nullable=False)
    refund: Mapped[dict] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        # One case per booking + trigger event, whatever its status.
        # A completed case keeps the slot: its booking is already refunded.
        UniqueConstraint("booking_id", "trigger_event", name="uq_auto_refund_case_event"),
        Index("idx_auto_refund_status_updated", "status", "updated_at"),
    )


# ─────────────────────────────────────────────────────────────────────
# MARKETPLACE TABLES (read side)
# ─────────────────────────────────────────────────────────────────────
class BookingRow(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    renter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gear_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    # "pending" | "confirmed" | "active" | "completed" | "cancelled"
    # | "refunded" | "blocked_fraud"
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    pickup_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_method: Mapped[str] = mapped_column(
        String(10), nullable=False, server_default="pickup"
    )

    cancelled_by: Mapped[str | None] = mapped_column(String(10), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment_charge_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Written by the engine
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_refund_case_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    fraud_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_bookings_status_created", "status", "created_at"),
        Index("idx_bookings_status_start", "status", "start_date"),
        Index("idx_bookings_renter_created", "renter_id", "created_at"),
    )


class BookingMessage(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_messages_booking_sender", "booking_id", "sender_id", "created_at"),
        Index("idx_messages_sender_created", "sender_id", "created_at"),
    )


class RentalIssueRow(Base):
    __tablename__ = "rental_issues"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # "low" | "medium" | "high" | "urgent"
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    # "open" | "resolved"
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_rental_issues_booking_status", "booking_id", "status"),
    )


class UserAccountRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # "succeeded" | "failed"
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_payment_attempts_user_status", "user_id", "status", "created_at"),
    )


class PaymentMethodRow(Base):
    __tablename__ = "payment_methods"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_payment_methods_user_created", "user_id", "created_at"),
    )


class Chargeback(Base):
    __tablename__ = "chargebacks"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ProfileView(Base):
    __tablename__ = "profile_views"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    viewer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # "profile" | "listing"
    target_type: Mapped[str] = mapped_column(String(10), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("idx_profile_views_viewer_created", "viewer_id", "created_at"),
    )
