"""Escrow payment and ledger models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class EscrowStatus(enum.Enum):
    PENDING = "pending"
    ESCROWED = "escrowed"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


# No path leads back to ESCROWED once funds have left or been frozen and resolved
VALID_TRANSITIONS: dict[EscrowStatus, set[EscrowStatus]] = {
    EscrowStatus.PENDING: {EscrowStatus.ESCROWED},
    EscrowStatus.ESCROWED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED},
    EscrowStatus.DISPUTED: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}


class EscrowAction(enum.Enum):
    CREATED = "created"
    DEPOSITED = "deposited"
    MILESTONE_FUNDED = "milestone_funded"
    RELEASED = "released"
    MILESTONE_RELEASED = "milestone_released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"


class EscrowPayment(Base):
    __tablename__ = "escrow_payments"
    __table_args__ = (
        CheckConstraint(
            "platform_fee + artisan_amount = total_amount", name="ck_escrow_split_reconciles"
        ),
        CheckConstraint("platform_fee >= 0 AND artisan_amount >= 0", name="ck_escrow_non_negative"),
    )

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.request_id", ondelete="RESTRICT"),
        unique=True, nullable=False,
    )
    # Back-reference only; the fee payment has its own lifecycle
    service_fee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_fee_payments.fee_payment_id", ondelete="RESTRICT"),
        nullable=False,
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    artisan_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.PENDING,
    )
    # Set once from the confirmed deposit attempt, never rewritten
    transaction_ref: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    paid_channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Milestone plan requested at quote acceptance, materialized on deposit
    milestone_templates: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    escrowed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class EscrowLedgerEntry(Base):
    """Append-only sub-ledger and audit trail. Never update or delete rows."""
    __tablename__ = "escrow_ledger_entries"

    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrow_milestones.milestone_id", ondelete="RESTRICT"), nullable=True
    )
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    commission: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    # Unique per funds movement; a retried movement collides here instead of repeating
    reference: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
