"""Service fee payment and gateway attempt models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class ServiceFeeStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentPurpose(enum.Enum):
    SERVICE_FEE = "service_fee"
    ESCROW = "escrow"


class AttemptStatus(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    # Polling budget exhausted. Funds may still clear, so this is not terminal for
    # confirmation purposes: a late webhook or a manual verify can still settle it.
    TIMED_OUT = "timed_out"


class ServiceFeePayment(Base):
    __tablename__ = "service_fee_payments"

    fee_payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.request_id", ondelete="RESTRICT"),
        unique=True, nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[ServiceFeeStatus] = mapped_column(
        Enum(ServiceFeeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ServiceFeeStatus.PENDING,
    )
    transaction_ref: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class PaymentAttempt(Base):
    """One row per gateway initiate. References are never reused."""
    __tablename__ = "payment_attempts"

    attempt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    purpose: Mapped[PaymentPurpose] = mapped_column(
        Enum(PaymentPurpose, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    # fee_payment_id or escrow_id depending on purpose
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.request_id", ondelete="RESTRICT"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payer: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[AttemptStatus] = mapped_column(
        Enum(AttemptStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AttemptStatus.PENDING,
    )
    redirect_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructions: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    paid_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
