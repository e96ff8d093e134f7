"""Service request, quote and artisan models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ServiceRequestStatus(enum.Enum):
    OPEN = "open"
    QUOTE_ACCEPTED = "quote_accepted"
    JOB_ACTIVE = "job_active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


VALID_TRANSITIONS: dict[ServiceRequestStatus, set[ServiceRequestStatus]] = {
    ServiceRequestStatus.OPEN: {ServiceRequestStatus.QUOTE_ACCEPTED, ServiceRequestStatus.CANCELLED},
    ServiceRequestStatus.QUOTE_ACCEPTED: {
        ServiceRequestStatus.JOB_ACTIVE, ServiceRequestStatus.CANCELLED,
    },
    ServiceRequestStatus.JOB_ACTIVE: {ServiceRequestStatus.COMPLETED, ServiceRequestStatus.CANCELLED},
    ServiceRequestStatus.COMPLETED: set(),
    ServiceRequestStatus.CANCELLED: set(),
}


class Artisan(Base):
    """Service provider. Contact fields are only ever read through the reveal gate."""
    __tablename__ = "artisans"

    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Released earnings credited by the escrow ledger
    balance: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    artisan_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("artisans.artisan_id", ondelete="RESTRICT"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    # Free-form category slug, e.g. "plumbing"; used only to suggest milestone plans
    job_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[ServiceRequestStatus] = mapped_column(
        Enum(ServiceRequestStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ServiceRequestStatus.OPEN,
    )
    # Audit only. The reveal gate never consults this column.
    contact_revealed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class Quote(Base):
    __tablename__ = "quotes"

    quote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.request_id", ondelete="RESTRICT"), nullable=False
    )
    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("artisans.artisan_id", ondelete="RESTRICT"), nullable=False
    )
    # Authoritative job total once accepted
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
