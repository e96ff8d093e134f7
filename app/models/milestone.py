"""Escrow milestone and evidence models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class MilestoneStatus(enum.Enum):
    PENDING = "pending"
    READY = "ready"
    DEPOSITED = "deposited"
    RELEASED = "released"
    DISPUTED = "disputed"


VALID_TRANSITIONS: dict[MilestoneStatus, set[MilestoneStatus]] = {
    MilestoneStatus.PENDING: {MilestoneStatus.READY},
    MilestoneStatus.READY: {MilestoneStatus.DEPOSITED},
    MilestoneStatus.DEPOSITED: {MilestoneStatus.RELEASED, MilestoneStatus.DISPUTED},
    # Dispute resolution in favour of the artisan is the only way out
    MilestoneStatus.DISPUTED: {MilestoneStatus.RELEASED},
    MilestoneStatus.RELEASED: set(),
}


class EvidenceKind(enum.Enum):
    PHOTOS = "photos"
    DOCUMENTS = "documents"
    VIDEO = "video"
    DESCRIPTION = "description"
    CUSTOMER_APPROVAL = "customer_approval"


class EscrowMilestone(Base):
    __tablename__ = "escrow_milestones"
    __table_args__ = (
        UniqueConstraint("escrow_id", "order", name="uq_milestone_escrow_order"),
    )

    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False
    )
    order: Mapped[int] = mapped_column("order", Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    # Share of the escrow's platform fee withheld when this milestone is released
    commission: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    status: Mapped[MilestoneStatus] = mapped_column(
        Enum(MilestoneStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=MilestoneStatus.PENDING,
    )
    # Milestone ids (as strings) that must be released before this one is ready
    dependencies: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    evidence_required: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "refund" when a dispute was settled in the customer's favour
    resolution: Mapped[str | None] = mapped_column(String(16), nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def payout(self) -> Decimal:
        return self.amount - self.commission

    @property
    def is_settled(self) -> bool:
        """Released, or disputed and resolved with a refund."""
        return self.status == MilestoneStatus.RELEASED or (
            self.status == MilestoneStatus.DISPUTED and self.resolution == "refund"
        )


class MilestoneEvidence(Base):
    """Append-only. Newer evidence of the same kind supersedes, never replaces."""
    __tablename__ = "milestone_evidence"

    evidence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_milestones.milestone_id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[EvidenceKind] = mapped_column(
        Enum(EvidenceKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
