"""Pydantic v2 schemas for Escrow and milestone plans."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.milestone_planner import MilestoneTemplate


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    request_id: uuid.UUID
    service_fee_id: uuid.UUID
    total_amount: Decimal
    platform_fee: Decimal
    artisan_amount: Decimal
    status: str
    transaction_ref: str | None
    dispute_reason: str | None
    escrowed_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entry_id: uuid.UUID
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    action: str
    actor_id: uuid.UUID | None
    amount: Decimal
    commission: Decimal | None
    reference: str
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> str:
        return _enum_value(v)


class EscrowRelease(BaseModel):
    approver_id: uuid.UUID


class EscrowRefund(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2048)
    actor_id: uuid.UUID | None = None


class EscrowDispute(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2048)
    actor_id: uuid.UUID


class DisputeResolution(BaseModel):
    resolution: Literal["release", "refund"]
    resolver_id: uuid.UUID


class MilestoneTemplateIn(BaseModel):
    """One slice of the job total.

    ``dependencies`` lists the 1-based orders of prerequisite milestones. Leave it
    out to depend on the previous milestone; send ``[]`` for none.
    """
    title: str = Field(..., min_length=1, max_length=256)
    description: str | None = Field(None, max_length=2048)
    percentage: Decimal = Field(..., gt=0, le=100, max_digits=5, decimal_places=2)
    amount: Decimal | None = Field(None, gt=0, max_digits=14, decimal_places=2)
    dependencies: list[int] | None = None
    evidence_required: list[str] | None = None
    approval_required: bool | None = None

    def to_template(self) -> MilestoneTemplate:
        return MilestoneTemplate(**self.model_dump())


class MilestonePlanCreate(BaseModel):
    milestones: list[MilestoneTemplateIn] = Field(..., min_length=1, max_length=20)
