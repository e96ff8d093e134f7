"""Pydantic v2 schemas for milestone lifecycle endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.milestone import EvidenceKind


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    milestone_id: uuid.UUID
    escrow_id: uuid.UUID
    order: int
    title: str
    description: str | None
    amount: Decimal
    percentage: Decimal
    commission: Decimal
    status: str
    dependencies: list[uuid.UUID]
    evidence_required: list[str]
    approval_required: bool
    dispute_reason: str | None
    resolution: str | None
    funded_at: datetime | None
    released_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class EvidenceSubmit(BaseModel):
    kind: EvidenceKind
    submitted_by: uuid.UUID
    url: str | None = Field(None, max_length=2048)
    description: str | None = Field(None, max_length=4096)


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    evidence_id: uuid.UUID
    milestone_id: uuid.UUID
    kind: EvidenceKind
    url: str | None
    description: str | None
    submitted_by: uuid.UUID
    submitted_at: datetime
    approved: bool
    superseded_by: uuid.UUID | None


class EvidenceResult(BaseModel):
    evidence: EvidenceResponse
    milestone: MilestoneResponse


class MilestoneFund(BaseModel):
    actor_id: uuid.UUID | None = None


class MilestoneApprove(BaseModel):
    approver_id: uuid.UUID


class MilestoneDispute(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2048)
    actor_id: uuid.UUID


class MilestoneResolution(BaseModel):
    resolution: Literal["release", "refund"]
    resolver_id: uuid.UUID


class TemplateResponse(BaseModel):
    title: str
    description: str | None
    percentage: Decimal
    amount: Decimal | None = None
    evidence_required: list[str]
    approval_required: bool
