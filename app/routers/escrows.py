"""Escrow ledger endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.rate_limit import check_rate_limit
from app.schemas.escrow import (
    DisputeResolution, EscrowDispute, EscrowRefund, EscrowRelease, EscrowResponse,
    LedgerEntryResponse, MilestonePlanCreate,
)
from app.schemas.milestone import MilestoneResponse
from app.services import escrow as escrow_service
from app.services import milestones as milestone_service
from app.services.milestone_planner import materialize_plan

router = APIRouter(prefix="/escrows", tags=["escrows"])


@router.get("/{escrow_id}", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def get_escrow(
    escrow_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    escrow = await escrow_service.get_escrow(db, escrow_id)
    return EscrowResponse.model_validate(escrow)


@router.get(
    "/{escrow_id}/ledger",
    response_model=list[LedgerEntryResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_ledger(
    escrow_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[LedgerEntryResponse]:
    """Every funds movement and decision on this escrow, oldest first."""
    entries = await escrow_service.get_ledger(db, escrow_id)
    return [LedgerEntryResponse.model_validate(e) for e in entries]


@router.post("/{escrow_id}/release", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def release_escrow(
    escrow_id: uuid.UUID,
    data: EscrowRelease,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Release to the artisan. Repeating the call returns the released escrow unchanged."""
    escrow = await escrow_service.release(db, escrow_id, data.approver_id)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/refund", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def refund_escrow(
    escrow_id: uuid.UUID,
    data: EscrowRefund,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    escrow = await escrow_service.refund(db, escrow_id, data.reason, data.actor_id)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/dispute", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def dispute_escrow(
    escrow_id: uuid.UUID,
    data: EscrowDispute,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Freeze the escrow until the dispute is resolved."""
    escrow = await escrow_service.dispute(db, escrow_id, data.reason, data.actor_id)
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/resolve", response_model=EscrowResponse, dependencies=[Depends(check_rate_limit)])
async def resolve_dispute(
    escrow_id: uuid.UUID,
    data: DisputeResolution,
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    escrow = await escrow_service.resolve_dispute(
        db, escrow_id, data.resolution, data.resolver_id
    )
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/milestones",
    response_model=list[MilestoneResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def create_milestones(
    escrow_id: uuid.UUID,
    data: MilestonePlanCreate,
    db: AsyncSession = Depends(get_db),
) -> list[MilestoneResponse]:
    """Split an escrowed job into milestones. Allowed once per escrow."""
    escrow = await escrow_service.lock_escrow(db, escrow_id)
    milestones = await materialize_plan(db, escrow, [m.to_template() for m in data.milestones])
    await db.commit()
    return [MilestoneResponse.model_validate(m) for m in milestones]


@router.get(
    "/{escrow_id}/milestones",
    response_model=list[MilestoneResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_milestones(
    escrow_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[MilestoneResponse]:
    await escrow_service.get_escrow(db, escrow_id)
    milestones = await milestone_service.list_milestones(db, escrow_id)
    return [MilestoneResponse.model_validate(m) for m in milestones]
