"""Milestone lifecycle endpoints."""

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.rate_limit import check_rate_limit
from app.schemas.milestone import (
    EvidenceResponse, EvidenceResult, EvidenceSubmit, MilestoneApprove, MilestoneDispute,
    MilestoneFund, MilestoneResolution, MilestoneResponse, TemplateResponse,
)
from app.services import milestones as milestone_service
from app.services.fees import allocate
from app.services.milestone_planner import recommend_templates

router = APIRouter(prefix="/milestones", tags=["milestones"])


@router.get("/templates", response_model=list[TemplateResponse], dependencies=[Depends(check_rate_limit)])
async def get_templates(
    job_type: str | None = Query(None, max_length=64),
    amount: Decimal | None = Query(None, gt=0),
) -> list[TemplateResponse]:
    """Suggested milestone breakdown for a job category, priced if an amount is given."""
    templates = recommend_templates(job_type)
    amounts: list[Decimal | None] = [None] * len(templates)
    if amount is not None:
        amounts = allocate(amount, [t.percentage for t in templates])
    return [
        TemplateResponse(
            title=t.title,
            description=t.description,
            percentage=t.percentage,
            amount=a,
            evidence_required=t.evidence_required,
            approval_required=t.approval_required,
        )
        for t, a in zip(templates, amounts)
    ]


@router.get("/{milestone_id}", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def get_milestone(
    milestone_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    milestone = await milestone_service.get_milestone(db, milestone_id)
    return MilestoneResponse.model_validate(milestone)


@router.get(
    "/{milestone_id}/evidence",
    response_model=list[EvidenceResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_evidence(
    milestone_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[EvidenceResponse]:
    await milestone_service.get_milestone(db, milestone_id)
    evidence = await milestone_service.list_evidence(db, milestone_id)
    return [EvidenceResponse.model_validate(e) for e in evidence]


@router.post("/{milestone_id}/fund", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def fund_milestone(
    milestone_id: uuid.UUID,
    data: MilestoneFund,
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    """Earmark this milestone's amount from the escrowed deposit."""
    milestone = await milestone_service.fund_milestone(db, milestone_id, data.actor_id)
    return MilestoneResponse.model_validate(milestone)


@router.post(
    "/{milestone_id}/evidence",
    response_model=EvidenceResult,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_evidence(
    milestone_id: uuid.UUID,
    data: EvidenceSubmit,
    db: AsyncSession = Depends(get_db),
) -> EvidenceResult:
    """Artisan submits proof of work. May release the milestone if no approval is needed."""
    evidence, milestone = await milestone_service.submit_evidence(
        db, milestone_id,
        kind=data.kind,
        submitted_by=data.submitted_by,
        url=data.url,
        description=data.description,
    )
    return EvidenceResult(
        evidence=EvidenceResponse.model_validate(evidence),
        milestone=MilestoneResponse.model_validate(milestone),
    )


@router.post("/{milestone_id}/approve", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def approve_milestone(
    milestone_id: uuid.UUID,
    data: MilestoneApprove,
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    """Customer approves the work and releases the milestone."""
    milestone = await milestone_service.approve_milestone(db, milestone_id, data.approver_id)
    return MilestoneResponse.model_validate(milestone)


@router.post("/{milestone_id}/dispute", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def dispute_milestone(
    milestone_id: uuid.UUID,
    data: MilestoneDispute,
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    milestone = await milestone_service.dispute_milestone(
        db, milestone_id, data.reason, data.actor_id
    )
    return MilestoneResponse.model_validate(milestone)


@router.post("/{milestone_id}/resolve", response_model=MilestoneResponse, dependencies=[Depends(check_rate_limit)])
async def resolve_milestone(
    milestone_id: uuid.UUID,
    data: MilestoneResolution,
    db: AsyncSession = Depends(get_db),
) -> MilestoneResponse:
    milestone = await milestone_service.resolve_milestone_dispute(
        db, milestone_id, data.resolution, data.resolver_id
    )
    return MilestoneResponse.model_validate(milestone)
