"""Milestone lifecycle: fund, evidence, approval, release, dispute.

    pending -> ready -> deposited -> released
                           |
                           +-> disputed -> (resolved: released, or refunded in place)

Every mutation locks the parent escrow row first and the milestone row second, so
milestone operations serialize with escrow-level release, refund and dispute.
A release, the readiness cascade it triggers and the parent escrow settlement
commit in one transaction. Readiness is always re-derived from persisted
milestone states (see ``refresh_readiness``), never tracked in memory.
"""

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    DisputeActive, EvidenceIncomplete, InvalidState, NotFoundError, ValidationError,
)
from app.models.escrow import EscrowAction, EscrowPayment, EscrowStatus
from app.models.milestone import EscrowMilestone, EvidenceKind, MilestoneEvidence, MilestoneStatus
from app.services.escrow import log_entry, credit_artisan, lock_escrow, settle_if_complete

logger = logging.getLogger(__name__)


async def get_milestone(db: AsyncSession, milestone_id: uuid.UUID) -> EscrowMilestone:
    milestone = await db.get(EscrowMilestone, milestone_id)
    if milestone is None:
        raise NotFoundError("Milestone not found", milestone_id=str(milestone_id))
    return milestone


async def list_milestones(db: AsyncSession, escrow_id: uuid.UUID) -> list[EscrowMilestone]:
    result = await db.execute(
        select(EscrowMilestone)
        .where(EscrowMilestone.escrow_id == escrow_id)
        .order_by(EscrowMilestone.order)
    )
    return list(result.scalars().all())


async def list_evidence(
    db: AsyncSession, milestone_id: uuid.UUID, *, current_only: bool = False
) -> list[MilestoneEvidence]:
    query = select(MilestoneEvidence).where(MilestoneEvidence.milestone_id == milestone_id)
    if current_only:
        query = query.where(MilestoneEvidence.superseded_by.is_(None))
    result = await db.execute(query.order_by(MilestoneEvidence.submitted_at))
    return list(result.scalars().all())


async def _lock(db: AsyncSession, milestone_id: uuid.UUID) -> tuple[EscrowPayment, EscrowMilestone]:
    """Lock the parent escrow, then the milestone."""
    milestone = await get_milestone(db, milestone_id)
    escrow = await lock_escrow(db, milestone.escrow_id)
    result = await db.execute(
        select(EscrowMilestone)
        .where(EscrowMilestone.milestone_id == milestone_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return escrow, result.scalar_one()


def _assert_escrow_open(escrow: EscrowPayment) -> None:
    if escrow.status == EscrowStatus.DISPUTED:
        raise DisputeActive("The escrow is disputed; milestone funds are frozen")
    if escrow.status != EscrowStatus.ESCROWED:
        raise InvalidState(
            f"Escrow must be escrowed, currently {escrow.status.value}",
            status=escrow.status.value,
        )


def _ref(escrow: EscrowPayment, milestone: EscrowMilestone, action: str) -> str:
    return f"{escrow.escrow_id}:m{milestone.order}:{action}"


async def missing_evidence(db: AsyncSession, milestone: EscrowMilestone) -> list[str]:
    present = {e.kind.value for e in await list_evidence(db, milestone.milestone_id, current_only=True)}
    return [kind for kind in milestone.evidence_required if kind not in present]


async def refresh_readiness(db: AsyncSession, escrow_id: uuid.UUID) -> list[EscrowMilestone]:
    """Move pending milestones whose dependencies are all released to ready.

    Safe to run at any time; it only looks at persisted states. Does not commit.
    """
    milestones = await list_milestones(db, escrow_id)
    released = {
        str(m.milestone_id) for m in milestones if m.status == MilestoneStatus.RELEASED
    }
    readied = []
    for m in milestones:
        if m.status == MilestoneStatus.PENDING and all(d in released for d in m.dependencies):
            m.status = MilestoneStatus.READY
            readied.append(m)
    if readied:
        await db.flush()
        logger.info(
            "Escrow %s: milestones %s ready", escrow_id, [m.order for m in readied]
        )
    return readied


async def reconcile_all(db: AsyncSession) -> int:
    """Re-derive readiness for every open escrow. Run at startup."""
    result = await db.execute(
        select(EscrowPayment.escrow_id).where(EscrowPayment.status == EscrowStatus.ESCROWED)
    )
    count = 0
    for escrow_id in result.scalars().all():
        count += len(await refresh_readiness(db, escrow_id))
    await db.commit()
    return count


async def fund_milestone(
    db: AsyncSession, milestone_id: uuid.UUID, actor_id: uuid.UUID | None = None
) -> EscrowMilestone:
    """ready -> deposited. Earmarks exactly this milestone's amount of the held deposit.

    A milestone that asks for neither evidence nor approval is released straight
    away, in the same transaction.
    """
    escrow, milestone = await _lock(db, milestone_id)
    _assert_escrow_open(escrow)
    if milestone.status != MilestoneStatus.READY:
        raise InvalidState(
            f"Milestone must be ready to fund, currently {milestone.status.value}",
            status=milestone.status.value,
        )

    milestone.status = MilestoneStatus.DEPOSITED
    milestone.funded_at = datetime.now(UTC)
    log_entry(
        db, escrow, EscrowAction.MILESTONE_FUNDED, milestone.amount, _ref(escrow, milestone, "fund"),
        actor_id=actor_id,
        milestone_id=milestone.milestone_id,
    )
    await db.flush()
    logger.info("Milestone %s funded with %s", milestone_id, milestone.amount)
    await _maybe_auto_release(db, escrow, milestone)
    await db.commit()
    await db.refresh(milestone)
    return milestone


async def _maybe_auto_release(
    db: AsyncSession, escrow: EscrowPayment, milestone: EscrowMilestone
) -> bool:
    """Release a deposited milestone that needs no approval once its evidence is complete.

    A frozen escrow keeps the milestone deposited until the dispute is settled.
    Caller commits.
    """
    if (
        escrow.status != EscrowStatus.ESCROWED
        or milestone.status != MilestoneStatus.DEPOSITED
        or milestone.approval_required
        or await missing_evidence(db, milestone)
    ):
        return False
    await _release(db, escrow, milestone, None)
    logger.info("Milestone %s auto-released", milestone.milestone_id)
    return True


async def _release(
    db: AsyncSession,
    escrow: EscrowPayment,
    milestone: EscrowMilestone,
    actor_id: uuid.UUID | None,
) -> None:
    """Pay out, cascade readiness, settle the parent. Caller commits."""
    await credit_artisan(db, escrow.request_id, milestone.payout)
    milestone.status = MilestoneStatus.RELEASED
    milestone.released_at = datetime.now(UTC)
    log_entry(
        db, escrow, EscrowAction.MILESTONE_RELEASED, milestone.amount,
        _ref(escrow, milestone, "release"),
        actor_id=actor_id,
        milestone_id=milestone.milestone_id,
        commission=milestone.commission,
        metadata={"payout": str(milestone.payout)},
    )
    await db.flush()
    await refresh_readiness(db, escrow.escrow_id)
    await settle_if_complete(db, escrow)
    logger.info(
        "Milestone %s released, artisan paid %s", milestone.milestone_id, milestone.payout
    )


async def submit_evidence(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    *,
    kind: EvidenceKind,
    submitted_by: uuid.UUID,
    url: str | None = None,
    description: str | None = None,
) -> tuple[MilestoneEvidence, EscrowMilestone]:
    """Append evidence. Earlier evidence of the same kind is marked superseded.

    When this completes the required evidence of a milestone that needs no
    approval, the milestone is released in the same transaction.
    """
    escrow, milestone = await _lock(db, milestone_id)
    if milestone.status == MilestoneStatus.DISPUTED:
        raise DisputeActive("Milestone is disputed")
    if milestone.status != MilestoneStatus.DEPOSITED:
        raise InvalidState(
            f"Milestone must be deposited before submitting evidence, currently "
            f"{milestone.status.value}",
            status=milestone.status.value,
        )

    evidence = MilestoneEvidence(
        evidence_id=uuid.uuid4(),
        milestone_id=milestone_id,
        kind=kind,
        url=url,
        description=description,
        submitted_by=submitted_by,
    )
    for earlier in await list_evidence(db, milestone_id, current_only=True):
        if earlier.kind == kind:
            earlier.superseded_by = evidence.evidence_id
    db.add(evidence)
    await db.flush()

    await _maybe_auto_release(db, escrow, milestone)
    await db.commit()
    await db.refresh(milestone)
    return evidence, milestone


async def approve_milestone(
    db: AsyncSession, milestone_id: uuid.UUID, approver_id: uuid.UUID
) -> EscrowMilestone:
    """Customer sign-off. Releases the milestone once its evidence is complete.

    A milestone that is already released is returned unchanged.
    """
    escrow, milestone = await _lock(db, milestone_id)
    if milestone.status == MilestoneStatus.RELEASED:
        await db.commit()
        return milestone
    if milestone.status == MilestoneStatus.DISPUTED:
        raise DisputeActive("Milestone is disputed")
    if milestone.status != MilestoneStatus.DEPOSITED:
        raise InvalidState(
            f"Milestone must be deposited to release, currently {milestone.status.value}",
            status=milestone.status.value,
        )
    missing = await missing_evidence(db, milestone)
    if missing:
        raise EvidenceIncomplete(missing)
    _assert_escrow_open(escrow)

    now = datetime.now(UTC)
    for evidence in await list_evidence(db, milestone_id, current_only=True):
        evidence.approved = True
        evidence.approved_by = approver_id
        evidence.approved_at = now

    await _release(db, escrow, milestone, approver_id)
    await db.commit()
    await db.refresh(milestone)
    return milestone


async def dispute_milestone(
    db: AsyncSession, milestone_id: uuid.UUID, reason: str, actor_id: uuid.UUID | None = None
) -> EscrowMilestone:
    """deposited -> disputed. Milestones that depend on it stay pending."""
    escrow, milestone = await _lock(db, milestone_id)
    if milestone.status == MilestoneStatus.DISPUTED:
        raise DisputeActive("Milestone is already disputed")
    if milestone.status != MilestoneStatus.DEPOSITED:
        raise InvalidState(
            f"Only deposited milestones can be disputed, currently {milestone.status.value}",
            status=milestone.status.value,
        )

    milestone.status = MilestoneStatus.DISPUTED
    milestone.dispute_reason = reason
    log_entry(
        db, escrow, EscrowAction.DISPUTED, milestone.amount, _ref(escrow, milestone, "dispute"),
        actor_id=actor_id,
        milestone_id=milestone.milestone_id,
        metadata={"reason": reason},
    )
    await db.commit()
    await db.refresh(milestone)
    logger.info("Milestone %s disputed: %s", milestone_id, reason)
    return milestone


async def resolve_milestone_dispute(
    db: AsyncSession,
    milestone_id: uuid.UUID,
    resolution: str,
    resolver_id: uuid.UUID | None,
) -> EscrowMilestone:
    """Settle a disputed milestone.

    ``release`` pays the artisan as a normal release would. ``refund`` returns the
    milestone amount to the customer; the milestone stays ``disputed`` with
    ``resolution == "refund"`` and its dependants never become ready.
    """
    if resolution not in ("release", "refund"):
        raise ValidationError("Resolution must be 'release' or 'refund'")

    escrow, milestone = await _lock(db, milestone_id)
    if milestone.status != MilestoneStatus.DISPUTED or milestone.resolution is not None:
        raise InvalidState(
            f"Milestone has no open dispute, currently {milestone.status.value}",
            status=milestone.status.value,
        )
    _assert_escrow_open(escrow)

    log_entry(
        db, escrow, EscrowAction.RESOLVED, milestone.amount, _ref(escrow, milestone, "resolve"),
        actor_id=resolver_id,
        milestone_id=milestone.milestone_id,
        metadata={"resolution": resolution},
    )
    milestone.resolution = resolution
    if resolution == "release":
        await _release(db, escrow, milestone, resolver_id)
    else:
        log_entry(
            db, escrow, EscrowAction.REFUNDED, milestone.amount, _ref(escrow, milestone, "refund"),
            actor_id=resolver_id,
            milestone_id=milestone.milestone_id,
        )
        await db.flush()
        await settle_if_complete(db, escrow)

    await db.commit()
    await db.refresh(milestone)
    logger.info("Milestone %s dispute resolved: %s", milestone_id, resolution)
    return milestone
