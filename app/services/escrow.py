"""Escrow ledger: deposit, release, refund, dispute with row-level locking.

Every mutation locks the escrow row (SELECT ... FOR UPDATE) and the row carries a
version counter, so two concurrent decisions on the same escrow cannot both
commit. Each funds movement appends an ``EscrowLedgerEntry`` whose reference is
unique; a movement that somehow ran twice would collide there instead of paying
twice.

The ``apply_*`` helpers mutate an already-locked escrow without committing. They
exist so callers such as payment confirmation and job cancellation can fold a
ledger change into their own transaction.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import DisputeActive, InvalidState, NotFoundError, ValidationError
from app.models.escrow import EscrowAction, EscrowLedgerEntry, EscrowPayment, EscrowStatus
from app.models.milestone import EscrowMilestone, MilestoneStatus
from app.models.payment import ServiceFeePayment
from app.models.service_request import Artisan, ServiceRequest
from app.services.fees import calculate_total_cost

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def log_entry(
    db: AsyncSession,
    escrow: EscrowPayment,
    action: EscrowAction,
    amount: Decimal,
    reference: str,
    *,
    actor_id: uuid.UUID | None = None,
    milestone_id: uuid.UUID | None = None,
    commission: Decimal | None = None,
    metadata: dict | None = None,
) -> EscrowLedgerEntry:
    """Append to the ledger. Rows are never updated or deleted."""
    entry = EscrowLedgerEntry(
        entry_id=uuid.uuid4(),
        escrow_id=escrow.escrow_id,
        milestone_id=milestone_id,
        action=action,
        actor_id=actor_id,
        amount=amount,
        commission=commission,
        reference=reference,
        metadata_=metadata,
    )
    db.add(entry)
    return entry


async def get_escrow(db: AsyncSession, escrow_id: uuid.UUID) -> EscrowPayment:
    result = await db.execute(select(EscrowPayment).where(EscrowPayment.escrow_id == escrow_id))
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFoundError("Escrow not found", escrow_id=str(escrow_id))
    return escrow


async def lock_escrow(db: AsyncSession, escrow_id: uuid.UUID) -> EscrowPayment:
    result = await db.execute(
        select(EscrowPayment)
        .where(EscrowPayment.escrow_id == escrow_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise NotFoundError("Escrow not found", escrow_id=str(escrow_id))
    return escrow


async def get_escrow_for_request(db: AsyncSession, request_id: uuid.UUID) -> EscrowPayment | None:
    result = await db.execute(
        select(EscrowPayment).where(EscrowPayment.request_id == request_id)
    )
    return result.scalar_one_or_none()


async def get_ledger(db: AsyncSession, escrow_id: uuid.UUID) -> list[EscrowLedgerEntry]:
    await get_escrow(db, escrow_id)
    result = await db.execute(
        select(EscrowLedgerEntry)
        .where(EscrowLedgerEntry.escrow_id == escrow_id)
        .order_by(EscrowLedgerEntry.timestamp, EscrowLedgerEntry.entry_id)
    )
    return list(result.scalars().all())


async def _milestones(db: AsyncSession, escrow_id: uuid.UUID) -> list[EscrowMilestone]:
    result = await db.execute(
        select(EscrowMilestone)
        .where(EscrowMilestone.escrow_id == escrow_id)
        .order_by(EscrowMilestone.order)
    )
    return list(result.scalars().all())


async def credit_artisan(db: AsyncSession, request_id: uuid.UUID, amount: Decimal) -> Artisan:
    """Add released funds to the artisan's balance. Locks the artisan row."""
    request = await db.get(ServiceRequest, request_id)
    if request is None or request.artisan_id is None:
        raise InvalidState("Service request has no assigned artisan", request_id=str(request_id))
    result = await db.execute(
        select(Artisan).where(Artisan.artisan_id == request.artisan_id).with_for_update()
    )
    artisan = result.scalar_one()
    artisan.balance = artisan.balance + amount
    return artisan


def _outstanding(escrow: EscrowPayment, milestones: list[EscrowMilestone]) -> tuple[Decimal, Decimal]:
    """(amount still held, artisan share of it). Settled milestones are excluded."""
    if not milestones:
        return escrow.total_amount, escrow.artisan_amount
    open_ms = [m for m in milestones if not m.is_settled]
    return (
        sum((m.amount for m in open_ms), ZERO),
        sum((m.payout for m in open_ms), ZERO),
    )


async def create_escrow(
    db: AsyncSession,
    request: ServiceRequest,
    service_fee: ServiceFeePayment,
    job_amount: Decimal,
    milestone_templates: list[dict] | None = None,
) -> EscrowPayment:
    """Create a pending escrow for an accepted quote. Does not commit."""
    cost = calculate_total_cost(job_amount)
    escrow = EscrowPayment(
        escrow_id=uuid.uuid4(),
        request_id=request.request_id,
        service_fee_id=service_fee.fee_payment_id,
        total_amount=cost.job_amount,
        platform_fee=cost.platform_fee,
        artisan_amount=cost.artisan_amount,
        status=EscrowStatus.PENDING,
        milestone_templates=milestone_templates,
    )
    db.add(escrow)
    await db.flush()
    log_entry(
        db, escrow, EscrowAction.CREATED, cost.job_amount, f"{escrow.escrow_id}:created",
        actor_id=request.customer_id,
        commission=cost.platform_fee,
    )
    return escrow


async def apply_deposit(
    db: AsyncSession,
    escrow: EscrowPayment,
    *,
    reference: str,
    paid_amount: Decimal,
    channel: str | None = None,
) -> EscrowPayment:
    """pending -> escrowed on a verified gateway payment. Escrow must be locked."""
    if escrow.status != EscrowStatus.PENDING:
        raise InvalidState(
            f"Escrow must be pending to deposit, currently {escrow.status.value}",
            status=escrow.status.value,
        )
    if paid_amount != escrow.total_amount:
        raise ValidationError(
            f"Deposit of {paid_amount} does not match escrow total {escrow.total_amount}",
        )

    escrow.status = EscrowStatus.ESCROWED
    escrow.transaction_ref = reference
    escrow.paid_channel = channel
    escrow.escrowed_at = datetime.now(UTC)
    log_entry(
        db, escrow, EscrowAction.DEPOSITED, paid_amount, reference,
        metadata={"channel": channel} if channel else None,
    )
    await db.flush()

    if escrow.milestone_templates:
        from app.services.milestone_planner import materialize_plan
        await materialize_plan(db, escrow, escrow.milestone_templates)

    logger.info("Escrow %s deposited %s (ref %s)", escrow.escrow_id, paid_amount, reference)
    return escrow


async def deposit(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    *,
    reference: str,
    paid_amount: Decimal,
    channel: str | None = None,
) -> EscrowPayment:
    """Record a verified deposit. Only payment confirmation should call this."""
    escrow = await lock_escrow(db, escrow_id)
    await apply_deposit(db, escrow, reference=reference, paid_amount=paid_amount, channel=channel)
    await db.commit()
    await db.refresh(escrow)
    return escrow


async def _release_outstanding(
    db: AsyncSession,
    escrow: EscrowPayment,
    milestones: list[EscrowMilestone],
    actor_id: uuid.UUID | None,
    reference: str,
) -> Decimal:
    amount, payout = _outstanding(escrow, milestones)
    if payout > 0:
        await credit_artisan(db, escrow.request_id, payout)
    escrow.status = EscrowStatus.RELEASED
    escrow.released_at = datetime.now(UTC)
    log_entry(
        db, escrow, EscrowAction.RELEASED, amount, reference,
        actor_id=actor_id,
        commission=amount - payout,
        metadata={"payout": str(payout)},
    )
    return payout


async def release(
    db: AsyncSession, escrow_id: uuid.UUID, approver_id: uuid.UUID | None
) -> EscrowPayment:
    """Release held funds to the artisan, less commission.

    Idempotent: an escrow that is already released is returned unchanged and no
    funds move.
    """
    escrow = await lock_escrow(db, escrow_id)
    if escrow.status == EscrowStatus.RELEASED:
        logger.info("Escrow %s already released, returning existing record", escrow_id)
        await db.commit()  # releases the row lock, nothing changed
        return escrow
    if escrow.status == EscrowStatus.DISPUTED:
        raise DisputeActive("Escrow is disputed; resolve the dispute first")
    if escrow.status != EscrowStatus.ESCROWED:
        raise InvalidState(
            f"Escrow must be escrowed to release, currently {escrow.status.value}",
            status=escrow.status.value,
        )

    milestones = await _milestones(db, escrow_id)
    if milestones:
        raise InvalidState(
            "Escrow has a milestone plan; funds are released per milestone",
            unsettled=[m.order for m in milestones if not m.is_settled],
        )

    payout = await _release_outstanding(
        db, escrow, milestones, approver_id, f"{escrow_id}:release"
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Escrow %s released, artisan paid %s", escrow_id, payout)
    return escrow


async def apply_refund(
    db: AsyncSession,
    escrow: EscrowPayment,
    reason: str,
    actor_id: uuid.UUID | None = None,
    *,
    reference: str | None = None,
) -> Decimal:
    """escrowed -> refunded for whatever has not been paid out. Escrow must be locked.

    The reversal at the provider happens outside the engine; the ledger records
    the amount owed back to the customer.
    """
    if escrow.status == EscrowStatus.DISPUTED:
        raise DisputeActive("Escrow is disputed; resolve the dispute first")
    if escrow.status != EscrowStatus.ESCROWED:
        raise InvalidState(
            f"Escrow must be escrowed to refund, currently {escrow.status.value}",
            status=escrow.status.value,
        )
    return await _refund_outstanding(db, escrow, reason, actor_id, reference)


async def _refund_outstanding(
    db: AsyncSession,
    escrow: EscrowPayment,
    reason: str,
    actor_id: uuid.UUID | None,
    reference: str | None,
) -> Decimal:
    milestones = await _milestones(db, escrow.escrow_id)
    amount, _ = _outstanding(escrow, milestones)
    escrow.status = EscrowStatus.REFUNDED
    escrow.refunded_at = datetime.now(UTC)
    log_entry(
        db, escrow, EscrowAction.REFUNDED, amount, reference or f"{escrow.escrow_id}:refund",
        actor_id=actor_id,
        metadata={"reason": reason},
    )
    logger.info("Escrow %s refunded %s: %s", escrow.escrow_id, amount, reason)
    return amount


async def refund(
    db: AsyncSession, escrow_id: uuid.UUID, reason: str, actor_id: uuid.UUID | None = None
) -> EscrowPayment:
    """Refund the customer. Already-refunded escrows are returned unchanged."""
    escrow = await lock_escrow(db, escrow_id)
    if escrow.status == EscrowStatus.REFUNDED:
        await db.commit()
        return escrow
    if escrow.status == EscrowStatus.RELEASED:
        raise InvalidState("Escrow already released; refund is no longer possible")
    await apply_refund(db, escrow, reason, actor_id)
    await db.commit()
    await db.refresh(escrow)
    return escrow


async def dispute(
    db: AsyncSession, escrow_id: uuid.UUID, reason: str, actor_id: uuid.UUID | None = None
) -> EscrowPayment:
    """Freeze the escrow. Release and refund are blocked until the dispute is resolved."""
    escrow = await lock_escrow(db, escrow_id)
    if escrow.status == EscrowStatus.DISPUTED:
        raise DisputeActive("Escrow is already disputed")
    if escrow.status != EscrowStatus.ESCROWED:
        raise InvalidState(
            f"Escrow must be escrowed to dispute, currently {escrow.status.value}",
            status=escrow.status.value,
        )

    escrow.status = EscrowStatus.DISPUTED
    escrow.dispute_reason = reason
    amount, _ = _outstanding(escrow, await _milestones(db, escrow_id))
    log_entry(
        db, escrow, EscrowAction.DISPUTED, amount, f"{escrow_id}:dispute",
        actor_id=actor_id,
        metadata={"reason": reason},
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Escrow %s disputed: %s", escrow_id, reason)
    return escrow


async def resolve_dispute(
    db: AsyncSession, escrow_id: uuid.UUID, resolution: str, resolver_id: uuid.UUID | None
) -> EscrowPayment:
    """Settle a disputed escrow by paying the artisan or refunding the customer."""
    if resolution not in ("release", "refund"):
        raise ValidationError("Resolution must be 'release' or 'refund'")

    escrow = await lock_escrow(db, escrow_id)
    if escrow.status != EscrowStatus.DISPUTED:
        raise InvalidState(
            f"Escrow is not disputed, currently {escrow.status.value}",
            status=escrow.status.value,
        )

    log_entry(
        db, escrow, EscrowAction.RESOLVED, ZERO, f"{escrow_id}:resolve",
        actor_id=resolver_id,
        metadata={"resolution": resolution},
    )
    if resolution == "release":
        milestones = await _milestones(db, escrow_id)
        await _release_outstanding(db, escrow, milestones, resolver_id, f"{escrow_id}:release")
    else:
        await _refund_outstanding(
            db, escrow, "dispute resolved in customer's favour", resolver_id, None
        )

    await db.commit()
    await db.refresh(escrow)
    logger.info("Escrow %s dispute resolved: %s", escrow_id, resolution)
    return escrow


async def settle_if_complete(db: AsyncSession, escrow: EscrowPayment) -> bool:
    """Close a milestone escrow once every milestone is settled. Does not commit.

    The escrow ends ``released`` if any milestone paid out, otherwise ``refunded``.
    """
    milestones = await _milestones(db, escrow.escrow_id)
    if not milestones or not all(m.is_settled for m in milestones):
        return False
    now = datetime.now(UTC)
    if any(m.status == MilestoneStatus.RELEASED for m in milestones):
        escrow.status = EscrowStatus.RELEASED
        escrow.released_at = now
    else:
        escrow.status = EscrowStatus.REFUNDED
        escrow.refunded_at = now
    logger.info("Escrow %s settled by milestones: %s", escrow.escrow_id, escrow.status.value)
    return True
