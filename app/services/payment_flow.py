"""Payment flow for a service request, from quote acceptance to completion.

    quote_review -> service_fee_pending -> service_fee_paid -> escrow_pending
        -> escrow_deposited -> contact_revealed -> job_active -> completed

The stage is never stored. ``derive_stage`` projects it from the request, the
service fee, the escrow and the latest escrow attempt, so it can only move when
one of those rows moves. Payments only ever advance those rows (a failed attempt
changes the attempt, not the payment), which keeps the stage monotonic.

Two stages sit off the main line. ``disputed`` holds while the escrow is frozen,
and ``refunded`` is terminal once the held job amount has gone back to the
customer. Neither reveals contact details.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    DisputeActive, InvalidState, NotFoundError, NotPermitted, PaymentDeclined,
    PaymentIncomplete, VerificationTimeout,
)
from app.models.escrow import EscrowPayment, EscrowStatus
from app.models.payment import (
    AttemptStatus, PaymentAttempt, PaymentPurpose, ServiceFeePayment, ServiceFeeStatus,
)
from app.models.service_request import (
    VALID_TRANSITIONS, Quote, ServiceRequest, ServiceRequestStatus,
)
from app.services import contact_gate, escrow as ledger
from app.services.confirmation import get_attempt, verify_now
from app.services.fees import CostBreakdown, calculate_total_cost
from app.services.gateway import PaymentGateway
from app.services.milestone_planner import MilestoneTemplate, create_plan
from app.services.poller import PollerRegistry
from app.services.providers.base import PaymentMethod

logger = logging.getLogger(__name__)


class FlowStage(enum.Enum):
    QUOTE_REVIEW = "quote_review"
    SERVICE_FEE_PENDING = "service_fee_pending"
    SERVICE_FEE_PAID = "service_fee_paid"
    ESCROW_PENDING = "escrow_pending"
    ESCROW_DEPOSITED = "escrow_deposited"
    CONTACT_REVEALED = "contact_revealed"
    JOB_ACTIVE = "job_active"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


@dataclass
class FlowState:
    request_id: uuid.UUID
    stage: FlowStage
    request_status: ServiceRequestStatus
    service_fee_status: ServiceFeeStatus | None = None
    escrow_status: EscrowStatus | None = None
    cost: CostBreakdown | None = None
    pending_reference: str | None = None
    # Reason the latest attempt did not go through, for the caller to act on
    last_failure: str | None = None
    verification_timed_out: bool = False


def derive_stage(
    request: ServiceRequest,
    fee: ServiceFeePayment | None,
    escrow: EscrowPayment | None,
    escrow_attempt: PaymentAttempt | None,
) -> FlowStage:
    if request.status == ServiceRequestStatus.COMPLETED or (
        escrow is not None and escrow.status == EscrowStatus.RELEASED
    ):
        return FlowStage.COMPLETED
    if escrow is not None and escrow.status == EscrowStatus.REFUNDED:
        return FlowStage.REFUNDED
    if escrow is not None and escrow.status == EscrowStatus.DISPUTED:
        return FlowStage.DISPUTED
    if request.status == ServiceRequestStatus.JOB_ACTIVE:
        return FlowStage.JOB_ACTIVE
    if fee is None or escrow is None:
        return FlowStage.QUOTE_REVIEW
    if fee.status != ServiceFeeStatus.PAID:
        return FlowStage.SERVICE_FEE_PENDING
    if escrow.status == EscrowStatus.PENDING:
        if escrow_attempt is not None and escrow_attempt.status in (
            AttemptStatus.PENDING, AttemptStatus.TIMED_OUT,
        ):
            return FlowStage.ESCROW_PENDING
        return FlowStage.SERVICE_FEE_PAID
    if request.contact_revealed_at is not None:
        return FlowStage.CONTACT_REVEALED
    return FlowStage.ESCROW_DEPOSITED


def _assert_transition(current: ServiceRequestStatus, target: ServiceRequestStatus) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidState(
            f"Cannot transition request from {current.value} to {target.value}",
            status=current.value,
        )


async def _get_request(db: AsyncSession, request_id: uuid.UUID, *, lock: bool = False) -> ServiceRequest:
    query = select(ServiceRequest).where(ServiceRequest.request_id == request_id)
    if lock:
        query = query.with_for_update().execution_options(populate_existing=True)
    request = await db.scalar(query)
    if request is None:
        raise NotFoundError("Service request not found", request_id=str(request_id))
    return request


async def _get_fee(db: AsyncSession, request_id: uuid.UUID) -> ServiceFeePayment:
    fee = await db.scalar(
        select(ServiceFeePayment).where(ServiceFeePayment.request_id == request_id)
    )
    if fee is None:
        raise InvalidState("No quote has been accepted for this request")
    return fee


async def _get_escrow(db: AsyncSession, request_id: uuid.UUID) -> EscrowPayment:
    escrow = await ledger.get_escrow_for_request(db, request_id)
    if escrow is None:
        raise InvalidState("No quote has been accepted for this request")
    return escrow


async def _latest_attempt(
    db: AsyncSession, request_id: uuid.UUID, purpose: PaymentPurpose | None = None
) -> PaymentAttempt | None:
    query = select(PaymentAttempt).where(PaymentAttempt.request_id == request_id)
    if purpose is not None:
        query = query.where(PaymentAttempt.purpose == purpose)
    return await db.scalar(
        query.order_by(PaymentAttempt.created_at.desc(), PaymentAttempt.attempt_id).limit(1)
    )


async def accept_quote(
    db: AsyncSession,
    request_id: uuid.UUID,
    quote_id: uuid.UUID,
    customer_id: uuid.UUID,
    milestones: list[MilestoneTemplate] | None = None,
) -> tuple[ServiceFeePayment, EscrowPayment]:
    """Accept a quote: fix the job total and open the service fee and escrow.

    A milestone plan, if given, is validated now and materialized when the
    deposit clears.
    """
    request = await _get_request(db, request_id, lock=True)
    if request.customer_id != customer_id:
        raise NotPermitted("Only the requesting customer can accept a quote")
    _assert_transition(request.status, ServiceRequestStatus.QUOTE_ACCEPTED)

    quote = await db.get(Quote, quote_id)
    if quote is None or quote.request_id != request_id:
        raise NotFoundError("Quote not found for this request", quote_id=str(quote_id))

    cost = calculate_total_cost(quote.amount)
    if milestones:
        create_plan(cost.job_amount, milestones)

    now = datetime.now(UTC)
    quote.accepted_at = now
    request.artisan_id = quote.artisan_id
    request.status = ServiceRequestStatus.QUOTE_ACCEPTED

    fee = ServiceFeePayment(
        fee_payment_id=uuid.uuid4(),
        request_id=request_id,
        amount=cost.service_fee,
        status=ServiceFeeStatus.PENDING,
    )
    db.add(fee)
    await db.flush()
    escrow = await ledger.create_escrow(
        db, request, fee, cost.job_amount,
        [m.to_dict() for m in milestones] if milestones else None,
    )

    await db.commit()
    await db.refresh(fee)
    await db.refresh(escrow)
    logger.info(
        "Request %s accepted quote %s for %s (fee %s)",
        request_id, quote_id, cost.job_amount, cost.service_fee,
    )
    return fee, escrow


OPEN = (AttemptStatus.PENDING, AttemptStatus.TIMED_OUT)


async def _open_attempt(db: AsyncSession, payment_id: uuid.UUID) -> PaymentAttempt | None:
    return await db.scalar(
        select(PaymentAttempt)
        .where(PaymentAttempt.payment_id == payment_id, PaymentAttempt.status.in_(OPEN))
        .order_by(PaymentAttempt.created_at.desc())
        .limit(1)
    )


def _in_progress(attempt: PaymentAttempt) -> InvalidState:
    return InvalidState(
        "A payment is already in progress; finish it or retry its verification",
        status=attempt.status.value,
        reference=attempt.reference,
        redirect_url=attempt.redirect_url,
    )


async def _settle_open_attempts(
    db: AsyncSession, gateway: PaymentGateway, payment_id: uuid.UUID
) -> None:
    """Re-check every attempt that may still clear before another one is started.

    A pending or timed-out attempt can still capture funds, so a second checkout
    for the same fee or escrow is refused until the provider reports the first
    one settled. Raises ``InvalidState`` naming the open reference.
    """
    result = await db.execute(
        select(PaymentAttempt.reference).where(
            PaymentAttempt.payment_id == payment_id, PaymentAttempt.status.in_(OPEN)
        )
    )
    for reference in result.scalars().all():
        attempt = await verify_now(db, gateway, reference)
        if attempt.status in OPEN:
            raise _in_progress(attempt)


async def _initiate(
    db: AsyncSession,
    gateway: PaymentGateway,
    pollers: PollerRegistry | None,
    *,
    request_id: uuid.UUID,
    purpose: PaymentPurpose,
    payment_id: uuid.UUID,
    amount: Decimal,
    method: PaymentMethod,
    payer: str,
) -> PaymentAttempt:
    prefix = "sf" if purpose == PaymentPurpose.SERVICE_FEE else "esc"
    reference = f"{prefix}_{uuid.uuid4().hex}"
    result = await gateway.initiate(
        amount, method, payer, reference,
        metadata={"request_id": str(request_id), "purpose": purpose.value},
    )

    attempt = PaymentAttempt(
        attempt_id=uuid.uuid4(),
        reference=reference,
        purpose=purpose,
        payment_id=payment_id,
        request_id=request_id,
        provider=result.provider,
        method=method.value,
        amount=amount,
        payer=payer,
        status=AttemptStatus.PENDING,
        redirect_url=result.redirect_url,
        instructions=result.instructions,
    )
    db.add(attempt)
    await db.commit()
    await db.refresh(attempt)
    logger.info(
        "Initiated %s payment %s via %s for %s", purpose.value, reference, result.provider, amount
    )

    if pollers is not None:
        pollers.watch(reference, result.provider, request_id)
    return attempt


async def pay_service_fee(
    db: AsyncSession,
    gateway: PaymentGateway,
    pollers: PollerRegistry | None,
    request_id: uuid.UUID,
    method: PaymentMethod,
    payer: str,
) -> PaymentAttempt:
    fee = await _get_fee(db, request_id)
    await _settle_open_attempts(db, gateway, fee.fee_payment_id)

    # Held until the new attempt is recorded, so concurrent calls start one checkout
    request = await _get_request(db, request_id, lock=True)
    if request.status != ServiceRequestStatus.QUOTE_ACCEPTED:
        raise InvalidState(
            f"Request must have an accepted quote, currently {request.status.value}",
            status=request.status.value,
        )
    await db.refresh(fee)
    if fee.status == ServiceFeeStatus.PAID:
        raise InvalidState("Service fee is already paid")
    if (open_attempt := await _open_attempt(db, fee.fee_payment_id)) is not None:
        raise _in_progress(open_attempt)
    if fee.status == ServiceFeeStatus.FAILED:
        # A new attempt reopens the fee; the failed attempt keeps its record
        fee.status = ServiceFeeStatus.PENDING
        fee.failure_reason = None

    return await _initiate(
        db, gateway, pollers,
        request_id=request_id,
        purpose=PaymentPurpose.SERVICE_FEE,
        payment_id=fee.fee_payment_id,
        amount=fee.amount,
        method=method,
        payer=payer,
    )


async def pay_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    pollers: PollerRegistry | None,
    request_id: uuid.UUID,
    method: PaymentMethod,
    payer: str,
) -> PaymentAttempt:
    escrow = await _get_escrow(db, request_id)
    await _settle_open_attempts(db, gateway, escrow.escrow_id)

    request = await _get_request(db, request_id, lock=True)
    if request.status != ServiceRequestStatus.QUOTE_ACCEPTED:
        raise InvalidState(
            f"Request must have an accepted quote, currently {request.status.value}",
            status=request.status.value,
        )
    fee = await _get_fee(db, request_id)
    await db.refresh(fee)
    if fee.status != ServiceFeeStatus.PAID:
        raise PaymentIncomplete("Pay the service fee before the escrow deposit")
    await db.refresh(escrow)
    if escrow.status != EscrowStatus.PENDING:
        raise InvalidState(
            f"Escrow is already {escrow.status.value}", status=escrow.status.value
        )
    if (open_attempt := await _open_attempt(db, escrow.escrow_id)) is not None:
        raise _in_progress(open_attempt)

    return await _initiate(
        db, gateway, pollers,
        request_id=request_id,
        purpose=PaymentPurpose.ESCROW,
        payment_id=escrow.escrow_id,
        amount=escrow.total_amount,
        method=method,
        payer=payer,
    )


async def select_payment_method(
    db: AsyncSession,
    gateway: PaymentGateway,
    pollers: PollerRegistry | None,
    payment_id: uuid.UUID,
    method: PaymentMethod,
    payer: str,
) -> PaymentAttempt:
    """Initiate whichever payment ``payment_id`` names: a service fee or an escrow."""
    fee = await db.get(ServiceFeePayment, payment_id)
    if fee is not None:
        return await pay_service_fee(db, gateway, pollers, fee.request_id, method, payer)
    escrow = await db.get(EscrowPayment, payment_id)
    if escrow is not None:
        return await pay_escrow(db, gateway, pollers, escrow.request_id, method, payer)
    raise NotFoundError("Payment not found", payment_id=str(payment_id))


async def verify_payment(
    db: AsyncSession, gateway: PaymentGateway, reference: str
) -> PaymentAttempt:
    """Check a payment with its provider right now, e.g. after a verification timeout."""
    attempt = await verify_now(db, gateway, reference)
    if attempt.status == AttemptStatus.FAILED:
        raise PaymentDeclined(
            f"Payment was not completed: {attempt.failure_reason}",
            reference=reference,
            reason=attempt.failure_reason,
        )
    if attempt.status == AttemptStatus.TIMED_OUT:
        raise VerificationTimeout(
            "The provider has not confirmed this payment yet; retry verification later",
            reference=reference,
        )
    return attempt


async def get_payment_attempt(db: AsyncSession, reference: str) -> PaymentAttempt:
    return await get_attempt(db, reference)


async def get_flow_state(db: AsyncSession, request_id: uuid.UUID) -> FlowState:
    request = await _get_request(db, request_id)
    fee = await db.scalar(
        select(ServiceFeePayment).where(ServiceFeePayment.request_id == request_id)
    )
    escrow = await ledger.get_escrow_for_request(db, request_id)
    escrow_attempt = await _latest_attempt(db, request_id, PaymentPurpose.ESCROW)
    latest = await _latest_attempt(db, request_id)

    state = FlowState(
        request_id=request_id,
        stage=derive_stage(request, fee, escrow, escrow_attempt),
        request_status=request.status,
        service_fee_status=fee.status if fee else None,
        escrow_status=escrow.status if escrow else None,
        cost=calculate_total_cost(escrow.total_amount) if escrow else None,
    )
    if latest is not None:
        if latest.status in (AttemptStatus.PENDING, AttemptStatus.TIMED_OUT):
            state.pending_reference = latest.reference
        if latest.status == AttemptStatus.FAILED:
            state.last_failure = latest.failure_reason
        state.verification_timed_out = latest.status == AttemptStatus.TIMED_OUT
    return state


async def reveal_contact(db: AsyncSession, request_id: uuid.UUID) -> contact_gate.ArtisanContactInfo:
    """The single caller of the contact gate. Stamps the first reveal for audit."""
    info = await contact_gate.reveal_contact(db, request_id)
    request = await _get_request(db, request_id)
    if request.contact_revealed_at is None:
        request.contact_revealed_at = info.revealed_at
        await db.commit()
        logger.info("Request %s: artisan contact revealed", request_id)
    return info


async def start_job(db: AsyncSession, request_id: uuid.UUID, actor_id: uuid.UUID) -> ServiceRequest:
    request = await _get_request(db, request_id, lock=True)
    if actor_id not in (request.customer_id, request.artisan_id):
        raise NotPermitted("Only the customer or the artisan can start the job")
    _assert_transition(request.status, ServiceRequestStatus.JOB_ACTIVE)
    await contact_gate.assert_payments_complete(db, request_id)

    request.status = ServiceRequestStatus.JOB_ACTIVE
    await db.commit()
    await db.refresh(request)
    logger.info("Request %s: job started", request_id)
    return request


async def complete_job(
    db: AsyncSession, request_id: uuid.UUID, approver_id: uuid.UUID
) -> ServiceRequest:
    """Customer sign-off on the whole job.

    Without a milestone plan this releases the escrow. With one, every milestone
    must already be settled.
    """
    request = await _get_request(db, request_id)
    if approver_id != request.customer_id:
        raise NotPermitted("Only the customer can complete the job")
    _assert_transition(request.status, ServiceRequestStatus.COMPLETED)

    escrow = await _get_escrow(db, request_id)
    if escrow.status == EscrowStatus.REFUNDED:
        raise InvalidState(
            "The job amount was refunded; the job cannot be completed",
            status=escrow.status.value,
        )
    if escrow.status != EscrowStatus.RELEASED:
        # Idempotent: a retry after a failed status update releases nothing twice
        escrow = await ledger.release(db, escrow.escrow_id, approver_id)

    request = await _get_request(db, request_id, lock=True)
    _assert_transition(request.status, ServiceRequestStatus.COMPLETED)
    request.status = ServiceRequestStatus.COMPLETED
    await db.commit()
    await db.refresh(request)
    logger.info("Request %s completed", request_id)
    return request


async def cancel_request(
    db: AsyncSession,
    pollers: PollerRegistry | None,
    request_id: uuid.UUID,
    reason: str,
    actor_id: uuid.UUID,
) -> ServiceRequest:
    """Withdraw the request. Held escrow is refunded; the service fee is not.

    Background verification for the request stops without touching the ledger.
    """
    request = await _get_request(db, request_id, lock=True)
    if actor_id not in (request.customer_id, request.artisan_id):
        raise NotPermitted("Only the customer or the artisan can cancel the request")
    _assert_transition(request.status, ServiceRequestStatus.CANCELLED)

    escrow = await ledger.get_escrow_for_request(db, request_id)
    if escrow is not None:
        escrow = await ledger.lock_escrow(db, escrow.escrow_id)
        if escrow.status == EscrowStatus.DISPUTED:
            raise DisputeActive("Escrow is disputed; resolve the dispute first")
        if escrow.status == EscrowStatus.ESCROWED:
            await ledger.apply_refund(db, escrow, reason, actor_id)
        elif escrow.status == EscrowStatus.RELEASED:
            raise InvalidState("Escrow already released")

    request.status = ServiceRequestStatus.CANCELLED
    await db.commit()
    await db.refresh(request)

    if pollers is not None:
        stopped = pollers.cancel_request(request_id)
        if stopped:
            logger.info("Request %s: stopped %d verification poll(s)", request_id, stopped)
    logger.info("Request %s cancelled: %s", request_id, reason)
    return request

