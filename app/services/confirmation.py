"""Payment confirmation, keyed by attempt reference.

Webhook deliveries, background polls and manual "verify now" requests all end in
``confirm_payment``. It locks the attempt row and does nothing once the attempt
has reached success or failure, so duplicate webhooks and a poll racing a webhook
cannot credit a payment twice. The provider's own verify endpoint is always the
source of truth; webhook payloads are never trusted for status or amount.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import GatewayUnavailable, NotFoundError
from app.models.escrow import EscrowStatus
from app.models.payment import (
    AttemptStatus, PaymentAttempt, PaymentPurpose, ServiceFeePayment, ServiceFeeStatus,
)
from app.models.service_request import ServiceRequest, ServiceRequestStatus
from app.services.escrow import apply_deposit, apply_refund, lock_escrow
from app.services.gateway import PaymentGateway
from app.services.poller import PollOutcome, PollResult
from app.services.providers.base import ProviderError, VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)

SETTLED = (AttemptStatus.SUCCESS, AttemptStatus.FAILED)


async def get_attempt(db: AsyncSession, reference: str) -> PaymentAttempt:
    result = await db.execute(select(PaymentAttempt).where(PaymentAttempt.reference == reference))
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise NotFoundError("Payment attempt not found", reference=reference)
    return attempt


async def _lock_attempt(db: AsyncSession, reference: str) -> PaymentAttempt:
    result = await db.execute(
        select(PaymentAttempt)
        .where(PaymentAttempt.reference == reference)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise NotFoundError("Payment attempt not found", reference=reference)
    return attempt


def _fail(attempt: PaymentAttempt, reason: str) -> None:
    attempt.status = AttemptStatus.FAILED
    attempt.failure_reason = reason
    attempt.confirmed_at = datetime.now(UTC)


async def _confirm_service_fee(db: AsyncSession, attempt: PaymentAttempt) -> None:
    result = await db.execute(
        select(ServiceFeePayment)
        .where(ServiceFeePayment.fee_payment_id == attempt.payment_id)
        .with_for_update()
    )
    fee = result.scalar_one()
    if fee.status == ServiceFeeStatus.PAID:
        logger.error(
            "Service fee %s already paid by %s; %s is a duplicate payment to reconcile",
            fee.fee_payment_id, fee.transaction_ref, attempt.reference,
        )
        return
    fee.status = ServiceFeeStatus.PAID
    fee.transaction_ref = attempt.reference
    fee.failure_reason = None
    fee.paid_at = datetime.now(UTC)
    logger.info("Service fee %s paid (ref %s)", fee.fee_payment_id, attempt.reference)


async def _confirm_escrow(db: AsyncSession, attempt: PaymentAttempt) -> None:
    escrow = await lock_escrow(db, attempt.payment_id)
    if escrow.status != EscrowStatus.PENDING:
        logger.error(
            "Escrow %s already %s; deposit %s is a duplicate payment to reconcile",
            escrow.escrow_id, escrow.status.value, attempt.reference,
        )
        return
    await apply_deposit(
        db, escrow,
        reference=attempt.reference,
        paid_amount=attempt.paid_amount,
        channel=attempt.channel,
    )
    request = await db.get(ServiceRequest, attempt.request_id)
    if request is not None and request.status == ServiceRequestStatus.CANCELLED:
        # Funds arrived after the customer withdrew; hold and owe them back at once
        await apply_refund(db, escrow, "request cancelled before deposit cleared")


async def confirm_payment(
    db: AsyncSession, reference: str, verification: VerificationResult
) -> PaymentAttempt:
    """Apply a provider verification to the attempt and its target payment."""
    attempt = await _lock_attempt(db, reference)
    if attempt.status in SETTLED:
        await db.commit()
        return attempt

    if verification.status == VerificationStatus.PENDING:
        await db.commit()
        return attempt

    if verification.status == VerificationStatus.FAILED:
        _fail(attempt, "declined by provider")
        if attempt.purpose == PaymentPurpose.SERVICE_FEE:
            fee = await db.get(ServiceFeePayment, attempt.payment_id)
            if fee is not None and fee.status == ServiceFeeStatus.PENDING:
                fee.status = ServiceFeeStatus.FAILED
                fee.failure_reason = attempt.failure_reason
        logger.warning("Payment %s declined", reference)
        await db.commit()
        return attempt

    if (verification.currency or "").upper() != settings.currency:
        _fail(attempt, "currency mismatch")
        logger.error(
            "Payment %s verified in %s but %s was expected",
            reference, verification.currency, settings.currency,
        )
        await db.commit()
        return attempt

    if verification.paid_amount != attempt.amount:
        _fail(attempt, "amount mismatch")
        logger.error(
            "Payment %s verified for %s but %s was expected",
            reference, verification.paid_amount, attempt.amount,
        )
        await db.commit()
        return attempt

    attempt.status = AttemptStatus.SUCCESS
    attempt.paid_amount = verification.paid_amount
    attempt.channel = verification.channel
    attempt.confirmed_at = datetime.now(UTC)
    attempt.failure_reason = None

    if attempt.purpose == PaymentPurpose.SERVICE_FEE:
        await _confirm_service_fee(db, attempt)
    else:
        await _confirm_escrow(db, attempt)

    await db.commit()
    await db.refresh(attempt)
    return attempt


async def verify_now(db: AsyncSession, gateway: PaymentGateway, reference: str) -> PaymentAttempt:
    """Ask the initiating provider for the outcome and apply it."""
    attempt = await get_attempt(db, reference)
    if attempt.status in SETTLED:
        return attempt
    try:
        verification = await gateway.verify(reference, attempt.provider)
    except (ProviderError, TimeoutError) as e:
        logger.warning("Verification of %s failed: %s", reference, e)
        raise GatewayUnavailable(
            "Could not reach the payment provider; retry verification", reference=reference,
        ) from e
    except ValueError as e:
        # The provider that took the payment is no longer configured
        logger.error("Cannot verify %s: %s", reference, e)
        raise GatewayUnavailable(
            "The payment provider for this payment is not configured",
            reference=reference,
            provider=attempt.provider,
        ) from e
    return await confirm_payment(db, reference, verification)


async def mark_timed_out(db: AsyncSession, reference: str) -> PaymentAttempt:
    """Record that polling gave up. Ledger state is untouched."""
    attempt = await _lock_attempt(db, reference)
    if attempt.status == AttemptStatus.PENDING:
        attempt.status = AttemptStatus.TIMED_OUT
        logger.warning("Payment %s timed out waiting for verification", reference)
    await db.commit()
    return attempt


async def record_poll_result(result: PollResult) -> None:
    """Persist a background poll outcome in its own session."""
    from app.database import async_session_factory

    async with async_session_factory() as db:
        if result.outcome in (PollOutcome.SUCCESS, PollOutcome.FAILED):
            await confirm_payment(db, result.reference, result.verification)
        elif result.outcome == PollOutcome.TIMEOUT:
            await mark_timed_out(db, result.reference)
