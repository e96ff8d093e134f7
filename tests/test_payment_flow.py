"""Tests for the request payment flow: quote acceptance through completion or cancellation."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import (
    GatewayUnavailable, InvalidState, NotPermitted, PaymentDeclined, PaymentIncomplete,
    PlanValidationError, VerificationTimeout,
)
from app.models.escrow import EscrowAction, EscrowPayment, EscrowStatus
from app.models.payment import AttemptStatus, ServiceFeePayment, ServiceFeeStatus
from app.models.service_request import Artisan, ServiceRequest, ServiceRequestStatus
from app.services import escrow as ledger
from app.services import payment_flow
from app.services.confirmation import mark_timed_out, verify_now
from app.services.gateway import PaymentGateway
from app.services.milestone_planner import MilestoneTemplate
from app.services.milestones import list_milestones
from app.services.payment_flow import FlowStage
from app.services.providers.base import PaymentMethod, VerificationStatus
from tests.conftest import FakeProvider, accept, fund_request, seed_request, settle

PAYER = "customer@example.com"


async def _stage(db: AsyncSession, request_id: uuid.UUID) -> FlowStage:
    return (await payment_flow.get_flow_state(db, request_id)).stage


@pytest.mark.asyncio
async def test_stages_advance_through_happy_path(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id, customer_id = request.request_id, request.customer_id
    assert await _stage(db_session, request_id) == FlowStage.QUOTE_REVIEW

    await accept(db_session, request, quote)
    assert await _stage(db_session, request_id) == FlowStage.SERVICE_FEE_PENDING

    fee_attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
    )
    assert fee_attempt.reference.startswith("sf_")
    assert fee_attempt.amount == Decimal("2000.00")
    await settle(db_session, gateway, fee_attempt)
    assert await _stage(db_session, request_id) == FlowStage.SERVICE_FEE_PAID

    escrow_attempt = await payment_flow.pay_escrow(
        db_session, gateway, None, request_id, PaymentMethod.MOBILE_MONEY, PAYER
    )
    assert escrow_attempt.reference.startswith("esc_")
    assert escrow_attempt.amount == Decimal("15000.00")
    assert await _stage(db_session, request_id) == FlowStage.ESCROW_PENDING

    await settle(db_session, gateway, escrow_attempt)
    assert await _stage(db_session, request_id) == FlowStage.ESCROW_DEPOSITED

    contact = await payment_flow.reveal_contact(db_session, request_id)
    assert contact.phone == "+2348030000000"
    assert await _stage(db_session, request_id) == FlowStage.CONTACT_REVEALED

    await payment_flow.start_job(db_session, request_id, customer_id)
    assert await _stage(db_session, request_id) == FlowStage.JOB_ACTIVE

    completed = await payment_flow.complete_job(db_session, request_id, customer_id)
    assert completed.status == ServiceRequestStatus.COMPLETED
    state = await payment_flow.get_flow_state(db_session, request_id)
    assert state.stage == FlowStage.COMPLETED
    assert state.escrow_status == EscrowStatus.RELEASED
    assert state.cost.total_customer_payment == Decimal("17000.00")


@pytest.mark.asyncio
async def test_accept_quote_only_by_customer(db_session: AsyncSession) -> None:
    request, quote, _ = await seed_request(db_session)
    with pytest.raises(NotPermitted):
        await payment_flow.accept_quote(
            db_session, request.request_id, quote.quote_id, uuid.uuid4()
        )


@pytest.mark.asyncio
async def test_accept_quote_twice_rejected(db_session: AsyncSession) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id, quote_id, customer_id = request.request_id, quote.quote_id, request.customer_id
    await accept(db_session, request, quote)
    with pytest.raises(InvalidState):
        await payment_flow.accept_quote(db_session, request_id, quote_id, customer_id)


@pytest.mark.asyncio
async def test_invalid_plan_rejected_at_acceptance(db_session: AsyncSession) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id = request.request_id
    bad_plan = [
        MilestoneTemplate(title="a", percentage=Decimal("40")),
        MilestoneTemplate(title="b", percentage=Decimal("40")),
    ]
    with pytest.raises(PlanValidationError):
        await accept(db_session, request, quote, bad_plan)
    await db_session.rollback()

    # Nothing persisted
    assert await ledger.get_escrow_for_request(db_session, request_id) is None
    request = await db_session.get(ServiceRequest, request_id)
    assert request.status == ServiceRequestStatus.OPEN


@pytest.mark.asyncio
async def test_escrow_payment_requires_paid_fee(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    with pytest.raises(PaymentIncomplete):
        await payment_flow.pay_escrow(
            db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
        )


@pytest.mark.asyncio
async def test_declined_fee_can_be_retried(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id = request.request_id
    fee, _ = await accept(db_session, request, quote)

    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
    )
    declined = await settle(db_session, gateway, attempt, VerificationStatus.FAILED)
    assert declined.status == AttemptStatus.FAILED
    assert declined.failure_reason == "declined by provider"

    fee = await db_session.get(ServiceFeePayment, fee.fee_payment_id, populate_existing=True)
    assert fee.status == ServiceFeeStatus.FAILED
    state = await payment_flow.get_flow_state(db_session, request_id)
    assert state.stage == FlowStage.SERVICE_FEE_PENDING
    assert state.last_failure == "declined by provider"

    retry = await payment_flow.pay_service_fee(
        db_session, gateway, None, request_id, PaymentMethod.USSD, PAYER
    )
    assert retry.reference != attempt.reference
    await settle(db_session, gateway, retry)
    assert await _stage(db_session, request_id) == FlowStage.SERVICE_FEE_PAID


@pytest.mark.asyncio
async def test_verify_declined_payment_raises(
    db_session: AsyncSession, gateway: PaymentGateway, provider: FakeProvider
) -> None:
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )
    provider.settle(attempt.reference, attempt.amount, VerificationStatus.FAILED)

    with pytest.raises(PaymentDeclined) as exc:
        await payment_flow.verify_payment(db_session, gateway, attempt.reference)
    assert exc.value.retryable


@pytest.mark.asyncio
async def test_underpayment_fails_attempt(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    fee, _ = await accept(db_session, request, quote)
    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )

    result = await settle(db_session, gateway, attempt, amount=Decimal("1500.00"))
    assert result.status == AttemptStatus.FAILED
    assert result.failure_reason == "amount mismatch"
    fee = await db_session.get(ServiceFeePayment, fee.fee_payment_id, populate_existing=True)
    assert fee.status == ServiceFeeStatus.PENDING


@pytest.mark.asyncio
async def test_fallback_provider_used_when_primary_down(
    db_session: AsyncSession,
    gateway: PaymentGateway,
    provider: FakeProvider,
    fallback_provider: FakeProvider,
) -> None:
    provider.down = True
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)

    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )
    assert attempt.provider == "flutterwave"
    assert fallback_provider.initiated == [attempt.reference]

    # Verification goes to the provider that took the payment
    confirmed = await settle(db_session, gateway, attempt)
    assert confirmed.status == AttemptStatus.SUCCESS
    assert provider.verify_calls == 0


@pytest.mark.asyncio
async def test_both_providers_down(
    db_session: AsyncSession,
    gateway: PaymentGateway,
    provider: FakeProvider,
    fallback_provider: FakeProvider,
) -> None:
    provider.down = fallback_provider.down = True
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)

    with pytest.raises(GatewayUnavailable):
        await payment_flow.pay_service_fee(
            db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
        )


@pytest.mark.asyncio
async def test_timed_out_payment_can_still_confirm(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id = request.request_id
    await accept(db_session, request, quote)
    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request_id, PaymentMethod.BANK_TRANSFER, PAYER
    )

    timed_out = await mark_timed_out(db_session, attempt.reference)
    assert timed_out.status == AttemptStatus.TIMED_OUT
    with pytest.raises(VerificationTimeout) as exc:
        await payment_flow.verify_payment(db_session, gateway, attempt.reference)
    assert exc.value.retryable
    state = await payment_flow.get_flow_state(db_session, request_id)
    assert state.verification_timed_out
    assert state.pending_reference == attempt.reference
    assert state.service_fee_status == ServiceFeeStatus.PENDING

    confirmed = await settle(db_session, gateway, attempt)
    assert confirmed.status == AttemptStatus.SUCCESS
    assert await _stage(db_session, request_id) == FlowStage.SERVICE_FEE_PAID


@pytest.mark.asyncio
async def test_duplicate_confirmation_is_noop(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, _ = await fund_request(db_session, gateway)
    attempt_ref = escrow.transaction_ref

    again = await payment_flow.verify_payment(db_session, gateway, attempt_ref)
    assert again.status == AttemptStatus.SUCCESS
    deposits = [
        e for e in await ledger.get_ledger(db_session, escrow.escrow_id)
        if e.action == EscrowAction.DEPOSITED
    ]
    assert len(deposits) == 1


@pytest.mark.asyncio
async def test_start_job_requires_both_payments(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id, customer_id = request.request_id, request.customer_id
    await accept(db_session, request, quote)

    with pytest.raises(PaymentIncomplete):
        await payment_flow.start_job(db_session, request_id, customer_id)


@pytest.mark.asyncio
async def test_start_job_only_by_parties(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, _, _ = await fund_request(db_session, gateway)
    with pytest.raises(NotPermitted):
        await payment_flow.start_job(db_session, request.request_id, uuid.uuid4())


@pytest.mark.asyncio
async def test_complete_job_only_by_customer(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, _, artisan = await fund_request(db_session, gateway)
    await payment_flow.start_job(db_session, request.request_id, artisan.artisan_id)
    with pytest.raises(NotPermitted):
        await payment_flow.complete_job(db_session, request.request_id, artisan.artisan_id)


@pytest.mark.asyncio
async def test_complete_job_releases_escrow(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, artisan = await fund_request(db_session, gateway)
    request_id, customer_id = request.request_id, request.customer_id
    await payment_flow.start_job(db_session, request_id, customer_id)

    await payment_flow.complete_job(db_session, request_id, customer_id)

    escrow = await db_session.get(EscrowPayment, escrow.escrow_id, populate_existing=True)
    assert escrow.status == EscrowStatus.RELEASED
    artisan = await db_session.get(Artisan, artisan.artisan_id, populate_existing=True)
    assert artisan.balance == Decimal("13500.00")


@pytest.mark.asyncio
async def test_cancel_refunds_escrow_but_not_fee(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, _ = await fund_request(db_session, gateway)

    cancelled = await payment_flow.cancel_request(
        db_session, None, request.request_id, "found someone closer", request.customer_id
    )
    assert cancelled.status == ServiceRequestStatus.CANCELLED

    escrow = await db_session.get(EscrowPayment, escrow.escrow_id, populate_existing=True)
    assert escrow.status == EscrowStatus.REFUNDED
    fee = await db_session.get(ServiceFeePayment, escrow.service_fee_id, populate_existing=True)
    assert fee.status == ServiceFeeStatus.PAID


@pytest.mark.asyncio
async def test_cancel_before_payment(db_session: AsyncSession) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id, customer_id = request.request_id, request.customer_id
    _, escrow = await accept(db_session, request, quote)

    await payment_flow.cancel_request(db_session, None, request_id, "changed plans", customer_id)
    escrow = await db_session.get(EscrowPayment, escrow.escrow_id, populate_existing=True)
    assert escrow.status == EscrowStatus.PENDING


@pytest.mark.asyncio
async def test_deposit_after_cancellation_is_refunded(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id, customer_id = request.request_id, request.customer_id
    await accept(db_session, request, quote)
    fee_attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
    )
    await settle(db_session, gateway, fee_attempt)
    escrow_attempt = await payment_flow.pay_escrow(
        db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
    )

    await payment_flow.cancel_request(db_session, None, request_id, "too slow", customer_id)
    # The customer's bank clears the transfer anyway
    await settle(db_session, gateway, escrow_attempt)

    escrow = await db_session.get(EscrowPayment, escrow_attempt.payment_id, populate_existing=True)
    assert escrow.status == EscrowStatus.REFUNDED
    actions = {e.action for e in await ledger.get_ledger(db_session, escrow.escrow_id)}
    assert {EscrowAction.DEPOSITED, EscrowAction.REFUNDED} <= actions


@pytest.mark.asyncio
async def test_cancel_after_release_rejected(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, _ = await fund_request(db_session, gateway)
    await ledger.release(db_session, escrow.escrow_id, request.customer_id)
    with pytest.raises(InvalidState):
        await payment_flow.cancel_request(
            db_session, None, request.request_id, "too late", request.customer_id
        )


@pytest.mark.asyncio
async def test_select_payment_method_by_payment_id(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    fee, escrow = await accept(db_session, request, quote)

    fee_attempt = await payment_flow.select_payment_method(
        db_session, gateway, None, fee.fee_payment_id, PaymentMethod.CARD, PAYER
    )
    assert fee_attempt.payment_id == fee.fee_payment_id
    await settle(db_session, gateway, fee_attempt)

    escrow_attempt = await payment_flow.select_payment_method(
        db_session, gateway, None, escrow.escrow_id, PaymentMethod.CARD, PAYER
    )
    assert escrow_attempt.payment_id == escrow.escrow_id
    assert escrow_attempt.amount == Decimal("15000.00")


@pytest.mark.asyncio
async def test_plan_from_acceptance_is_materialized(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    plan = [
        MilestoneTemplate(title="Start", percentage=Decimal("40")),
        MilestoneTemplate(title="Finish", percentage=Decimal("60")),
    ]
    _, escrow, _ = await fund_request(db_session, gateway, "50000.00", plan)

    milestones = await list_milestones(db_session, escrow.escrow_id)
    assert [m.amount for m in milestones] == [Decimal("20000.00"), Decimal("30000.00")]


@pytest.mark.asyncio
async def test_second_escrow_payment_refused_while_first_may_clear(
    db_session: AsyncSession, gateway: PaymentGateway, provider: FakeProvider
) -> None:
    request, quote, _ = await seed_request(db_session)
    request_id = request.request_id
    await accept(db_session, request, quote)
    fee_attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
    )
    await settle(db_session, gateway, fee_attempt)
    first = await payment_flow.pay_escrow(
        db_session, gateway, None, request_id, PaymentMethod.BANK_TRANSFER, PAYER
    )
    first_ref = first.reference
    await mark_timed_out(db_session, first_ref)

    with pytest.raises(InvalidState) as exc:
        await payment_flow.pay_escrow(
            db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
        )
    assert exc.value.details["reference"] == first_ref
    assert exc.value.details["status"] == "timed_out"
    assert [r for r in provider.initiated if r.startswith("esc_")] == [first_ref]

    # The transfer lands; the customer is told the escrow is already held
    provider.settle(first_ref, Decimal("15000.00"))
    with pytest.raises(InvalidState, match="already escrowed"):
        await payment_flow.pay_escrow(
            db_session, gateway, None, request_id, PaymentMethod.CARD, PAYER
        )
    deposits = [
        e for e in await ledger.get_ledger(db_session, first.payment_id)
        if e.action == EscrowAction.DEPOSITED
    ]
    assert len(deposits) == 1
    assert await _stage(db_session, request_id) == FlowStage.ESCROW_DEPOSITED


@pytest.mark.asyncio
async def test_second_fee_payment_refused_while_first_pending(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    first = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )

    with pytest.raises(InvalidState) as exc:
        await payment_flow.pay_service_fee(
            db_session, gateway, None, request.request_id, PaymentMethod.USSD, PAYER
        )
    assert exc.value.details["reference"] == first.reference
    assert exc.value.details["redirect_url"] == first.redirect_url


@pytest.mark.asyncio
async def test_declined_open_attempt_lets_a_new_one_start(
    db_session: AsyncSession, gateway: PaymentGateway, provider: FakeProvider
) -> None:
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    first = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )
    first_ref = first.reference
    # Declined at the provider; nothing has verified it yet
    provider.settle(first_ref, Decimal("2000.00"), VerificationStatus.FAILED)

    retry = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.USSD, PAYER
    )
    assert retry.reference != first_ref
    declined = await payment_flow.get_payment_attempt(db_session, first_ref)
    assert declined.status == AttemptStatus.FAILED


@pytest.mark.asyncio
async def test_open_attempt_that_cleared_is_confirmed_instead(
    db_session: AsyncSession, gateway: PaymentGateway, provider: FakeProvider
) -> None:
    request, quote, _ = await seed_request(db_session)
    fee, _ = await accept(db_session, request, quote)
    first = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )
    provider.settle(first.reference, Decimal("2000.00"))

    with pytest.raises(InvalidState, match="already paid"):
        await payment_flow.pay_service_fee(
            db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
        )
    fee = await db_session.get(ServiceFeePayment, fee.fee_payment_id, populate_existing=True)
    assert fee.status == ServiceFeeStatus.PAID
    assert len(provider.initiated) == 1


@pytest.mark.asyncio
async def test_currency_mismatch_fails_attempt(
    db_session: AsyncSession, gateway: PaymentGateway, provider: FakeProvider
) -> None:
    request, quote, _ = await seed_request(db_session)
    fee, _ = await accept(db_session, request, quote)
    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )
    provider.settle(attempt.reference, Decimal("2000.00"), currency="USD")

    result = await verify_now(db_session, gateway, attempt.reference)
    assert result.status == AttemptStatus.FAILED
    assert result.failure_reason == "currency mismatch"
    fee = await db_session.get(ServiceFeePayment, fee.fee_payment_id, populate_existing=True)
    assert fee.status != ServiceFeeStatus.PAID


@pytest.mark.asyncio
async def test_verify_with_unconfigured_provider(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, PAYER
    )
    attempt.provider = "stripe"
    await db_session.commit()

    with pytest.raises(GatewayUnavailable) as exc:
        await payment_flow.verify_payment(db_session, gateway, attempt.reference)
    assert exc.value.details["provider"] == "stripe"


@pytest.mark.asyncio
async def test_refunded_escrow_is_not_projected_as_deposited(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, _ = await fund_request(db_session, gateway)
    request_id = request.request_id
    await payment_flow.reveal_contact(db_session, request_id)
    assert await _stage(db_session, request_id) == FlowStage.CONTACT_REVEALED

    await ledger.refund(db_session, escrow.escrow_id, "artisan unavailable")
    assert await _stage(db_session, request_id) == FlowStage.REFUNDED


@pytest.mark.asyncio
async def test_disputed_escrow_stage(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, _ = await fund_request(db_session, gateway)
    request_id = request.request_id
    await payment_flow.start_job(db_session, request_id, request.customer_id)

    await ledger.dispute(db_session, escrow.escrow_id, "work not started")
    assert await _stage(db_session, request_id) == FlowStage.DISPUTED


@pytest.mark.asyncio
async def test_complete_job_rejected_after_refund(
    db_session: AsyncSession, gateway: PaymentGateway
) -> None:
    request, escrow, _ = await fund_request(db_session, gateway)
    request_id, customer_id = request.request_id, request.customer_id
    await payment_flow.start_job(db_session, request_id, customer_id)
    await ledger.refund(db_session, escrow.escrow_id, "artisan walked off", customer_id)

    with pytest.raises(InvalidState):
        await payment_flow.complete_job(db_session, request_id, customer_id)
    request = await db_session.get(ServiceRequest, request_id, populate_existing=True)
    assert request.status == ServiceRequestStatus.JOB_ACTIVE
