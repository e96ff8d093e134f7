"""Service request payment flow endpoints.

Actor ids are passed explicitly; authentication happens upstream of this service.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.rate_limit import check_rate_limit
from app.schemas.escrow import EscrowResponse
from app.schemas.payment import (
    AcceptQuote, AcceptQuoteResponse, ContactResponse, FlowStateResponse,
    PaymentAttemptResponse, PaymentInitiate, RequestAction, RequestCancel,
    ServiceFeeResponse, ServiceRequestResponse,
)
from app.services import payment_flow
from app.services.gateway import PaymentGateway, get_gateway
from app.services.poller import PollerRegistry, get_pollers

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post(
    "/{request_id}/accept-quote",
    response_model=AcceptQuoteResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def accept_quote(
    request_id: uuid.UUID,
    data: AcceptQuote,
    db: AsyncSession = Depends(get_db),
) -> AcceptQuoteResponse:
    """Accept a quote. Opens the service fee and the escrow for the quoted amount."""
    templates = [m.to_template() for m in data.milestones] if data.milestones else None
    fee, escrow = await payment_flow.accept_quote(
        db, request_id, data.quote_id, data.customer_id, templates
    )
    return AcceptQuoteResponse(
        service_fee=ServiceFeeResponse.model_validate(fee),
        escrow=EscrowResponse.model_validate(escrow),
    )


@router.get("/{request_id}/flow", response_model=FlowStateResponse, dependencies=[Depends(check_rate_limit)])
async def get_flow(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> FlowStateResponse:
    """Current payment stage. Safe to poll."""
    state = await payment_flow.get_flow_state(db, request_id)
    return FlowStateResponse.model_validate(state)


@router.post(
    "/{request_id}/service-fee/pay",
    response_model=PaymentAttemptResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def pay_service_fee(
    request_id: uuid.UUID,
    data: PaymentInitiate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    pollers: PollerRegistry | None = Depends(get_pollers),
) -> PaymentAttemptResponse:
    attempt = await payment_flow.pay_service_fee(
        db, gateway, pollers, request_id, data.method, data.payer
    )
    return PaymentAttemptResponse.model_validate(attempt)


@router.post(
    "/{request_id}/escrow/pay",
    response_model=PaymentAttemptResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def pay_escrow(
    request_id: uuid.UUID,
    data: PaymentInitiate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    pollers: PollerRegistry | None = Depends(get_pollers),
) -> PaymentAttemptResponse:
    """Deposit the job amount into escrow. The service fee must be paid first."""
    attempt = await payment_flow.pay_escrow(
        db, gateway, pollers, request_id, data.method, data.payer
    )
    return PaymentAttemptResponse.model_validate(attempt)


@router.get("/{request_id}/contact", response_model=ContactResponse, dependencies=[Depends(check_rate_limit)])
async def get_contact(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> ContactResponse:
    """Artisan contact details. 403 until both payments are confirmed."""
    info = await payment_flow.reveal_contact(db, request_id)
    return ContactResponse.model_validate(info)


@router.post("/{request_id}/start", response_model=ServiceRequestResponse, dependencies=[Depends(check_rate_limit)])
async def start_job(
    request_id: uuid.UUID,
    data: RequestAction,
    db: AsyncSession = Depends(get_db),
) -> ServiceRequestResponse:
    request = await payment_flow.start_job(db, request_id, data.actor_id)
    return ServiceRequestResponse.model_validate(request)


@router.post("/{request_id}/complete", response_model=ServiceRequestResponse, dependencies=[Depends(check_rate_limit)])
async def complete_job(
    request_id: uuid.UUID,
    data: RequestAction,
    db: AsyncSession = Depends(get_db),
) -> ServiceRequestResponse:
    """Customer confirms the job is done. Releases the escrow if it has no milestones."""
    request = await payment_flow.complete_job(db, request_id, data.actor_id)
    return ServiceRequestResponse.model_validate(request)


@router.post("/{request_id}/cancel", response_model=ServiceRequestResponse, dependencies=[Depends(check_rate_limit)])
async def cancel_request(
    request_id: uuid.UUID,
    data: RequestCancel,
    db: AsyncSession = Depends(get_db),
    pollers: PollerRegistry | None = Depends(get_pollers),
) -> ServiceRequestResponse:
    """Withdraw the request. Held escrow is refunded; the service fee is not."""
    request = await payment_flow.cancel_request(
        db, pollers, request_id, data.reason, data.actor_id
    )
    return ServiceRequestResponse.model_validate(request)
