"""Payment attempt endpoints and provider webhooks."""

import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.exceptions import NotFoundError
from app.rate_limit import check_rate_limit
from app.schemas.payment import PaymentAttemptResponse, PaymentInitiate
from app.services import payment_flow
from app.services.gateway import PaymentGateway, get_gateway
from app.services.poller import PollerRegistry, get_pollers
from app.services.webhooks import PROVIDERS, handle_webhook

router = APIRouter(tags=["payments"])


@router.post(
    "/payments/{payment_id}/pay",
    response_model=PaymentAttemptResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def select_payment_method(
    payment_id: uuid.UUID,
    data: PaymentInitiate,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    pollers: PollerRegistry | None = Depends(get_pollers),
) -> PaymentAttemptResponse:
    """Pay a service fee or an escrow deposit by its id with the chosen method."""
    attempt = await payment_flow.select_payment_method(
        db, gateway, pollers, payment_id, data.method, data.payer
    )
    return PaymentAttemptResponse.model_validate(attempt)


@router.get(
    "/payments/{reference}",
    response_model=PaymentAttemptResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_payment(
    reference: str,
    db: AsyncSession = Depends(get_db),
) -> PaymentAttemptResponse:
    attempt = await payment_flow.get_payment_attempt(db, reference)
    return PaymentAttemptResponse.model_validate(attempt)


@router.post(
    "/payments/{reference}/verify",
    response_model=PaymentAttemptResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def verify_payment(
    reference: str,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentAttemptResponse:
    """Check with the provider now. Use this to retry after a verification timeout."""
    attempt = await payment_flow.verify_payment(db, gateway, reference)
    return PaymentAttemptResponse.model_validate(attempt)


@router.post("/webhooks/{provider}", dependencies=[Depends(check_rate_limit)])
async def provider_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    """Provider callback. The signature is checked against the raw body."""
    if provider not in PROVIDERS:
        raise NotFoundError("Unknown payment provider", provider=provider)
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    attempt = await handle_webhook(db, gateway, provider, headers, body)
    if attempt is None:
        return {"status": "ignored"}
    return {"status": "ok", "reference": attempt.reference, "payment_status": attempt.status.value}
