"""Fee schedule endpoints. Public and read-only."""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from app.rate_limit import check_rate_limit
from app.schemas.payment import CostResponse, ProcessingFeeResponse
from app.services.fees import calculate_total_cost, get_fee_schedule
from app.services.gateway import PaymentGateway, get_gateway
from app.services.providers.base import PaymentMethod

router = APIRouter(tags=["fees"])


@router.get("/fees", dependencies=[Depends(check_rate_limit)])
async def fee_schedule() -> dict:
    """Current fee schedule: flat service fee plus the platform commission."""
    return get_fee_schedule()


@router.get("/fees/quote", response_model=CostResponse, dependencies=[Depends(check_rate_limit)])
async def fee_quote(
    amount: Decimal = Query(..., gt=0, max_digits=14, decimal_places=2),
) -> CostResponse:
    """What a job of ``amount`` costs the customer and pays the artisan."""
    return CostResponse.model_validate(calculate_total_cost(amount))


@router.get(
    "/fees/processing",
    response_model=ProcessingFeeResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def processing_fee(
    amount: Decimal = Query(..., gt=0, max_digits=14, decimal_places=2),
    method: PaymentMethod = Query(...),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ProcessingFeeResponse:
    """The primary provider's own charge for paying ``amount`` with ``method``."""
    return ProcessingFeeResponse(
        amount=amount,
        method=method,
        provider=gateway.primary.name,
        fee=gateway.estimate_fee(amount, method),
    )
