"""Contact reveal gate.

An artisan's phone, email and address leave the platform only through
``reveal_contact``, and only while the service fee is paid and the job amount is
held in escrow. The check runs against the payment rows on every call; there is
no cached "revealed" flag to go stale.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import NotFoundError, PaymentIncomplete
from app.models.escrow import EscrowPayment, EscrowStatus
from app.models.payment import ServiceFeePayment, ServiceFeeStatus
from app.models.service_request import Artisan, ServiceRequest


@dataclass(frozen=True)
class ArtisanContactInfo:
    artisan_id: uuid.UUID
    display_name: str
    phone: str
    email: str | None
    address: str | None
    is_revealed: bool
    revealed_at: datetime


async def assert_payments_complete(db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
    request = await db.get(ServiceRequest, request_id)
    if request is None:
        raise NotFoundError("Service request not found", request_id=str(request_id))

    fee = await db.scalar(
        select(ServiceFeePayment)
        .where(ServiceFeePayment.request_id == request_id)
        .execution_options(populate_existing=True)
    )
    escrow = await db.scalar(
        select(EscrowPayment)
        .where(EscrowPayment.request_id == request_id)
        .execution_options(populate_existing=True)
    )
    fee_status = fee.status if fee is not None else None
    escrow_status = escrow.status if escrow is not None else None
    if fee_status != ServiceFeeStatus.PAID or escrow_status != EscrowStatus.ESCROWED:
        raise PaymentIncomplete(
            "Contact details are available once the service fee is paid and the job "
            "amount is held in escrow",
            service_fee_status=fee_status.value if fee_status else None,
            escrow_status=escrow_status.value if escrow_status else None,
        )
    return request


async def reveal_contact(db: AsyncSession, request_id: uuid.UUID) -> ArtisanContactInfo:
    request = await assert_payments_complete(db, request_id)
    artisan = await db.get(Artisan, request.artisan_id)
    if artisan is None:
        raise NotFoundError("Artisan not found")
    return ArtisanContactInfo(
        artisan_id=artisan.artisan_id,
        display_name=artisan.display_name,
        phone=artisan.phone,
        email=artisan.email,
        address=artisan.address,
        is_revealed=True,
        revealed_at=datetime.now(UTC),
    )
