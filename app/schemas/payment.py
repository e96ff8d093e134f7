"""Pydantic v2 schemas for the service request payment flow."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.escrow import EscrowResponse, MilestoneTemplateIn
from app.services.providers.base import PaymentMethod


def _enum_value(v: object) -> str | None:
    if v is None:
        return None
    if hasattr(v, "value"):
        return v.value
    return str(v)


class AcceptQuote(BaseModel):
    quote_id: uuid.UUID
    customer_id: uuid.UUID
    milestones: list[MilestoneTemplateIn] | None = Field(None, max_length=20)


class ServiceFeeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    fee_payment_id: uuid.UUID
    request_id: uuid.UUID
    amount: Decimal
    status: str
    transaction_ref: str | None
    paid_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class AcceptQuoteResponse(BaseModel):
    service_fee: ServiceFeeResponse
    escrow: EscrowResponse


class PaymentInitiate(BaseModel):
    method: PaymentMethod
    # Payer email, passed through to the provider's checkout
    payer: str = Field(..., pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$", max_length=256)


class PaymentAttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reference: str
    purpose: str
    payment_id: uuid.UUID
    provider: str
    method: str
    amount: Decimal
    status: str
    redirect_url: str | None
    instructions: dict | None
    failure_reason: str | None
    channel: str | None
    created_at: datetime
    confirmed_at: datetime | None

    @field_validator("purpose", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class ProcessingFeeResponse(BaseModel):
    amount: Decimal
    method: PaymentMethod
    provider: str
    fee: Decimal


class CostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_amount: Decimal
    service_fee: Decimal
    platform_fee: Decimal
    artisan_amount: Decimal
    total_customer_payment: Decimal


class FlowStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: uuid.UUID
    stage: str
    request_status: str
    service_fee_status: str | None
    escrow_status: str | None
    cost: CostResponse | None
    pending_reference: str | None
    last_failure: str | None
    verification_timed_out: bool

    @field_validator(
        "stage", "request_status", "service_fee_status", "escrow_status", mode="before"
    )
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        return _enum_value(v)


class ContactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    artisan_id: uuid.UUID
    display_name: str
    phone: str
    email: str | None
    address: str | None
    is_revealed: bool
    revealed_at: datetime


class RequestAction(BaseModel):
    actor_id: uuid.UUID


class RequestCancel(BaseModel):
    actor_id: uuid.UUID
    reason: str = Field(..., min_length=1, max_length=2048)


class ServiceRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: uuid.UUID
    customer_id: uuid.UUID
    artisan_id: uuid.UUID | None
    title: str
    status: str
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)
