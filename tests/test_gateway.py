"""Tests for the payment gateway: primary provider, single fallback, timeouts."""

import asyncio
from decimal import Decimal

import pytest

from app.config import settings
from app.exceptions import GatewayUnavailable
from app.services.gateway import PaymentGateway, build_gateway, build_provider
from app.services.providers.base import InitiateResult, PaymentMethod
from app.services.providers.flutterwave import FlutterwaveProvider
from app.services.providers.paystack import PaystackProvider
from tests.conftest import FakeProvider


class SlowProvider(FakeProvider):
    async def initiate(self, *args, **kwargs) -> InitiateResult:  # type: ignore[no-untyped-def]
        await asyncio.sleep(5)
        return await super().initiate(*args, **kwargs)


@pytest.mark.asyncio
async def test_primary_handles_payment(
    gateway: PaymentGateway, provider: FakeProvider, fallback_provider: FakeProvider
) -> None:
    result = await gateway.initiate(Decimal("2000"), PaymentMethod.CARD, "c@example.com", "sf_1")
    assert result.provider == "paystack"
    assert provider.initiated == ["sf_1"]
    assert fallback_provider.initiated == []


@pytest.mark.asyncio
async def test_falls_back_when_primary_errors(fallback_provider: FakeProvider) -> None:
    gateway = PaymentGateway(FakeProvider("paystack", down=True), fallback_provider, timeout=1.0)

    result = await gateway.initiate(Decimal("2000"), PaymentMethod.CARD, "c@example.com", "sf_2")
    assert result.provider == "flutterwave"
    assert fallback_provider.initiated == ["sf_2"]


@pytest.mark.asyncio
async def test_falls_back_when_primary_times_out(fallback_provider: FakeProvider) -> None:
    gateway = PaymentGateway(SlowProvider("paystack"), fallback_provider, timeout=0.05)

    result = await gateway.initiate(Decimal("2000"), PaymentMethod.CARD, "c@example.com", "sf_3")
    assert result.provider == "flutterwave"


@pytest.mark.asyncio
async def test_unavailable_when_both_fail() -> None:
    gateway = PaymentGateway(
        FakeProvider("paystack", down=True), FakeProvider("flutterwave", down=True), timeout=1.0
    )
    with pytest.raises(GatewayUnavailable) as exc:
        await gateway.initiate(Decimal("2000"), PaymentMethod.CARD, "c@example.com", "sf_4")
    assert exc.value.details == {"providers": ["paystack", "flutterwave"]}


@pytest.mark.asyncio
async def test_unavailable_without_fallback() -> None:
    gateway = PaymentGateway(FakeProvider("paystack", down=True), timeout=1.0)
    with pytest.raises(GatewayUnavailable):
        await gateway.initiate(Decimal("2000"), PaymentMethod.CARD, "c@example.com", "sf_5")


@pytest.mark.asyncio
async def test_verify_goes_to_initiating_provider(
    gateway: PaymentGateway, provider: FakeProvider, fallback_provider: FakeProvider
) -> None:
    await gateway.verify("esc_1", "flutterwave")
    assert fallback_provider.verify_calls == 1
    assert provider.verify_calls == 0


@pytest.mark.asyncio
async def test_verify_unknown_provider(gateway: PaymentGateway) -> None:
    with pytest.raises(ValueError):
        await gateway.verify("esc_1", "stripe")


def test_build_provider() -> None:
    assert isinstance(build_provider("paystack"), PaystackProvider)
    assert isinstance(build_provider("flutterwave"), FlutterwaveProvider)
    with pytest.raises(ValueError):
        build_provider("stripe")


def test_build_gateway_follows_configured_order() -> None:
    object.__setattr__(settings, "primary_gateway", "flutterwave")
    gateway = build_gateway()
    assert gateway.primary.name == "flutterwave"
    assert gateway.fallback is not None
    assert gateway.fallback.name == "paystack"


def test_fee_estimate_comes_from_primary(fallback_provider: FakeProvider) -> None:
    gateway = PaymentGateway(
        PaystackProvider("sk", "https://api.paystack.test"), fallback_provider, timeout=1.0
    )
    assert gateway.estimate_fee(Decimal("10000"), PaymentMethod.CARD) == Decimal("250.00")
    assert gateway.estimate_fee(Decimal("10000"), PaymentMethod.USSD) == Decimal("50.00")


def test_build_provider_passes_callback_url() -> None:
    object.__setattr__(settings, "callback_url", "https://app.test/payments/done")
    assert build_provider("paystack").callback_url == "https://app.test/payments/done"
    assert build_provider("flutterwave").callback_url == "https://app.test/payments/done"
