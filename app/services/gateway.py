"""Payment gateway: primary provider with a single fallback.

``initiate`` tries the primary provider under a timeout. If it errors or times out,
the fallback gets exactly one try before ``GatewayUnavailable`` is raised.
Verification always goes to the provider that initiated the payment.
"""

import asyncio
import logging
from decimal import Decimal

from fastapi import Request

from app.config import settings
from app.exceptions import GatewayUnavailable
from app.services.providers.base import (
    InitiateResult, PaymentMethod, PaymentProvider, ProviderError, VerificationResult,
)
from app.services.providers.flutterwave import FlutterwaveProvider
from app.services.providers.paystack import PaystackProvider

logger = logging.getLogger(__name__)


class PaymentGateway:
    def __init__(
        self,
        primary: PaymentProvider,
        fallback: PaymentProvider | None = None,
        *,
        timeout: float = 15.0,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.timeout = timeout
        self.providers: dict[str, PaymentProvider] = {primary.name: primary}
        if fallback is not None:
            self.providers[fallback.name] = fallback

    async def _try(
        self,
        provider: PaymentProvider,
        amount: Decimal,
        method: PaymentMethod,
        payer: str,
        reference: str,
        metadata: dict | None,
    ) -> InitiateResult:
        return await asyncio.wait_for(
            provider.initiate(amount, method, payer, reference, metadata),
            timeout=self.timeout,
        )

    async def initiate(
        self,
        amount: Decimal,
        method: PaymentMethod,
        payer: str,
        reference: str,
        metadata: dict | None = None,
    ) -> InitiateResult:
        """Start a payment. The returned result names the provider that accepted it."""
        try:
            return await self._try(self.primary, amount, method, payer, reference, metadata)
        except (ProviderError, TimeoutError) as e:
            if self.fallback is None:
                logger.error("Provider %s failed for %s: %s", self.primary.name, reference, e)
                raise GatewayUnavailable(
                    "Payment provider unavailable", provider=self.primary.name,
                ) from e
            logger.warning(
                "Provider %s failed for %s (%s), falling back to %s",
                self.primary.name, reference, str(e) or "timeout", self.fallback.name,
            )

        try:
            return await self._try(self.fallback, amount, method, payer, reference, metadata)
        except (ProviderError, TimeoutError) as e:
            logger.error(
                "Fallback provider %s also failed for %s: %s", self.fallback.name, reference, e
            )
            raise GatewayUnavailable(
                "All payment providers unavailable",
                providers=[self.primary.name, self.fallback.name],
            ) from e

    async def verify(self, reference: str, provider: str) -> VerificationResult:
        try:
            target = self.providers[provider]
        except KeyError:
            raise ValueError(f"Unknown payment provider: {provider}") from None
        return await asyncio.wait_for(target.verify(reference), timeout=self.timeout)

    def estimate_fee(self, amount: Decimal, method: PaymentMethod) -> Decimal:
        return self.primary.estimate_fee(amount, method)


def build_provider(name: str) -> PaymentProvider:
    if name == "paystack":
        return PaystackProvider(
            settings.paystack_secret_key,
            settings.paystack_base_url,
            timeout=settings.gateway_timeout_seconds,
            callback_url=settings.callback_url or None,
        )
    if name == "flutterwave":
        return FlutterwaveProvider(
            settings.flutterwave_secret_key,
            settings.flutterwave_base_url,
            timeout=settings.gateway_timeout_seconds,
            callback_url=settings.callback_url or None,
        )
    raise ValueError(f"Unknown payment provider: {name}")


def build_gateway() -> PaymentGateway:
    primary, fallback = settings.gateway_order
    return PaymentGateway(
        build_provider(primary),
        build_provider(fallback),
        timeout=settings.gateway_timeout_seconds,
    )


def get_gateway(request: Request) -> PaymentGateway:
    """FastAPI dependency. The gateway is built once in the app lifespan."""
    return request.app.state.gateway
