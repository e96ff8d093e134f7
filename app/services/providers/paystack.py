"""Paystack integration.

Paystack takes and reports amounts in kobo (1/100 NGN).
See: https://paystack.com/docs/api/transaction/
"""

import logging
from decimal import Decimal

from app.config import settings
from app.services.fees import round_money
from app.services.providers.base import (
    InitiateResult, PaymentMethod, PaymentProvider, ProviderError, VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

CHANNELS = {
    PaymentMethod.CARD: ["card"],
    PaymentMethod.MOBILE_MONEY: ["mobile_money"],
    PaymentMethod.BANK_TRANSFER: ["bank_transfer"],
    PaymentMethod.USSD: ["ussd"],
}

# "abandoned" is what Paystack reports for a checkout the payer has not finished yet
_PENDING = {"abandoned", "ongoing", "pending", "processing", "queued"}
_FAILED = {"failed", "reversed"}


def to_kobo(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_kobo(kobo: int) -> Decimal:
    return (Decimal(kobo) / 100).quantize(Decimal("0.01"))


class PaystackProvider(PaymentProvider):
    name = "paystack"

    async def initiate(
        self,
        amount: Decimal,
        method: PaymentMethod,
        payer: str,
        reference: str,
        metadata: dict | None = None,
    ) -> InitiateResult:
        payload = {
            "email": payer,
            "amount": to_kobo(amount),
            "reference": reference,
            "currency": settings.currency,
            "channels": CHANNELS[method],
            "metadata": metadata or {},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        resp = await self._request("POST", "/transaction/initialize", json=payload)
        body = resp.json() if resp.content else {}
        if resp.status_code != 200 or not body.get("status") or not body.get("data"):
            logger.error(
                "Paystack initialize returned %d: %s", resp.status_code, resp.text[:500]
            )
            raise ProviderError(
                self.name, body.get("message") or f"initialize failed (status {resp.status_code})"
            )

        data = body["data"]
        return InitiateResult(
            reference=data.get("reference", reference),
            provider=self.name,
            redirect_url=data.get("authorization_url"),
            instructions={"access_code": data["access_code"]} if data.get("access_code") else None,
        )

    async def verify(self, reference: str) -> VerificationResult:
        resp = await self._request("GET", f"/transaction/verify/{reference}")
        body = resp.json() if resp.content else {}
        if resp.status_code != 200 or not body.get("status") or not body.get("data"):
            raise ProviderError(
                self.name, body.get("message") or f"verify failed (status {resp.status_code})"
            )

        data = body["data"]
        raw_status = str(data.get("status", "")).lower()
        if raw_status == "success":
            status = VerificationStatus.SUCCESS
        elif raw_status in _FAILED:
            status = VerificationStatus.FAILED
        elif raw_status in _PENDING:
            status = VerificationStatus.PENDING
        else:
            logger.warning("Unknown Paystack status %r for %s", raw_status, reference)
            status = VerificationStatus.PENDING

        return VerificationResult(
            reference=data.get("reference", reference),
            status=status,
            paid_amount=from_kobo(data["amount"]) if data.get("amount") is not None else None,
            channel=data.get("channel"),
            currency=data.get("currency"),
            raw=body,
        )

    def estimate_fee(self, amount: Decimal, method: PaymentMethod) -> Decimal:
        if method == PaymentMethod.CARD:
            return round_money(max(amount * Decimal("0.015") + 100, Decimal("100")))
        if method == PaymentMethod.MOBILE_MONEY:
            return round_money(amount * Decimal("0.01"))
        # Bank transfer and USSD are flat
        return Decimal("50.00")
