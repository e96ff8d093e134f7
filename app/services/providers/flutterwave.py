"""Flutterwave (v3) integration. Amounts are in whole currency units."""

import logging
from decimal import Decimal

from app.config import settings
from app.services.fees import round_money
from app.services.providers.base import (
    InitiateResult, PaymentMethod, PaymentProvider, ProviderError, VerificationResult,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

PAYMENT_OPTIONS = {
    PaymentMethod.CARD: "card",
    PaymentMethod.MOBILE_MONEY: "mobilemoney",
    PaymentMethod.BANK_TRANSFER: "banktransfer",
    PaymentMethod.USSD: "ussd",
}

LOCAL_RATE = Decimal("0.014")
LOCAL_FEE_CAP = Decimal("2000.00")


class FlutterwaveProvider(PaymentProvider):
    name = "flutterwave"

    async def initiate(
        self,
        amount: Decimal,
        method: PaymentMethod,
        payer: str,
        reference: str,
        metadata: dict | None = None,
    ) -> InitiateResult:
        payload = {
            "tx_ref": reference,
            "amount": str(amount),
            "currency": settings.currency,
            "payment_options": PAYMENT_OPTIONS[method],
            "customer": {"email": payer},
            "meta": metadata or {},
        }
        if self.callback_url:
            payload["redirect_url"] = self.callback_url
        resp = await self._request("POST", "/payments", json=payload)
        body = resp.json() if resp.content else {}
        if resp.status_code != 200 or body.get("status") != "success" or not body.get("data"):
            logger.error(
                "Flutterwave payments returned %d: %s", resp.status_code, resp.text[:500]
            )
            raise ProviderError(
                self.name, body.get("message") or f"initiate failed (status {resp.status_code})"
            )

        return InitiateResult(
            reference=reference,
            provider=self.name,
            redirect_url=body["data"].get("link"),
        )

    async def verify(self, reference: str) -> VerificationResult:
        resp = await self._request(
            "GET", "/transactions/verify_by_reference", params={"tx_ref": reference}
        )
        # No charge exists yet for a checkout the payer has not completed
        if resp.status_code == 404:
            return VerificationResult(reference=reference, status=VerificationStatus.PENDING)

        body = resp.json() if resp.content else {}
        if resp.status_code != 200 or body.get("status") != "success" or not body.get("data"):
            raise ProviderError(
                self.name, body.get("message") or f"verify failed (status {resp.status_code})"
            )

        data = body["data"]
        raw_status = str(data.get("status", "")).lower()
        if raw_status == "successful":
            status = VerificationStatus.SUCCESS
        elif raw_status in ("failed", "cancelled"):
            status = VerificationStatus.FAILED
        else:
            status = VerificationStatus.PENDING

        amount = data.get("amount")
        return VerificationResult(
            reference=data.get("tx_ref", reference),
            status=status,
            paid_amount=round_money(Decimal(str(amount))) if amount is not None else None,
            channel=data.get("payment_type"),
            currency=data.get("currency"),
            raw=body,
        )

    def estimate_fee(self, amount: Decimal, method: PaymentMethod) -> Decimal:
        # Flat local rate for every method, capped
        return min(round_money(amount * LOCAL_RATE), LOCAL_FEE_CAP)
