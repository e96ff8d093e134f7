"""Inbound payment provider webhooks.

Paystack signs the raw body with HMAC-SHA512 using the secret key and sends the
hex digest in ``x-paystack-signature``. Flutterwave echoes a merchant-configured
secret in ``verif-hash``. After the signature check, only the payment reference
is taken from the payload; the outcome is re-fetched from the provider and fed
through the same confirmation routine the poller uses.
"""

import hashlib
import hmac
import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import NotFoundError, ValidationError, WebhookSignatureError
from app.models.payment import PaymentAttempt
from app.services.confirmation import get_attempt, verify_now
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)

PROVIDERS = ("paystack", "flutterwave")


def sign_paystack_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA512 of the raw request body, hex encoded."""
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def verify_signature(provider: str, headers: dict[str, str], body: bytes) -> None:
    """Raise ``WebhookSignatureError`` unless the delivery is authentic."""
    if provider == "paystack":
        expected_secret = settings.paystack_secret_key
        received = headers.get("x-paystack-signature", "")
        expected = sign_paystack_payload(expected_secret, body) if expected_secret else ""
    elif provider == "flutterwave":
        expected = settings.flutterwave_webhook_hash
        received = headers.get("verif-hash", "")
    else:
        raise ValidationError(f"Unknown payment provider: {provider}")

    if not expected or not received or not hmac.compare_digest(expected, received):
        logger.warning("Rejected %s webhook with invalid signature", provider)
        raise WebhookSignatureError("Invalid webhook signature")


def extract_reference(provider: str, payload: dict) -> str | None:
    data = payload.get("data") or {}
    if provider == "paystack":
        return data.get("reference")
    return data.get("tx_ref") or payload.get("txRef")


async def handle_webhook(
    db: AsyncSession,
    gateway: PaymentGateway,
    provider: str,
    headers: dict[str, str],
    body: bytes,
) -> PaymentAttempt | None:
    """Authenticate a delivery and confirm the payment it refers to.

    Returns None for events that do not name a payment this engine initiated, so
    the provider receives a 200 and stops redelivering.
    """
    verify_signature(provider, headers, body)
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e

    reference = extract_reference(provider, payload)
    if not reference:
        logger.info("Ignoring %s webhook %r without a reference", provider, payload.get("event"))
        return None

    try:
        attempt = await get_attempt(db, reference)
    except NotFoundError:
        logger.warning("Ignoring %s webhook for unknown reference %s", provider, reference)
        return None
    if attempt.provider != provider:
        logger.warning(
            "Webhook from %s for %s, which was initiated with %s",
            provider, reference, attempt.provider,
        )
    logger.info("Webhook %s from %s for %s", payload.get("event"), provider, reference)
    return await verify_now(db, gateway, reference)
