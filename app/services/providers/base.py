"""Payment provider contract shared by every gateway integration."""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

import httpx


class PaymentMethod(enum.Enum):
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    USSD = "ussd"


class VerificationStatus(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class InitiateResult:
    reference: str
    provider: str
    redirect_url: str | None = None
    # Method-specific follow-up for the payer, e.g. a USSD code or transfer account
    instructions: dict | None = None


@dataclass
class VerificationResult:
    reference: str
    status: VerificationStatus
    paid_amount: Decimal | None = None
    channel: str | None = None
    currency: str | None = None
    raw: dict = field(default_factory=dict, repr=False)


class ProviderError(Exception):
    """The provider could not be reached or rejected the request."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class PaymentProvider(ABC):
    """A hosted-checkout payment provider.

    Subclasses talk to one provider's REST API. They never touch the database;
    recording attempts and confirming payments is the caller's job.
    """

    name: str = ""

    def __init__(
        self,
        secret_key: str,
        base_url: str,
        *,
        timeout: float = 15.0,
        callback_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        # Where the hosted checkout sends the payer when they finish
        self.callback_url = callback_url
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        async with self._client() as client:
            try:
                return await client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderError(self.name, f"request to {path} timed out") from e
            except httpx.RequestError as e:
                raise ProviderError(self.name, f"request to {path} failed: {e}") from e

    @abstractmethod
    async def initiate(
        self,
        amount: Decimal,
        method: PaymentMethod,
        payer: str,
        reference: str,
        metadata: dict | None = None,
    ) -> InitiateResult:
        ...

    @abstractmethod
    async def verify(self, reference: str) -> VerificationResult:
        ...

    @abstractmethod
    def estimate_fee(self, amount: Decimal, method: PaymentMethod) -> Decimal:
        ...
