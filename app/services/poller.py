"""Verification poller.

A payment initiated through the gateway settles asynchronously at the provider.
The poller asks the provider for the outcome at a fixed interval until it reports
success or failure, or the attempt budget runs out. Running out is reported as
TIMEOUT, never as a failure, because the funds may still clear later.

Waiting between polls is done on the cancel event with a timeout, so a poll sleeps
without holding a worker and wakes immediately when its request is withdrawn.
"""

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass

from fastapi import Request

from app.services.gateway import PaymentGateway
from app.services.providers.base import VerificationResult, VerificationStatus

logger = logging.getLogger(__name__)


class PollOutcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    reference: str
    outcome: PollOutcome
    attempts: int
    verification: VerificationResult | None = None


class VerificationPoller:
    def __init__(self, gateway: PaymentGateway, interval: float, max_attempts: int) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.gateway = gateway
        self.interval = interval
        self.max_attempts = max_attempts

    async def poll(
        self,
        reference: str,
        provider: str,
        cancel: asyncio.Event | None = None,
    ) -> PollResult:
        """Poll until a terminal outcome. Never raises for provider errors.

        Each call to ``verify`` uses one attempt whether it answers or errors, so
        transient network failures cannot extend the budget.
        """
        cancel = cancel or asyncio.Event()
        last: VerificationResult | None = None

        for attempt in range(1, self.max_attempts + 1):
            if cancel.is_set():
                return PollResult(reference, PollOutcome.CANCELLED, attempt - 1, last)

            try:
                last = await self.gateway.verify(reference, provider)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Verification of %s failed (attempt %d/%d): %s",
                    reference, attempt, self.max_attempts, e,
                )
            else:
                if last.status == VerificationStatus.SUCCESS:
                    return PollResult(reference, PollOutcome.SUCCESS, attempt, last)
                if last.status == VerificationStatus.FAILED:
                    return PollResult(reference, PollOutcome.FAILED, attempt, last)

            if attempt == self.max_attempts:
                break
            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.interval)
            except TimeoutError:
                continue
            return PollResult(reference, PollOutcome.CANCELLED, attempt, last)

        logger.info("Verification of %s still pending after %d attempts", reference, self.max_attempts)
        return PollResult(reference, PollOutcome.TIMEOUT, self.max_attempts, last)


class PollerRegistry:
    """Background verification tasks, one per payment reference.

    Owned by the application (``app.state.pollers``). Tasks are grouped by service
    request so a cancelled request can stop all of its polling in one call.
    """

    def __init__(self, poller: VerificationPoller) -> None:
        self.poller = poller
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancels: dict[str, asyncio.Event] = {}
        self._by_request: dict[uuid.UUID, set[str]] = {}

    def is_watching(self, reference: str) -> bool:
        return reference in self._tasks

    def watch(self, reference: str, provider: str, request_id: uuid.UUID) -> asyncio.Task | None:
        """Start polling ``reference`` in the background unless already polling it."""
        if reference in self._tasks:
            return None
        cancel = asyncio.Event()
        task = asyncio.create_task(self._run(reference, provider, cancel))
        self._tasks[reference] = task
        self._cancels[reference] = cancel
        self._by_request.setdefault(request_id, set()).add(reference)
        task.add_done_callback(lambda _t: self._forget(reference, request_id))
        return task

    def _forget(self, reference: str, request_id: uuid.UUID) -> None:
        self._tasks.pop(reference, None)
        self._cancels.pop(reference, None)
        refs = self._by_request.get(request_id)
        if refs is not None:
            refs.discard(reference)
            if not refs:
                self._by_request.pop(request_id, None)

    async def _run(self, reference: str, provider: str, cancel: asyncio.Event) -> None:
        from app.services.confirmation import record_poll_result

        try:
            result = await self.poller.poll(reference, provider, cancel)
            if result.outcome == PollOutcome.CANCELLED:
                logger.info("Stopped polling %s", reference)
                return
            await record_poll_result(result)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Verification task for %s crashed", reference)

    def cancel_request(self, request_id: uuid.UUID) -> int:
        """Stop every poll belonging to a service request. Returns how many were stopped."""
        refs = list(self._by_request.get(request_id, ()))
        for ref in refs:
            event = self._cancels.get(ref)
            if event is not None:
                event.set()
        return len(refs)

    async def shutdown(self) -> None:
        for event in self._cancels.values():
            event.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def get_pollers(request: Request) -> PollerRegistry | None:
    """FastAPI dependency. None when the app runs without background polling."""
    return getattr(request.app.state, "pollers", None)
