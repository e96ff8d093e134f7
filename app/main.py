"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.exceptions import EscrowEngineError
from app.redis import close_redis
from app.routers import escrows, fees, milestones, payments, requests
from app.services.gateway import build_gateway
from app.services.poller import PollerRegistry, VerificationPoller

logger = logging.getLogger(__name__)


async def _recover_pending_payments(pollers: PollerRegistry) -> None:
    """Resume polling for payments that were still pending when the server stopped.

    Timed-out attempts are left alone; they are retried by an explicit verify
    call or settled by a late webhook.
    """
    from app.database import async_session_factory
    from app.models.payment import AttemptStatus, PaymentAttempt
    from sqlalchemy import select

    try:
        async with async_session_factory() as db:
            result = await db.execute(
                select(PaymentAttempt).where(PaymentAttempt.status == AttemptStatus.PENDING)
            )
            attempts = list(result.scalars().all())
            for attempt in attempts:
                logger.info("Recovering pending payment %s", attempt.reference)
                pollers.watch(attempt.reference, attempt.provider, attempt.request_id)
            if attempts:
                logger.info("Payment recovery: %d polls re-spawned", len(attempts))
    except Exception:
        logger.exception("Pending payment recovery failed")


async def _reconcile_milestones() -> None:
    """Re-derive milestone readiness in case the server stopped mid-cascade."""
    from app.database import async_session_factory
    from app.services.milestones import reconcile_all

    try:
        async with async_session_factory() as db:
            readied = await reconcile_all(db)
            logger.info("Milestone reconciliation: %d milestones readied", readied)
    except Exception:
        logger.exception("Milestone reconciliation failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    app.state.gateway = build_gateway()
    app.state.pollers = PollerRegistry(VerificationPoller(
        app.state.gateway,
        interval=settings.verification_poll_interval_seconds,
        max_attempts=settings.verification_max_attempts,
    ))
    await _reconcile_milestones()
    await _recover_pending_payments(app.state.pollers)

    yield

    await app.state.pollers.shutdown()
    await close_redis()


app = FastAPI(
    title="Artisan Escrow",
    description="Escrow and milestone payments for commissioned service jobs",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(EscrowEngineError)
async def escrow_error_handler(request: Request, exc: EscrowEngineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    logger.warning("Concurrent update on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=409,
        content={
            "detail": "The record was changed by another request; re-query and retry",
            "error": "invalid_state",
        },
    )


# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Routers
app.include_router(requests.router)
app.include_router(payments.router)
app.include_router(escrows.router)
app.include_router(milestones.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
