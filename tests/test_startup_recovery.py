"""Tests for startup recovery (_recover_pending_payments, _reconcile_milestones)."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.main import _reconcile_milestones, _recover_pending_payments
from app.models.milestone import EscrowMilestone, MilestoneStatus
from app.models.payment import AttemptStatus
from app.services import milestones as ms
from app.services import payment_flow
from app.services.gateway import PaymentGateway
from app.services.milestone_planner import MilestoneTemplate
from app.services.providers.base import PaymentMethod
from app.services.poller import PollerRegistry
from tests.conftest import accept, fund_request, seed_request


@pytest.mark.asyncio
async def test_pending_attempts_are_watched_again(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
) -> None:
    # One pending attempt, one that already succeeded
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    pending = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, "c@example.com"
    )
    await fund_request(db_session, gateway)

    pollers = MagicMock(spec=PollerRegistry)
    await _recover_pending_payments(pollers)

    pollers.watch.assert_called_once_with(pending.reference, "paystack", request.request_id)


@pytest.mark.asyncio
async def test_timed_out_attempts_are_left_alone(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
) -> None:
    request, quote, _ = await seed_request(db_session)
    await accept(db_session, request, quote)
    attempt = await payment_flow.pay_service_fee(
        db_session, gateway, None, request.request_id, PaymentMethod.CARD, "c@example.com"
    )
    attempt.status = AttemptStatus.TIMED_OUT
    await db_session.commit()

    pollers = MagicMock(spec=PollerRegistry)
    await _recover_pending_payments(pollers)

    pollers.watch.assert_not_called()


@pytest.mark.asyncio
async def test_recovery_with_nothing_pending(session_factory: async_sessionmaker[AsyncSession]) -> None:
    pollers = MagicMock(spec=PollerRegistry)
    await _recover_pending_payments(pollers)
    pollers.watch.assert_not_called()


@pytest.mark.asyncio
async def test_reconcile_readies_independent_milestones(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
) -> None:
    plan = [
        MilestoneTemplate(title="Survey", percentage=Decimal("50")),
        MilestoneTemplate(title="Repairs", percentage=Decimal("50"), dependencies=[]),
    ]
    _, escrow, _ = await fund_request(db_session, gateway, "100000.00", plan)
    milestones = await ms.list_milestones(db_session, escrow.escrow_id)
    assert [m.status for m in milestones] == [MilestoneStatus.READY, MilestoneStatus.PENDING]
    second_id = milestones[1].milestone_id

    await _reconcile_milestones()

    async with session_factory() as fresh:
        second = await fresh.get(EscrowMilestone, second_id)
        assert second.status == MilestoneStatus.READY


@pytest.mark.asyncio
async def test_reconcile_leaves_blocked_milestones(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway,
) -> None:
    plan = [
        MilestoneTemplate(title="Survey", percentage=Decimal("50")),
        MilestoneTemplate(title="Repairs", percentage=Decimal("50")),
    ]
    _, escrow, _ = await fund_request(db_session, gateway, "100000.00", plan)
    second_id = (await ms.list_milestones(db_session, escrow.escrow_id))[1].milestone_id

    await _reconcile_milestones()

    async with session_factory() as fresh:
        second = await fresh.get(EscrowMilestone, second_id)
        assert second.status == MilestoneStatus.PENDING
