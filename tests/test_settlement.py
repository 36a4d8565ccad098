"""
Tests for settlement, refunds and payment reads.
"""
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import delete, func, select

from paycode.core.ledger import TransactionType
from paycode.core.locking import RedisKeyedLock
from paycode.core.orders import OrderStatus
from paycode.database.connection import unit_of_work
from paycode.database.models import Account, LedgerTransaction, Payment
from paycode.errors import (
    InsufficientFunds,
    NotFound,
    OrderNotPending,
    PaymentExpired,
    PaymentNotRefundable,
    PersistenceError,
    ValidationError,
)

from .conftest import balance_of


async def count_rows(services: Any, model: Any, **filters: Any) -> int:
    stmt = select(func.count()).select_from(model)
    for column, value in filters.items():
        stmt = stmt.where(getattr(model, column) == value)
    async with unit_of_work(services.session_factory) as db:
        return await db.scalar(stmt)


class TestSettlement:
    """Test suite for paying an order by code."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settle_moves_funds_atomically(self, services, payer, merchant) -> None:
        """Payer with 100.00 pays a 25.00 order."""
        order = await services.lifecycle.create(merchant.id, 2500)

        result = await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert result.payer_balance_cents == 7500
        assert result.merchant_balance_cents == 2500
        assert await balance_of(services, payer.id) == 7500
        assert await balance_of(services, merchant.id) == 2500

        status = await services.lifecycle.status(order.id)
        assert status.status == OrderStatus.COMPLETED.value
        assert status.payment_id == result.payment_id

        records = await count_rows(services, LedgerTransaction, payment_id=result.payment_id)
        assert records == 2
        payment = await services.settlement.get_payment(result.payment_id)
        assert payment.order_id == order.id
        assert payment.amount_cents == 2500
        assert payment.method == "wallet"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settlement_records_mirror_each_other(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        result = await services.settlement.settle(order.payment_code, payer.id, "wallet")

        debit = (await services.ledger.history(payer.id)).items[-1]
        credit = (await services.ledger.history(merchant.id)).items[-1]

        assert debit.type == TransactionType.PAYMENT_DEBIT.value
        assert debit.amount_cents == -2500
        assert (debit.balance_before_cents, debit.balance_after_cents) == (10_000, 7_500)
        assert debit.counterparty_id == merchant.id
        assert credit.type == TransactionType.PAYMENT_CREDIT.value
        assert credit.amount_cents == 2500
        assert credit.counterparty_id == payer.id
        assert debit.order_id == credit.order_id == order.id
        assert debit.payment_id == credit.payment_id == result.payment_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_settlement_rejected(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        await services.settlement.settle(order.payment_code, payer.id, "wallet")

        with pytest.raises(OrderNotPending) as exc_info:
            await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert exc_info.value.status == OrderStatus.COMPLETED.value
        assert await balance_of(services, payer.id) == 7500
        assert await count_rows(services, Payment, order_id=order.id) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insufficient_funds_changes_nothing(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 10_001)

        with pytest.raises(InsufficientFunds) as exc_info:
            await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert exc_info.value.shortfall_cents == 1
        assert await balance_of(services, payer.id) == 10_000
        assert await balance_of(services, merchant.id) == 0
        assert (await services.lifecycle.status(order.id)).status == OrderStatus.PENDING.value
        assert await count_rows(services, Payment) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exact_balance_settles_to_zero(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 10_000)

        result = await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert result.payer_balance_cents == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_code_is_not_pending(self, services, payer, merchant, clock) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        clock.advance(minutes=15, seconds=1)

        with pytest.raises(OrderNotPending) as exc_info:
            await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert exc_info.value.status == OrderStatus.EXPIRED.value
        assert await balance_of(services, payer.id) == 10_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settles_at_expiry_instant(self, services, payer, merchant, clock) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        clock.now = order.expires_at

        result = await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert result.payer_balance_cents == 7500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expiry_between_lookup_and_settlement(
        self, services, payer, merchant, clock, monkeypatch
    ) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        lookup = services.lifecycle.lookup_by_code

        async def lookup_then_tick(payment_code: str) -> Any:
            found = await lookup(payment_code)
            clock.advance(minutes=16)
            return found

        monkeypatch.setattr(services.lifecycle, "lookup_by_code", lookup_then_tick)

        with pytest.raises(PaymentExpired):
            await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert await balance_of(services, payer.id) == 10_000
        assert (await services.lifecycle.status(order.id)).status == OrderStatus.EXPIRED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_code_and_payer(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)

        with pytest.raises(NotFound):
            await services.settlement.settle("87654321", payer.id, "wallet")
        with pytest.raises(NotFound):
            await services.settlement.settle(order.payment_code, "p_ghost", "wallet")
        with pytest.raises(NotFound):
            await services.settlement.settle(order.payment_code, merchant.id, "wallet")

        assert (await services.lifecycle.status(order.id)).status == OrderStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_method_required(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)

        with pytest.raises(ValidationError):
            await services.settlement.settle(order.payment_code, payer.id, "")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_payment(self, services) -> None:
        with pytest.raises(NotFound):
            await services.settlement.get_payment("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_merchant_rolls_back_settlement(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        async with unit_of_work(services.session_factory) as db:
            await db.execute(delete(Account).where(Account.id == merchant.id))

        with pytest.raises(NotFound):
            await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert await balance_of(services, payer.id) == 10_000
        assert (await services.lifecycle.status(order.id)).status == OrderStatus.PENDING.value
        assert await count_rows(services, Payment, order_id=order.id) == 0
        assert await count_rows(services, LedgerTransaction, order_id=order.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_backend_down_before_settlement(
        self, services, payer, merchant, monkeypatch
    ) -> None:
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(side_effect=RedisConnectionError("redis down"))
        client = MagicMock()
        client.lock.return_value = redis_lock
        monkeypatch.setattr(services.settlement, "locks", RedisKeyedLock(client))
        order = await services.lifecycle.create(merchant.id, 2500)

        with pytest.raises(PersistenceError):
            await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert await balance_of(services, payer.id) == 10_000
        assert (await services.lifecycle.status(order.id)).status == OrderStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_release_failure_keeps_committed_result(
        self, services, payer, merchant, monkeypatch
    ) -> None:
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=True)
        redis_lock.release = AsyncMock(side_effect=RedisConnectionError("redis down"))
        client = MagicMock()
        client.lock.return_value = redis_lock
        monkeypatch.setattr(services.settlement, "locks", RedisKeyedLock(client))
        order = await services.lifecycle.create(merchant.id, 2500)

        result = await services.settlement.settle(order.payment_code, payer.id, "wallet")

        assert result.payer_balance_cents == 7500
        assert (await services.lifecycle.status(order.id)).status == OrderStatus.COMPLETED.value
        redis_lock.release.assert_awaited_once()


class TestRefund:
    """Test suite for full refunds of completed payments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_returns_funds(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        paid = await services.settlement.settle(order.payment_code, payer.id, "wallet")

        refund = await services.settlement.refund(paid.payment_id)

        assert refund.payer_balance_cents == 10_000
        assert refund.merchant_balance_cents == 0
        assert await balance_of(services, payer.id) == 10_000
        assert await balance_of(services, merchant.id) == 0

        payment = await services.settlement.get_payment(paid.payment_id)
        assert payment.status == "refunded"
        assert payment.refunded_at is not None
        # The order itself stays completed
        assert (await services.lifecycle.status(order.id)).status == OrderStatus.COMPLETED.value

        refunds = [
            r for r in (await services.ledger.history(payer.id)).items
            if r.type == TransactionType.REFUND.value
        ]
        assert [r.amount_cents for r in refunds] == [2500]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_twice(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        paid = await services.settlement.settle(order.payment_code, payer.id, "wallet")
        await services.settlement.refund(paid.payment_id)

        with pytest.raises(PaymentNotRefundable):
            await services.settlement.refund(paid.payment_id)

        assert await balance_of(services, payer.id) == 10_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_needs_merchant_funds(self, services, payer, merchant) -> None:
        order = await services.lifecycle.create(merchant.id, 2500)
        paid = await services.settlement.settle(order.payment_code, payer.id, "wallet")
        async with unit_of_work(services.session_factory) as db:
            await services.accounts.debit(db, merchant.id, 2000)

        with pytest.raises(InsufficientFunds):
            await services.settlement.refund(paid.payment_id)

        assert (await services.settlement.get_payment(paid.payment_id)).status == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_unknown_payment(self, services) -> None:
        with pytest.raises(NotFound):
            await services.settlement.refund("missing")
