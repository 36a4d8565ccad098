"""
Tests for bank-funded wallet recharges.
"""
import pytest

from paycode.core.accounts import AccountKind
from paycode.core.ledger import TransactionType
from paycode.database.connection import unit_of_work
from paycode.errors import BankInsufficientFunds, InvalidAmount, NotFound

from .conftest import BANK_FUNDING_CENTS, balance_of, open_account


async def drain_bank_to(services, remaining_cents: int) -> None:
    async with unit_of_work(services.session_factory) as db:
        await services.accounts.debit(db, "bank", BANK_FUNDING_CENTS - remaining_cents)
        await services.accounts.credit(db, "reserve", BANK_FUNDING_CENTS - remaining_cents)


class TestRecharge:
    """Test suite for moving funds from the bank into payer wallets."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recharge_credits_payer_and_debits_bank(self, services) -> None:
        payer = await open_account(services, AccountKind.PAYER, "Bob")

        result = await services.recharge.recharge(payer.id, 5_000)

        assert result.payer_balance_cents == 5_000
        assert result.bank_balance_cents == BANK_FUNDING_CENTS - 5_000
        assert await balance_of(services, payer.id) == 5_000
        assert await balance_of(services, "bank") == BANK_FUNDING_CENTS - 5_000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recharge_writes_single_payer_record(self, services) -> None:
        payer = await open_account(services, AccountKind.PAYER, "Bob")

        result = await services.recharge.recharge(payer.id, 5_000)

        page = await services.ledger.history(payer.id)
        assert [r.id for r in page.items] == [result.transaction_id]
        assert page.items[0].type == TransactionType.RECHARGE.value
        assert page.items[0].counterparty_id == "bank"
        assert (await services.ledger.history("bank")).items == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bank_shortfall_changes_nothing(self, services) -> None:
        """Bank holds 40.00 and the payer asks for 50.00."""
        await open_account(services, AccountKind.MERCHANT, "Reserve", "reserve")
        payer = await open_account(services, AccountKind.PAYER, "Bob")
        await drain_bank_to(services, 4_000)

        with pytest.raises(BankInsufficientFunds) as exc_info:
            await services.recharge.recharge(payer.id, 5_000)

        assert exc_info.value.shortfall_cents == 1_000
        assert await balance_of(services, "bank") == 4_000
        assert await balance_of(services, payer.id) == 0
        assert (await services.ledger.history(payer.id)).items == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -500])
    async def test_recharge_rejects_non_positive(self, services, payer, amount) -> None:
        with pytest.raises(InvalidAmount):
            await services.recharge.recharge(payer.id, amount)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recharge_requires_payer(self, services, merchant) -> None:
        with pytest.raises(NotFound):
            await services.recharge.recharge("p_ghost", 100)
        with pytest.raises(NotFound):
            await services.recharge.recharge(merchant.id, 100)

        assert await balance_of(services, "bank") == BANK_FUNDING_CENTS
