"""Recharge engine: moves funds from the settlement bank into payer wallets."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycode.config import Settings, get_settings
from paycode.core.accounts import AccountKind, AccountStore
from paycode.core.clock import Clock, utcnow
from paycode.core.ledger import TransactionLog, TransactionType
from paycode.core.locking import conflict_retrying
from paycode.core.money import require_positive
from paycode.database.connection import unit_of_work
from paycode.errors import BankInsufficientFunds, PaycodeError
from paycode.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RechargeResult:
    """Outcome of a successful recharge."""

    payer_id: str
    amount_cents: int
    payer_balance_cents: int
    bank_balance_cents: int
    transaction_id: int
    recharged_at: datetime


class RechargeEngine:
    """
    Credits a payer from the bank in one transaction.

    The bank is a finite pool: its debit is conditional, so concurrent
    recharges can never overdraw it. Only the payer side gets a ledger
    record; the bank's movements are recoverable from records whose
    counterparty is the bank.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        accounts: AccountStore,
        ledger: TransactionLog,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.accounts = accounts
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._clock = clock

    async def recharge(self, payer_id: str, amount_cents: int) -> RechargeResult:
        """
        Add ``amount_cents`` to a payer wallet.

        Raises:
            InvalidAmount: If amount is not positive
            NotFound: If the payer or the bank account is missing
            BankInsufficientFunds: If the bank balance is below the amount
        """
        try:
            require_positive(amount_cents)
            async for attempt in conflict_retrying(self.settings, "recharge"):
                with attempt:
                    result = await self._recharge_once(payer_id, amount_cents)
        except PaycodeError as exc:
            metrics.record_recharge(exc.code.lower())
            logger.info(
                "recharge_rejected",
                payer_id=payer_id,
                amount_cents=amount_cents,
                error_code=exc.code,
            )
            raise

        metrics.record_recharge("completed", amount_cents)
        logger.info(
            "recharge_completed",
            payer_id=payer_id,
            amount_cents=amount_cents,
            transaction_id=result.transaction_id,
        )
        return result

    async def _recharge_once(self, payer_id: str, amount_cents: int) -> RechargeResult:
        bank_id = self.settings.bank_account_id
        async with unit_of_work(self._session_factory) as db:
            await self.accounts.get(db, payer_id, kind=AccountKind.PAYER)
            bank_change, payer_change = await self.accounts.transfer(
                db, bank_id, payer_id, amount_cents, insufficient=BankInsufficientFunds
            )
            record = await self.ledger.append(
                db, payer_change, TransactionType.RECHARGE, counterparty_id=bank_id
            )

        return RechargeResult(
            payer_id=payer_id,
            amount_cents=amount_cents,
            payer_balance_cents=payer_change.after_cents,
            bank_balance_cents=bank_change.after_cents,
            transaction_id=record.id,
            recharged_at=record.created_at,
        )
