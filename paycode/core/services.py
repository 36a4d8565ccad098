"""Wiring of stores and engines over one session factory."""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycode.config import Settings, get_settings
from paycode.core.accounts import AccountStore
from paycode.core.clock import Clock, utcnow
from paycode.core.ledger import TransactionLog
from paycode.core.lifecycle import OrderLifecycle
from paycode.core.locking import KeyedLock, build_lock
from paycode.core.orders import OrderStore
from paycode.core.recharge import RechargeEngine
from paycode.core.reconciliation import LedgerReconciler
from paycode.core.settlement import SettlementEngine
from paycode.database.connection import unit_of_work
from paycode.database.models import Account

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the API layer calls into."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    locks: KeyedLock
    accounts: AccountStore
    ledger: TransactionLog
    orders: OrderStore
    lifecycle: OrderLifecycle
    settlement: SettlementEngine
    recharge: RechargeEngine
    reconciler: LedgerReconciler

    async def bootstrap(self) -> Account:
        """Create and fund the settlement bank if it does not exist yet."""
        async with unit_of_work(self.session_factory) as db:
            bank = await self.accounts.ensure_bank(
                db,
                self.settings.bank_account_id,
                self.settings.bank_display_name,
                self.settings.bank_initial_balance_cents,
            )
        logger.info("bank_ready", account_id=bank.id, balance_cents=bank.balance_cents)
        return bank


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    locks: Optional[KeyedLock] = None,
    clock: Clock = utcnow,
) -> Services:
    """
    Build the service graph.

    Args:
        session_factory: Session factory for the ledger database
        settings: Application settings, defaults to the cached instance
        locks: Keyed lock backend, defaults to the configured one
        clock: Time source shared by every component

    Returns:
        Services: Wired stores and engines
    """
    settings = settings or get_settings()
    locks = locks or build_lock(settings)
    accounts = AccountStore(clock=clock)
    ledger = TransactionLog(
        session_factory,
        clock=clock,
        default_page_size=settings.history_page_size,
        max_page_size=settings.history_max_page_size,
    )
    orders = OrderStore()
    lifecycle = OrderLifecycle(session_factory, accounts, orders, settings=settings, clock=clock)
    return Services(
        settings=settings,
        session_factory=session_factory,
        locks=locks,
        accounts=accounts,
        ledger=ledger,
        orders=orders,
        lifecycle=lifecycle,
        settlement=SettlementEngine(
            session_factory,
            accounts,
            ledger,
            orders,
            lifecycle,
            locks,
            settings=settings,
            clock=clock,
        ),
        recharge=RechargeEngine(session_factory, accounts, ledger, settings=settings, clock=clock),
        reconciler=LedgerReconciler(session_factory, settings=settings, clock=clock),
    )
