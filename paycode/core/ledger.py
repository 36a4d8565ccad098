"""
Transaction log: append-only record of every balance change.

Records are written inside the same unit of work as the balance update they
describe, so a record exists if and only if its balance change committed.
"""
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycode.core.accounts import BalanceChange
from paycode.core.clock import Clock, utcnow
from paycode.database.connection import unit_of_work
from paycode.database.models import Account, LedgerTransaction
from paycode.errors import NotFound, ValidationError

logger = structlog.get_logger(__name__)


class TransactionType(str, Enum):
    """Kinds of ledger records."""

    RECHARGE = "recharge"
    PAYMENT_DEBIT = "payment_debit"
    PAYMENT_CREDIT = "payment_credit"
    REFUND = "refund"


@dataclass
class HistoryPage:
    """One page of an account's history, oldest first."""

    items: List[LedgerTransaction] = field(default_factory=list)
    next_cursor: Optional[int] = None


class TransactionLog:
    """Append and read ledger records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
        default_page_size: int = 50,
        max_page_size: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    async def append(
        self,
        db: AsyncSession,
        change: BalanceChange,
        type: TransactionType,
        *,
        counterparty_id: Optional[str] = None,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> LedgerTransaction:
        """
        Record a balance change in the caller's transaction.

        The signed amount is derived from the change itself, which keeps
        balance_after = balance_before + amount true by construction.

        Args:
            db: Database session holding the balance update
            change: Balance before and after
            type: Record type
            counterparty_id: Other side of the movement
            order_id: Related order
            payment_id: Related payment

        Returns:
            LedgerTransaction: Flushed record with its monotonic id
        """
        record = LedgerTransaction(
            account_id=change.account_id,
            type=TransactionType(type).value,
            amount_cents=change.delta_cents,
            balance_before_cents=change.before_cents,
            balance_after_cents=change.after_cents,
            counterparty_id=counterparty_id,
            order_id=order_id,
            payment_id=payment_id,
            created_at=self._clock(),
        )
        db.add(record)
        await db.flush()
        logger.debug(
            "ledger_record_appended",
            transaction_id=record.id,
            account_id=record.account_id,
            type=record.type,
            amount_cents=record.amount_cents,
        )
        return record

    async def history(
        self,
        account_id: str,
        after: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> HistoryPage:
        """
        Records for ``account_id`` with id greater than ``after``, ascending.

        ``next_cursor`` is set when more records follow; passing it back as
        ``after`` resumes exactly where this page ended.

        Raises:
            NotFound: If the account does not exist
            ValidationError: If limit is outside 1..max_page_size
        """
        limit = limit or self.default_page_size
        if not 1 <= limit <= self.max_page_size:
            raise ValidationError(
                f"Page size must be between 1 and {self.max_page_size}", {"limit": limit}
            )

        async with unit_of_work(self._session_factory) as db:
            if await db.get(Account, account_id) is None:
                raise NotFound("Account not found", {"account_id": account_id})

            stmt = select(LedgerTransaction).where(LedgerTransaction.account_id == account_id)
            if after is not None:
                stmt = stmt.where(LedgerTransaction.id > after)
            stmt = stmt.order_by(LedgerTransaction.id).limit(limit + 1)
            records = list((await db.execute(stmt)).scalars().all())

        if len(records) > limit:
            records = records[:limit]
            return HistoryPage(items=records, next_cursor=records[-1].id)
        return HistoryPage(items=records)

    async def iter_history(
        self,
        account_id: str,
        after: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[LedgerTransaction]:
        """Walk an account's entire history page by page."""
        cursor = after
        while True:
            page = await self.history(account_id, after=cursor, limit=page_size)
            for record in page.items:
                yield record
            if page.next_cursor is None:
                return
            cursor = page.next_cursor
