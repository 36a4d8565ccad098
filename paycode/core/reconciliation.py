"""
Ledger reconciliation.

Replays the transaction log against stored balances:
- payer and merchant: records chain from the opening balance and the last
  balance_after equals the stored balance
- bank: opening balance minus every recharge it funded equals the stored
  balance

Best run while writes are quiet. A settlement committing between the two
reads of one account shows up as a transient mismatch; re-running clears it.
"""
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycode.config import Settings, get_settings
from paycode.core.accounts import AccountKind
from paycode.core.clock import Clock, utcnow
from paycode.core.ledger import TransactionType
from paycode.database.connection import unit_of_work
from paycode.database.models import Account, LedgerTransaction
from paycode.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class AccountDiscrepancy:
    """One account whose stored balance disagrees with its ledger."""

    account_id: str
    kind: str
    expected_cents: int
    actual_cents: int
    reason: str
    transaction_id: Optional[int] = None


@dataclass
class ReconciliationReport:
    """Result of one reconciliation run."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    accounts_checked: int = 0
    transactions_checked: int = 0
    total_balance_cents: int = 0
    total_opening_cents: int = 0
    discrepancies: List[AccountDiscrepancy] = field(default_factory=list)

    @property
    def is_balanced(self) -> bool:
        return not self.discrepancies and self.total_balance_cents == self.total_opening_cents

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["is_balanced"] = self.is_balanced
        return data


class LedgerReconciler:
    """Checks that balances and the transaction log tell the same story."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self._clock = clock

    async def reconcile(self) -> ReconciliationReport:
        """
        Run reconciliation over every account.

        Returns:
            ReconciliationReport: Totals and any discrepancies found
        """
        started = time.monotonic()
        report = ReconciliationReport(started_at=self._clock())

        async with unit_of_work(self._session_factory) as db:
            accounts = (await db.execute(select(Account).order_by(Account.id))).scalars().all()
            for account in accounts:
                report.accounts_checked += 1
                report.total_balance_cents += account.balance_cents
                report.total_opening_cents += account.opening_balance_cents
                if account.kind == AccountKind.BANK.value:
                    await self._check_bank(db, account, report)
                else:
                    await self._check_wallet(db, account, report)

        report.completed_at = self._clock()
        metrics.set_reconciliation_metrics(len(report.discrepancies), time.monotonic() - started)

        if report.is_balanced:
            logger.info(
                "reconciliation_balanced",
                accounts_checked=report.accounts_checked,
                transactions_checked=report.transactions_checked,
            )
        else:
            logger.error(
                "reconciliation_discrepancies_found",
                count=len(report.discrepancies),
                total_balance_cents=report.total_balance_cents,
                total_opening_cents=report.total_opening_cents,
                discrepancies=[asdict(d) for d in report.discrepancies],
            )
        return report

    async def _check_wallet(
        self, db: AsyncSession, account: Account, report: ReconciliationReport
    ) -> None:
        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.account_id == account.id)
            .order_by(LedgerTransaction.id)
        )
        running = account.opening_balance_cents
        for record in (await db.execute(stmt)).scalars():
            report.transactions_checked += 1
            if record.balance_before_cents != running:
                report.discrepancies.append(
                    AccountDiscrepancy(
                        account_id=account.id,
                        kind=account.kind,
                        expected_cents=running,
                        actual_cents=record.balance_before_cents,
                        reason="broken_chain",
                        transaction_id=record.id,
                    )
                )
            running = record.balance_after_cents

        if running != account.balance_cents:
            report.discrepancies.append(
                AccountDiscrepancy(
                    account_id=account.id,
                    kind=account.kind,
                    expected_cents=running,
                    actual_cents=account.balance_cents,
                    reason="balance_mismatch",
                )
            )

    async def _check_bank(
        self, db: AsyncSession, account: Account, report: ReconciliationReport
    ) -> None:
        funded = await db.scalar(
            select(func.coalesce(func.sum(LedgerTransaction.amount_cents), 0)).where(
                LedgerTransaction.type == TransactionType.RECHARGE.value,
                LedgerTransaction.counterparty_id == account.id,
            )
        )
        expected = account.opening_balance_cents - int(funded)
        if expected != account.balance_cents:
            report.discrepancies.append(
                AccountDiscrepancy(
                    account_id=account.id,
                    kind=account.kind,
                    expected_cents=expected,
                    actual_cents=account.balance_cents,
                    reason="balance_mismatch",
                )
            )
