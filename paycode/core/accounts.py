"""
Account store: balances for payers, merchants and the settlement bank.

Balance changes are single conditional UPDATE statements, so two
transactions racing on one account can never both pass the funds check.
All methods take the caller's session and never commit; the enclosing
unit of work decides.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Type

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paycode.core.clock import Clock, utcnow
from paycode.core.money import require_positive
from paycode.database.models import Account, generate_id
from paycode.errors import (
    Conflict,
    InsufficientFunds,
    InvalidAmount,
    NotFound,
    ValidationError,
)

logger = structlog.get_logger(__name__)


class AccountKind(str, Enum):
    """Account roles."""

    PAYER = "payer"
    MERCHANT = "merchant"
    BANK = "bank"


@dataclass(frozen=True)
class BalanceChange:
    """Balance of one account before and after a single debit or credit."""

    account_id: str
    before_cents: int
    after_cents: int

    @property
    def delta_cents(self) -> int:
        return self.after_cents - self.before_cents


class AccountStore:
    """Reads and conditional writes on the accounts table."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    async def open_account(
        self,
        db: AsyncSession,
        kind: AccountKind | str,
        display_name: str,
        email: Optional[str] = None,
        opening_balance_cents: int = 0,
        account_id: Optional[str] = None,
    ) -> Account:
        """
        Register a new account.

        Args:
            db: Database session
            kind: payer, merchant or bank
            display_name: Name shown to counterparties
            email: Contact address
            opening_balance_cents: Balance the account starts with
            account_id: Explicit id, generated when omitted

        Returns:
            Account: The new row, flushed

        Raises:
            ValidationError: If kind or display name is invalid
            InvalidAmount: If the opening balance is negative
        """
        try:
            kind = AccountKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown account kind: {kind}", {"kind": str(kind)}) from exc
        if not display_name or not display_name.strip():
            raise ValidationError("Display name is required")
        if opening_balance_cents < 0:
            raise InvalidAmount(
                "Opening balance cannot be negative",
                {"opening_balance_cents": opening_balance_cents},
            )

        now = self._clock()
        account = Account(
            id=account_id or generate_id(),
            kind=kind.value,
            display_name=display_name.strip(),
            email=email,
            balance_cents=opening_balance_cents,
            opening_balance_cents=opening_balance_cents,
            version=0,
            created_at=now,
            updated_at=now,
        )
        db.add(account)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise Conflict(
                "Account id already exists", {"account_id": account.id}
            ) from exc

        logger.info("account_opened", account_id=account.id, kind=account.kind)
        return account

    async def ensure_bank(
        self,
        db: AsyncSession,
        account_id: str,
        display_name: str,
        initial_balance_cents: int,
    ) -> Account:
        """Return the bank account, creating and funding it on first run."""
        existing = await db.get(Account, account_id)
        if existing is not None:
            if existing.kind != AccountKind.BANK.value:
                raise ValidationError(
                    f"Account {account_id} exists but is not a bank",
                    {"account_id": account_id, "kind": existing.kind},
                )
            return existing

        bank = await self.open_account(
            db,
            AccountKind.BANK,
            display_name,
            opening_balance_cents=initial_balance_cents,
            account_id=account_id,
        )
        logger.info("bank_funded", account_id=bank.id, balance_cents=initial_balance_cents)
        return bank

    async def get(
        self,
        db: AsyncSession,
        account_id: str,
        kind: Optional[AccountKind] = None,
    ) -> Account:
        """
        Fetch an account, optionally requiring a role.

        Raises:
            NotFound: If the account is missing or has a different kind
        """
        account = await db.get(Account, account_id, populate_existing=True)
        if account is None or (kind is not None and account.kind != kind.value):
            label = kind.value.capitalize() if kind else "Account"
            raise NotFound(f"{label} not found", {"account_id": account_id})
        return account

    async def get_balance(self, db: AsyncSession, account_id: str) -> int:
        """Current balance in cents."""
        return (await self.get(db, account_id)).balance_cents

    async def debit(
        self,
        db: AsyncSession,
        account_id: str,
        amount_cents: int,
        insufficient: Type[InsufficientFunds] = InsufficientFunds,
    ) -> BalanceChange:
        """
        Subtract ``amount_cents`` if and only if the balance covers it.

        Args:
            db: Database session
            account_id: Account to debit
            amount_cents: Positive amount
            insufficient: Error class raised when funds are short

        Returns:
            BalanceChange: Balance before and after

        Raises:
            NotFound: If the account does not exist
            InsufficientFunds: If the balance is below the amount
        """
        require_positive(amount_cents)
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.balance_cents >= amount_cents)
            .values(
                balance_cents=Account.balance_cents - amount_cents,
                version=Account.version + 1,
                updated_at=self._clock(),
            )
            .returning(Account.balance_cents)
            .execution_options(synchronize_session=False)
        )
        after = (await db.execute(stmt)).scalar_one_or_none()
        if after is None:
            account = await self.get(db, account_id)
            raise insufficient(account_id, account.balance_cents, amount_cents)
        return BalanceChange(account_id, after + amount_cents, after)

    async def credit(self, db: AsyncSession, account_id: str, amount_cents: int) -> BalanceChange:
        """
        Add ``amount_cents`` to an account.

        Raises:
            NotFound: If the account does not exist
        """
        require_positive(amount_cents)
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(
                balance_cents=Account.balance_cents + amount_cents,
                version=Account.version + 1,
                updated_at=self._clock(),
            )
            .returning(Account.balance_cents)
            .execution_options(synchronize_session=False)
        )
        after = (await db.execute(stmt)).scalar_one_or_none()
        if after is None:
            raise NotFound("Account not found", {"account_id": account_id})
        return BalanceChange(account_id, after - amount_cents, after)

    async def transfer(
        self,
        db: AsyncSession,
        source_id: str,
        target_id: str,
        amount_cents: int,
        insufficient: Type[InsufficientFunds] = InsufficientFunds,
    ) -> Tuple[BalanceChange, BalanceChange]:
        """
        Move funds between two accounts inside the caller's transaction.

        Rows are updated in ascending id order so concurrent transfers over
        the same pair lock them in the same order.

        Returns:
            Tuple[BalanceChange, BalanceChange]: (source debit, target credit)
        """
        if source_id == target_id:
            raise ValidationError(
                "Cannot transfer to the same account", {"account_id": source_id}
            )
        if source_id < target_id:
            debit = await self.debit(db, source_id, amount_cents, insufficient)
            credit = await self.credit(db, target_id, amount_cents)
        else:
            credit = await self.credit(db, target_id, amount_cents)
            debit = await self.debit(db, source_id, amount_cents, insufficient)
        return debit, credit
