"""SQLAlchemy database models for the payment-code ledger."""
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns
LedgerId = BigInteger().with_variant(Integer(), "sqlite")


def generate_id() -> str:
    """Opaque 32-character hex identifier."""
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Account(Base):
    """
    Wallet balances for payers, merchants and the settlement bank.

    Balances are integer cents and can never go negative. Rows are created at
    registration (payers, merchants) or bootstrap (bank) and never deleted.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    opening_balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("balance_cents >= 0", name="non_negative_balance"),
        CheckConstraint("opening_balance_cents >= 0", name="non_negative_opening_balance"),
        CheckConstraint("kind IN ('payer', 'merchant', 'bank')", name="valid_account_kind"),
    )

    def __repr__(self) -> str:
        """String representation of Account."""
        return f"<Account(id={self.id}, kind={self.kind}, balance={self.balance_cents})>"


class Order(Base):
    """
    Merchant orders payable by 8-digit code.

    A code is held only while the order is pending, so the unique index on
    payment_code is partial. Retained indefinitely for audit.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    payment_code: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    merchant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False, index=True
    )
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_order_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'expired', 'cancelled')",
            name="valid_order_status",
        ),
        Index(
            "uq_orders_pending_code",
            "payment_code",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, code={self.payment_code}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class Payment(Base):
    """
    Settled payments.

    Exactly one row per completed order, written in the same transaction that
    completes the order.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_id)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False, unique=True
    )
    payer_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False, index=True
    )
    merchant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False, index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_payment_amount"),
        CheckConstraint("status IN ('completed', 'refunded')", name="valid_payment_status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class LedgerTransaction(Base):
    """
    Append-only ledger of balance-affecting events.

    Immutable once written. The id is monotonic and doubles as the
    pagination cursor for account history.
    """

    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(24), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    counterparty_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "balance_after_cents = balance_before_cents + amount_cents",
            name="balanced_entry",
        ),
        CheckConstraint("balance_after_cents >= 0", name="non_negative_balance_after"),
        CheckConstraint(
            "type IN ('recharge', 'payment_debit', 'payment_credit', 'refund')",
            name="valid_transaction_type",
        ),
        Index("idx_ledger_account_id", "account_id", "id"),
        Index("idx_ledger_counterparty", "counterparty_id"),
    )

    def __repr__(self) -> str:
        """String representation of LedgerTransaction."""
        return (
            f"<LedgerTransaction(id={self.id}, account_id={self.account_id}, "
            f"type={self.type}, amount={self.amount_cents})>"
        )
