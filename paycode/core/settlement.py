"""
Settlement engine: pays a pending order from a payer's wallet.

A settlement is one transaction that completes the order, debits the payer,
credits the merchant, writes both ledger records and the payment row. The
order swap runs first, so of any number of concurrent attempts on one code
at most one gets past it; the losers roll back with nothing written.
"""
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycode.config import Settings, get_settings
from paycode.core.accounts import AccountKind, AccountStore
from paycode.core.clock import Clock, utcnow
from paycode.core.ledger import TransactionLog, TransactionType
from paycode.core.lifecycle import OrderLifecycle
from paycode.core.locking import KeyedLock, conflict_retrying
from paycode.core.orders import OrderStatus, OrderStore
from paycode.database.connection import unit_of_work
from paycode.database.models import Order, Payment, generate_id
from paycode.errors import (
    InsufficientFunds,
    NotFound,
    OrderNotPending,
    PaycodeError,
    PaymentExpired,
    PaymentNotRefundable,
    ValidationError,
)
from paycode.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_METHOD_LENGTH = 32


class PaymentStatus:
    COMPLETED = "completed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of a successful settlement."""

    payment_id: str
    order_id: str
    amount_cents: int
    payer_balance_cents: int
    merchant_balance_cents: int
    status: str
    processed_at: datetime


@dataclass(frozen=True)
class RefundResult:
    """Outcome of a successful refund."""

    payment_id: str
    order_id: str
    amount_cents: int
    payer_balance_cents: int
    merchant_balance_cents: int
    refunded_at: datetime


class SettlementEngine:
    """
    Settles orders, refunds payments and reads payment records.

    Concurrency:
    - ``order:<code>`` is held for the full lookup-to-commit sequence
    - the order swap and conditional debit decide every race that the lock
      does not cover (other processes, other codes from the same payer)
    - a unit that lost to lock contention in storage is retried with backoff
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        accounts: AccountStore,
        ledger: TransactionLog,
        orders: OrderStore,
        lifecycle: OrderLifecycle,
        locks: KeyedLock,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.accounts = accounts
        self.ledger = ledger
        self.orders = orders
        self.lifecycle = lifecycle
        self.locks = locks
        self.settings = settings or get_settings()
        self._clock = clock

    async def settle(self, payment_code: str, payer_id: str, method: str) -> SettlementResult:
        """
        Pay the order behind ``payment_code`` from ``payer_id``.

        Args:
            payment_code: 8-digit code shown by the merchant
            payer_id: Paying account
            method: Payment method label recorded on the payment

        Returns:
            SettlementResult: Payment id and new payer balance

        Raises:
            ValidationError: If method or code is malformed
            NotFound: If the code or payer is unknown
            OrderNotPending: If the order is no longer pending
            PaymentExpired: If the code expired before settlement committed
            InsufficientFunds: If the payer cannot cover the amount
            Conflict: If contention persisted past the retry budget
        """
        if not method or len(method) > MAX_METHOD_LENGTH:
            raise ValidationError(
                f"Payment method must be 1-{MAX_METHOD_LENGTH} characters", {"method": method}
            )

        started = time.monotonic()
        log = logger.bind(payment_code=payment_code, payer_id=payer_id)
        try:
            async with self.locks.hold(f"order:{payment_code}"):
                async for attempt in conflict_retrying(self.settings, "settle"):
                    with attempt:
                        result = await self._settle_once(payment_code, payer_id, method)
        except PaycodeError as exc:
            metrics.record_settlement(exc.code.lower(), time.monotonic() - started)
            log.info("settlement_rejected", error_code=exc.code, reason=exc.message)
            raise

        metrics.record_settlement(
            OrderStatus.COMPLETED.value, time.monotonic() - started, result.amount_cents
        )
        log.info(
            "settlement_completed",
            payment_id=result.payment_id,
            order_id=result.order_id,
            amount_cents=result.amount_cents,
        )
        return result

    async def _settle_once(self, payment_code: str, payer_id: str, method: str) -> SettlementResult:
        order = await self.lifecycle.lookup_by_code(payment_code)

        if order.expires_at < self._clock():
            await self.lifecycle.expire(order.id)
            raise PaymentExpired(
                "Payment code has expired", {"order_id": order.id, "payment_code": payment_code}
            )

        # Fail fast without opening a write transaction
        async with unit_of_work(self._session_factory) as db:
            payer = await self.accounts.get(db, payer_id, kind=AccountKind.PAYER)
        if payer.balance_cents < order.amount_cents:
            raise InsufficientFunds(payer_id, payer.balance_cents, order.amount_cents)

        payment_id = generate_id()
        processed_at = self._clock()
        async with unit_of_work(self._session_factory) as db:
            completed = await self.orders.mark_completed(db, order.id, payment_id, processed_at)
            if completed:
                result = await self._transfer_for_order(
                    db, order, payer_id, payment_id, method, processed_at
                )
            else:
                current = await self.orders.get(db, order.id)
                if current.status != OrderStatus.PENDING.value:
                    raise OrderNotPending(current.id, current.status)
                # Still pending means the deadline passed since lookup; commit the expiry
                await self.orders.mark_expired(db, order.id, processed_at)

        if not completed:
            metrics.record_order_transition(OrderStatus.EXPIRED.value)
            raise PaymentExpired(
                "Payment code has expired", {"order_id": order.id, "payment_code": payment_code}
            )
        metrics.record_order_transition(OrderStatus.COMPLETED.value)
        return result

    async def _transfer_for_order(
        self,
        db: AsyncSession,
        order: Order,
        payer_id: str,
        payment_id: str,
        method: str,
        processed_at: datetime,
    ) -> SettlementResult:
        debit, credit = await self.accounts.transfer(
            db, payer_id, order.merchant_id, order.amount_cents
        )
        await self.ledger.append(
            db,
            debit,
            TransactionType.PAYMENT_DEBIT,
            counterparty_id=order.merchant_id,
            order_id=order.id,
            payment_id=payment_id,
        )
        await self.ledger.append(
            db,
            credit,
            TransactionType.PAYMENT_CREDIT,
            counterparty_id=payer_id,
            order_id=order.id,
            payment_id=payment_id,
        )
        db.add(
            Payment(
                id=payment_id,
                order_id=order.id,
                payer_id=payer_id,
                merchant_id=order.merchant_id,
                amount_cents=order.amount_cents,
                method=method,
                status=PaymentStatus.COMPLETED,
                processed_at=processed_at,
            )
        )
        await db.flush()
        return SettlementResult(
            payment_id=payment_id,
            order_id=order.id,
            amount_cents=order.amount_cents,
            payer_balance_cents=debit.after_cents,
            merchant_balance_cents=credit.after_cents,
            status=PaymentStatus.COMPLETED,
            processed_at=processed_at,
        )

    async def refund(self, payment_id: str) -> RefundResult:
        """
        Return a completed payment to the payer in full.

        The order keeps its completed status; the payment moves to refunded
        and two ``refund`` records are written.

        Raises:
            NotFound: If the payment is unknown
            PaymentNotRefundable: If the payment was already refunded
            InsufficientFunds: If the merchant balance no longer covers it
        """
        try:
            async with self.locks.hold(f"payment:{payment_id}"):
                async for attempt in conflict_retrying(self.settings, "refund"):
                    with attempt:
                        result = await self._refund_once(payment_id)
        except PaycodeError as exc:
            metrics.record_refund(exc.code.lower())
            raise

        metrics.record_refund(PaymentStatus.REFUNDED)
        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            order_id=result.order_id,
            amount_cents=result.amount_cents,
        )
        return result

    async def _refund_once(self, payment_id: str) -> RefundResult:
        refunded_at = self._clock()
        async with unit_of_work(self._session_factory) as db:
            payment = await self._load_payment(db, payment_id)
            stmt = (
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.COMPLETED)
                .values(status=PaymentStatus.REFUNDED, refunded_at=refunded_at)
                .execution_options(synchronize_session=False)
            )
            if (await db.execute(stmt)).rowcount != 1:
                raise PaymentNotRefundable(
                    "Payment has already been refunded",
                    {"payment_id": payment_id, "status": payment.status},
                )

            debit, credit = await self.accounts.transfer(
                db, payment.merchant_id, payment.payer_id, payment.amount_cents
            )
            for change, counterparty_id in (
                (debit, payment.payer_id),
                (credit, payment.merchant_id),
            ):
                await self.ledger.append(
                    db,
                    change,
                    TransactionType.REFUND,
                    counterparty_id=counterparty_id,
                    order_id=payment.order_id,
                    payment_id=payment_id,
                )

        return RefundResult(
            payment_id=payment_id,
            order_id=payment.order_id,
            amount_cents=payment.amount_cents,
            payer_balance_cents=credit.after_cents,
            merchant_balance_cents=debit.after_cents,
            refunded_at=refunded_at,
        )

    async def _load_payment(self, db: AsyncSession, payment_id: str) -> Payment:
        payment = await db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFound("Payment not found", {"payment_id": payment_id})
        return payment

    async def get_payment(self, payment_id: str) -> Payment:
        """
        Fetch a payment record.

        Raises:
            NotFound: If the payment is unknown
        """
        async with unit_of_work(self._session_factory) as db:
            return await self._load_payment(db, payment_id)
