"""
Order lifecycle: creation, code lookup, lazy expiry and cancellation.

There is no background sweeper. A pending order whose expiry has passed is
moved to ``expired`` by whichever read touches it first, and that
transition commits even though the read then reports the order as not
pending.
"""
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycode.config import Settings, get_settings
from paycode.core.accounts import AccountKind, AccountStore
from paycode.core.clock import Clock, utcnow
from paycode.core.money import require_positive
from paycode.core.orders import (
    OrderStatus,
    OrderStore,
    PaymentCodeTaken,
    generate_payment_code,
    is_payment_code,
)
from paycode.database.connection import unit_of_work
from paycode.database.models import Order, generate_id
from paycode.errors import Conflict, NotFound, OrderNotPending, ValidationError
from paycode.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderLifecycle:
    """
    Creates orders and moves them out of pending.

    Example:
        order = await lifecycle.create("m_1", 2500)
        order = await lifecycle.lookup_by_code(order.payment_code)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        accounts: AccountStore,
        orders: OrderStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        code_factory: Callable[[], str] = generate_payment_code,
    ) -> None:
        self._session_factory = session_factory
        self.accounts = accounts
        self.orders = orders
        self.settings = settings or get_settings()
        self._clock = clock
        self._code_factory = code_factory

    async def create(
        self,
        merchant_id: str,
        amount_cents: int,
        description: Optional[str] = None,
        merchant_name: Optional[str] = None,
    ) -> Order:
        """
        Open a pending order with a fresh payment code.

        Each code draw runs in its own transaction; a draw that collides with
        a pending order is discarded and a new code is tried.

        Args:
            merchant_id: Merchant receiving the payment
            amount_cents: Positive amount
            description: Shown to the payer, defaults to "Payment"
            merchant_name: Shown to the payer, defaults to the merchant's name

        Returns:
            Order: The pending order

        Raises:
            InvalidAmount: If amount is not positive
            NotFound: If the merchant does not exist
            Conflict: If no free code was found within the attempt budget
        """
        require_positive(amount_cents)
        ttl = timedelta(seconds=self.settings.order_ttl_seconds)

        for attempt in range(1, self.settings.payment_code_max_attempts + 1):
            code = self._code_factory()
            try:
                async with unit_of_work(self._session_factory) as db:
                    merchant = await self.accounts.get(db, merchant_id, kind=AccountKind.MERCHANT)
                    now = self._clock()
                    order = await self.orders.insert(
                        db,
                        Order(
                            id=generate_id(),
                            payment_code=code,
                            merchant_id=merchant.id,
                            merchant_name=merchant_name or merchant.display_name,
                            amount_cents=amount_cents,
                            description=description or self.settings.default_order_description,
                            status=OrderStatus.PENDING.value,
                            created_at=now,
                            expires_at=now + ttl,
                        ),
                    )
            except PaymentCodeTaken:
                metrics.record_code_collision()
                logger.warning("payment_code_collision", attempt=attempt)
                continue

            metrics.record_order_created()
            logger.info(
                "order_created",
                order_id=order.id,
                merchant_id=merchant_id,
                amount_cents=amount_cents,
                expires_at=order.expires_at.isoformat(),
            )
            return order

        raise Conflict(
            "Could not allocate a free payment code",
            {"attempts": self.settings.payment_code_max_attempts},
        )

    async def _expire_if_due(self, db: AsyncSession, order: Order, now: datetime) -> Order:
        if order.status != OrderStatus.PENDING.value or order.expires_at >= now:
            return order
        if await self.orders.mark_expired(db, order.id, now):
            metrics.record_order_transition(OrderStatus.EXPIRED.value)
            logger.info("order_expired", order_id=order.id, payment_code=order.payment_code)
        return await self.orders.get(db, order.id)

    async def lookup_by_code(self, payment_code: str) -> Order:
        """
        Resolve a payment code to its pending order.

        Raises:
            ValidationError: If the code is not 8 digits
            NotFound: If no order ever held the code
            OrderNotPending: If the order is completed, cancelled or expired
        """
        if not is_payment_code(payment_code):
            raise ValidationError(
                "Payment code must be 8 digits", {"payment_code": payment_code}
            )

        async with unit_of_work(self._session_factory) as db:
            order = await self.orders.find_by_code(db, payment_code)
            if order is None:
                raise NotFound("Invalid payment code", {"payment_code": payment_code})
            order = await self._expire_if_due(db, order, self._clock())

        if order.status != OrderStatus.PENDING.value:
            raise OrderNotPending(order.id, order.status)
        return order

    async def status(self, order_id: str) -> Order:
        """Current order state, expiring it first if due."""
        async with unit_of_work(self._session_factory) as db:
            order = await self.orders.get(db, order_id)
            return await self._expire_if_due(db, order, self._clock())

    async def expire(self, order_id: str) -> Order:
        """Apply expiry to an order whose deadline has passed."""
        return await self.status(order_id)

    async def cancel(self, order_id: str) -> Order:
        """
        Cancel a pending order.

        Raises:
            NotFound: If no such order exists
            OrderNotPending: If the order already left pending
        """
        cancelled = False
        async with unit_of_work(self._session_factory) as db:
            now = self._clock()
            order = await self._expire_if_due(db, await self.orders.get(db, order_id), now)
            if order.status == OrderStatus.PENDING.value:
                cancelled = await self.orders.mark_cancelled(db, order_id, now)
                order = await self.orders.get(db, order_id)

        if not cancelled:
            raise OrderNotPending(order.id, order.status)
        metrics.record_order_transition(OrderStatus.CANCELLED.value)
        logger.info("order_cancelled", order_id=order_id)
        return order
