"""
Order store: persistence for orders and their payment codes.

Every status change is a compare-and-swap on ``status = 'pending'``; a
writer that loses the swap sees ``False`` and re-reads the winner's state.
"""
import secrets
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paycode.database.models import Order
from paycode.errors import Conflict, NotFound

PAYMENT_CODE_LENGTH = 8
_CODE_FLOOR = 10 ** (PAYMENT_CODE_LENGTH - 1)
_CODE_SPAN = 9 * _CODE_FLOOR


class OrderStatus(str, Enum):
    """Order states. Only PENDING is not terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentCodeTaken(Conflict):
    """Raised when a new order draws a code held by another pending order."""

    code = "PAYMENT_CODE_TAKEN"


def generate_payment_code() -> str:
    """Uniform 8-digit code without a leading zero."""
    return str(_CODE_FLOOR + secrets.randbelow(_CODE_SPAN))


def is_payment_code(value: str) -> bool:
    """Exactly 8 ASCII digits. Issued codes never start with 0, but lookups accept it."""
    return len(value) == PAYMENT_CODE_LENGTH and value.isascii() and value.isdigit()


class OrderStore:
    """Reads and conditional writes on the orders table."""

    async def insert(self, db: AsyncSession, order: Order) -> Order:
        """
        Persist a new pending order.

        Raises:
            PaymentCodeTaken: If another pending order holds the same code
        """
        db.add(order)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise PaymentCodeTaken(
                "Payment code already in use", {"payment_code": order.payment_code}
            ) from exc
        return order

    async def get(self, db: AsyncSession, order_id: str) -> Order:
        """
        Fetch an order by id, bypassing the identity map.

        Raises:
            NotFound: If no such order exists
        """
        order = await db.get(Order, order_id, populate_existing=True)
        if order is None:
            raise NotFound("Order not found", {"order_id": order_id})
        return order

    async def find_by_code(self, db: AsyncSession, payment_code: str) -> Optional[Order]:
        """
        Order holding ``payment_code``.

        The pending order wins; otherwise the most recently created one, so a
        payer scanning a stale code learns how that order ended.
        """
        stmt = (
            select(Order)
            .where(Order.payment_code == payment_code)
            .order_by(
                case((Order.status == OrderStatus.PENDING.value, 0), else_=1),
                Order.created_at.desc(),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    async def _swap(self, db: AsyncSession, order_id: str, *criteria, **values) -> bool:
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def mark_completed(
        self, db: AsyncSession, order_id: str, payment_id: str, now: datetime
    ) -> bool:
        """pending -> completed, only while the code is still live."""
        return await self._swap(
            db,
            order_id,
            Order.expires_at >= now,
            status=OrderStatus.COMPLETED.value,
            payment_id=payment_id,
            closed_at=now,
        )

    async def mark_expired(self, db: AsyncSession, order_id: str, now: datetime) -> bool:
        """pending -> expired, only once the expiry instant has passed."""
        return await self._swap(
            db,
            order_id,
            Order.expires_at < now,
            status=OrderStatus.EXPIRED.value,
            closed_at=now,
        )

    async def mark_cancelled(self, db: AsyncSession, order_id: str, now: datetime) -> bool:
        """pending -> cancelled, only while the code is still live."""
        return await self._swap(
            db,
            order_id,
            Order.expires_at >= now,
            status=OrderStatus.CANCELLED.value,
            closed_at=now,
        )
