"""
Error taxonomy for the payment-code ledger.

Every business-rule violation is reported with a specific subclass so the
API layer can map it to a structured response. Only ``PersistenceError``
stands for an unclassified failure.
"""
from typing import Any, Dict, Optional


class PaycodeError(Exception):
    """Base exception for all ledger and order errors."""

    code = "PAYCODE_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        """
        Initialize error.

        Args:
            message: Human-readable reason
            context: Structured details (ids, amounts, statuses)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for structured error responses."""
        return {"code": self.code, "message": self.message, "context": self.context}


class ValidationError(PaycodeError):
    """Raised when input shape or value is invalid. Never retried."""

    code = "VALIDATION_ERROR"


class InvalidAmount(ValidationError):
    """Raised when an amount is zero, negative or not representable in cents."""

    code = "INVALID_AMOUNT"


class PaymentNotRefundable(ValidationError):
    """Raised when refunding a payment that is not in completed state."""

    code = "PAYMENT_NOT_REFUNDABLE"


class NotFound(PaycodeError):
    """Raised for unknown account, order, payment id or payment code."""

    code = "NOT_FOUND"


class OrderNotPending(PaycodeError):
    """Raised when an order is completed, expired or cancelled."""

    code = "ORDER_NOT_PENDING"

    _REASONS = {
        "completed": "Order has already been paid",
        "expired": "Order has expired",
        "cancelled": "Order was cancelled",
    }

    def __init__(self, order_id: str, status: str):
        super().__init__(
            self._REASONS.get(status, f"Order is {status}"),
            {"order_id": order_id, "status": status},
        )
        self.order_id = order_id
        self.status = status


class PaymentExpired(PaycodeError):
    """Raised when the code expires between lookup and settlement."""

    code = "PAYMENT_EXPIRED"


class InsufficientFunds(PaycodeError):
    """Raised when a debit would drive a balance negative."""

    code = "INSUFFICIENT_FUNDS"
    label = "Insufficient funds"

    def __init__(self, account_id: str, balance_cents: int, required_cents: int):
        shortfall = required_cents - balance_cents
        super().__init__(
            f"{self.label}: short by {shortfall / 100:.2f}",
            {
                "account_id": account_id,
                "balance_cents": balance_cents,
                "required_cents": required_cents,
                "shortfall_cents": shortfall,
            },
        )
        self.account_id = account_id
        self.shortfall_cents = shortfall


class BankInsufficientFunds(InsufficientFunds):
    """Raised when the settlement bank cannot fund a recharge."""

    code = "BANK_INSUFFICIENT_FUNDS"
    label = "Settlement bank has insufficient funds"


class Conflict(PaycodeError):
    """Raised when a concurrent writer won the race on the same key."""

    code = "CONFLICT"


class PersistenceError(PaycodeError):
    """Raised when storage is unavailable. Fatal to the call, retryable by the caller."""

    code = "PERSISTENCE_ERROR"
