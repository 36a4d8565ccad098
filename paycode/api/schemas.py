"""
Pydantic schemas for API request/response models.

Amounts cross the API as two-place decimals and are stored as integer cents.
Timestamps are rendered as ISO 8601 in UTC.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, PlainSerializer

from paycode.core.money import from_cents

Money = Annotated[Decimal, Field(max_digits=14, decimal_places=2)]

UtcDatetime = Annotated[
    datetime,
    PlainSerializer(
        lambda value: value.replace(tzinfo=timezone.utc).isoformat(), return_type=str
    ),
]


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    merchant_id: str = Field(..., min_length=1, description="Merchant account id")
    amount: Money = Field(..., description="Order amount (e.g. 25.00)")
    description: Optional[str] = Field(
        default=None, max_length=500, description="Shown to the payer"
    )
    merchant_name: Optional[str] = Field(
        default=None, max_length=255, description="Overrides the merchant's display name"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"merchant_id": "m_coffee", "amount": "25.00", "description": "Flat white"}
            ]
        }
    }


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    order_id: str = Field(..., description="Order ID")
    payment_code: str = Field(..., description="8-digit code to show the payer")
    amount: Money = Field(..., description="Order amount")
    expires_at: UtcDatetime = Field(..., description="Code expiry")

    @classmethod
    def from_order(cls, order: Any) -> "CreateOrderResponse":
        return cls(
            order_id=order.id,
            payment_code=order.payment_code,
            amount=from_cents(order.amount_cents),
            expires_at=order.expires_at,
        )


class OrderStatusResponse(BaseModel):
    """Response schema for order status."""

    order_id: str = Field(..., description="Order ID")
    status: str = Field(..., description="pending, completed, expired or cancelled")
    amount: Money = Field(..., description="Order amount")
    payment_id: Optional[str] = Field(default=None, description="Set once completed")
    created_at: UtcDatetime
    expires_at: UtcDatetime
    closed_at: Optional[UtcDatetime] = None

    @classmethod
    def from_order(cls, order: Any) -> "OrderStatusResponse":
        return cls(
            order_id=order.id,
            status=order.status,
            amount=from_cents(order.amount_cents),
            payment_id=order.payment_id,
            created_at=order.created_at,
            expires_at=order.expires_at,
            closed_at=order.closed_at,
        )


class PaymentCodeQueryResponse(BaseModel):
    """What the payer sees after entering a code."""

    order_id: str
    merchant_id: str
    merchant_name: str
    amount: Money
    description: str
    expires_at: UtcDatetime

    @classmethod
    def from_order(cls, order: Any) -> "PaymentCodeQueryResponse":
        return cls(
            order_id=order.id,
            merchant_id=order.merchant_id,
            merchant_name=order.merchant_name,
            amount=from_cents(order.amount_cents),
            description=order.description,
            expires_at=order.expires_at,
        )


class ProcessPaymentRequest(BaseModel):
    """Request schema for settling a payment code."""

    payment_code: str = Field(..., description="8-digit payment code")
    payer_id: str = Field(..., min_length=1, description="Paying account id")
    payment_method: str = Field(default="wallet", description="Payment method label")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"payment_code": "48213907", "payer_id": "p_alice", "payment_method": "wallet"}
            ]
        }
    }


class ProcessPaymentResponse(BaseModel):
    """Response schema for a settled payment."""

    payment_id: str
    order_id: str
    amount: Money
    payer_new_balance: Money
    status: str
    processed_at: UtcDatetime


class PaymentResponse(BaseModel):
    """Response schema for payment detail."""

    payment_id: str
    order_id: str
    payer_id: str
    merchant_id: str
    amount: Money
    method: str
    status: str
    processed_at: UtcDatetime
    refunded_at: Optional[UtcDatetime] = None

    @classmethod
    def from_payment(cls, payment: Any) -> "PaymentResponse":
        return cls(
            payment_id=payment.id,
            order_id=payment.order_id,
            payer_id=payment.payer_id,
            merchant_id=payment.merchant_id,
            amount=from_cents(payment.amount_cents),
            method=payment.method,
            status=payment.status,
            processed_at=payment.processed_at,
            refunded_at=payment.refunded_at,
        )


class RefundResponse(BaseModel):
    """Response schema for refund."""

    payment_id: str
    order_id: str
    amount: Money
    payer_new_balance: Money
    merchant_new_balance: Money
    status: Literal["refunded"] = "refunded"
    refunded_at: UtcDatetime


class OpenAccountRequest(BaseModel):
    """Request schema for registering a payer or merchant."""

    kind: Literal["payer", "merchant"] = Field(..., description="Account role")
    display_name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    account_id: Optional[str] = Field(
        default=None, min_length=1, max_length=64, description="Explicit id, generated if omitted"
    )


class AccountResponse(BaseModel):
    """Response schema for an account and its balance."""

    account_id: str
    kind: str
    display_name: str
    email: Optional[str] = None
    balance: Money
    created_at: UtcDatetime

    @classmethod
    def from_account(cls, account: Any) -> "AccountResponse":
        return cls(
            account_id=account.id,
            kind=account.kind,
            display_name=account.display_name,
            email=account.email,
            balance=from_cents(account.balance_cents),
            created_at=account.created_at,
        )


class RechargeRequest(BaseModel):
    """Request schema for a wallet top-up."""

    amount: Money = Field(..., description="Amount to add (e.g. 50.00)")


class RechargeResponse(BaseModel):
    """Response schema for a wallet top-up."""

    payer_id: str
    amount_added: Money
    payer_new_balance: Money
    bank_balance: Money
    transaction_id: int


class TransactionResponse(BaseModel):
    """One ledger record."""

    transaction_id: int
    account_id: str
    type: str
    amount: Money
    balance_before: Money
    balance_after: Money
    counterparty_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: UtcDatetime

    @classmethod
    def from_record(cls, record: Any) -> "TransactionResponse":
        return cls(
            transaction_id=record.id,
            account_id=record.account_id,
            type=record.type,
            amount=from_cents(record.amount_cents),
            balance_before=from_cents(record.balance_before_cents),
            balance_after=from_cents(record.balance_after_cents),
            counterparty_id=record.counterparty_id,
            order_id=record.order_id,
            payment_id=record.payment_id,
            created_at=record.created_at,
        )


class TransactionHistoryResponse(BaseModel):
    """A page of account history."""

    account_id: str
    transactions: List[TransactionResponse]
    next_cursor: Optional[int] = Field(
        default=None, description="Pass as ?after= to fetch the next page"
    )


class WebhookAck(BaseModel):
    """Response schema for webhook callbacks."""

    received: bool = True
    event_type: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class DiscrepancyResponse(BaseModel):
    account_id: str
    kind: str
    expected: Money
    actual: Money
    reason: str
    transaction_id: Optional[int] = None


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    is_balanced: bool
    accounts_checked: int
    transactions_checked: int
    total_balance: Money
    total_opening_balance: Money
    discrepancies: List[DiscrepancyResponse]
    started_at: UtcDatetime
    completed_at: Optional[UtcDatetime] = None

    @classmethod
    def from_report(cls, report: Any) -> "ReconciliationResponse":
        return cls(
            is_balanced=report.is_balanced,
            accounts_checked=report.accounts_checked,
            transactions_checked=report.transactions_checked,
            total_balance=from_cents(report.total_balance_cents),
            total_opening_balance=from_cents(report.total_opening_cents),
            discrepancies=[
                DiscrepancyResponse(
                    account_id=d.account_id,
                    kind=d.kind,
                    expected=from_cents(d.expected_cents),
                    actual=from_cents(d.actual_cents),
                    reason=d.reason,
                    transaction_id=d.transaction_id,
                )
                for d in report.discrepancies
            ],
            started_at=report.started_at,
            completed_at=report.completed_at,
        )
