"""
API routes for orders, payments, accounts and monitoring.

Domain errors propagate to the handlers in ``paycode.api.errors``; routes
only translate between schemas and core calls.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paycode.core.money import from_cents, to_cents
from paycode.core.services import Services
from paycode.database.connection import unit_of_work
from paycode.monitoring.health import HealthCheck

from .schemas import (
    AccountResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    HealthCheckResponse,
    OpenAccountRequest,
    OrderStatusResponse,
    PaymentCodeQueryResponse,
    PaymentResponse,
    ProcessPaymentRequest,
    ProcessPaymentResponse,
    RechargeRequest,
    RechargeResponse,
    ReconciliationResponse,
    RefundResponse,
    TransactionHistoryResponse,
    TransactionResponse,
    WebhookAck,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/api/orders", tags=["orders"])
payment_router = APIRouter(prefix="/api/payments", tags=["payments"])
account_router = APIRouter(prefix="/api/accounts", tags=["accounts"])
webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> Services:
    """Service graph built during application startup."""
    return request.app.state.services


def get_health_check(request: Request) -> HealthCheck:
    services = get_services(request)
    return HealthCheck(services.session_factory, services.settings)


@order_router.post(
    "/create",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Open a pending order and issue its 8-digit payment code",
)
async def create_order(
    request: CreateOrderRequest,
    services: Services = Depends(get_services),
) -> CreateOrderResponse:
    order = await services.lifecycle.create(
        merchant_id=request.merchant_id,
        amount_cents=to_cents(request.amount),
        description=request.description,
        merchant_name=request.merchant_name,
    )
    return CreateOrderResponse.from_order(order)


@order_router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    summary="Get order status",
)
async def get_order_status(
    order_id: str,
    services: Services = Depends(get_services),
) -> OrderStatusResponse:
    """Current order status; a due expiry is applied on read."""
    return OrderStatusResponse.from_order(await services.lifecycle.status(order_id))


@order_router.post(
    "/{order_id}/cancel",
    response_model=OrderStatusResponse,
    summary="Cancel an order",
)
async def cancel_order(
    order_id: str,
    services: Services = Depends(get_services),
) -> OrderStatusResponse:
    return OrderStatusResponse.from_order(await services.lifecycle.cancel(order_id))


@payment_router.get(
    "/query/{payment_code}",
    response_model=PaymentCodeQueryResponse,
    summary="Look up a payment code",
    description="Resolve a code to the pending order the payer is about to pay",
)
async def query_payment_code(
    payment_code: str,
    services: Services = Depends(get_services),
) -> PaymentCodeQueryResponse:
    order = await services.lifecycle.lookup_by_code(payment_code)
    return PaymentCodeQueryResponse.from_order(order)


@payment_router.post(
    "/process",
    response_model=ProcessPaymentResponse,
    summary="Pay an order",
    description="Settle the order behind a payment code from the payer's wallet",
)
async def process_payment(
    request: ProcessPaymentRequest,
    services: Services = Depends(get_services),
) -> ProcessPaymentResponse:
    """
    Settle a payment code.

    Concurrent requests for the same code settle at most once; the others
    receive ORDER_NOT_PENDING.
    """
    logger.info(
        "api_process_payment_request",
        payment_code=request.payment_code,
        payer_id=request.payer_id,
    )
    result = await services.settlement.settle(
        request.payment_code, request.payer_id, request.payment_method
    )
    return ProcessPaymentResponse(
        payment_id=result.payment_id,
        order_id=result.order_id,
        amount=from_cents(result.amount_cents),
        payer_new_balance=from_cents(result.payer_balance_cents),
        status=result.status,
        processed_at=result.processed_at,
    )


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    summary="Get payment",
)
async def get_payment(
    payment_id: str,
    services: Services = Depends(get_services),
) -> PaymentResponse:
    return PaymentResponse.from_payment(await services.settlement.get_payment(payment_id))


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Return a completed payment to the payer in full",
)
async def refund_payment(
    payment_id: str,
    services: Services = Depends(get_services),
) -> RefundResponse:
    logger.info("api_refund_payment_request", payment_id=payment_id)
    result = await services.settlement.refund(payment_id)
    return RefundResponse(
        payment_id=result.payment_id,
        order_id=result.order_id,
        amount=from_cents(result.amount_cents),
        payer_new_balance=from_cents(result.payer_balance_cents),
        merchant_new_balance=from_cents(result.merchant_balance_cents),
        refunded_at=result.refunded_at,
    )


@account_router.post(
    "",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open an account",
)
async def open_account(
    request: OpenAccountRequest,
    services: Services = Depends(get_services),
) -> AccountResponse:
    async with unit_of_work(services.session_factory) as db:
        account = await services.accounts.open_account(
            db,
            request.kind,
            request.display_name,
            email=request.email,
            account_id=request.account_id,
        )
    return AccountResponse.from_account(account)


@account_router.get(
    "/{account_id}",
    response_model=AccountResponse,
    summary="Get account balance",
)
async def get_account(
    account_id: str,
    services: Services = Depends(get_services),
) -> AccountResponse:
    async with unit_of_work(services.session_factory) as db:
        account = await services.accounts.get(db, account_id)
    return AccountResponse.from_account(account)


@account_router.post(
    "/{payer_id}/recharge",
    response_model=RechargeResponse,
    summary="Recharge a wallet",
    description="Move funds from the settlement bank into a payer wallet",
)
async def recharge_account(
    payer_id: str,
    request: RechargeRequest,
    services: Services = Depends(get_services),
) -> RechargeResponse:
    result = await services.recharge.recharge(payer_id, to_cents(request.amount))
    return RechargeResponse(
        payer_id=result.payer_id,
        amount_added=from_cents(result.amount_cents),
        payer_new_balance=from_cents(result.payer_balance_cents),
        bank_balance=from_cents(result.bank_balance_cents),
        transaction_id=result.transaction_id,
    )


@account_router.get(
    "/{account_id}/transactions",
    response_model=TransactionHistoryResponse,
    summary="Account history",
    description="Ledger records oldest first; follow next_cursor for more",
)
async def list_transactions(
    account_id: str,
    after: Optional[int] = Query(default=None, ge=0, description="Cursor from a previous page"),
    limit: Optional[int] = Query(default=None, ge=1, description="Page size"),
    services: Services = Depends(get_services),
) -> TransactionHistoryResponse:
    page = await services.ledger.history(account_id, after=after, limit=limit)
    return TransactionHistoryResponse(
        account_id=account_id,
        transactions=[TransactionResponse.from_record(record) for record in page.items],
        next_cursor=page.next_cursor,
    )


@webhook_router.post(
    "/payment-status",
    response_model=WebhookAck,
    summary="Payment status callback",
    description="Acknowledge an inbound payment status notification",
)
async def payment_status_webhook(
    payload: Dict[str, Any] = Body(...),
) -> WebhookAck:
    """Log and acknowledge. Callbacks never change ledger state."""
    event_type = payload.get("event") or payload.get("type")
    logger.info(
        "api_webhook_received",
        event_type=event_type,
        order_id=payload.get("order_id"),
        status=payload.get("status"),
    )
    return WebhookAck(received=True, event_type=event_type)


@admin_router.get(
    "/reconciliation",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Replay the ledger against stored balances",
)
async def run_reconciliation(
    services: Services = Depends(get_services),
) -> ReconciliationResponse:
    report = await services.reconciler.reconcile()
    return ReconciliationResponse.from_report(report)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
