"""
paycode - payment-code wallet settlement service.

A merchant creates an order and receives a short-lived 8-digit payment code.
A payer looks the order up by code and confirms, and the service moves funds
from the payer's wallet to the merchant while appending an immutable ledger.

Layers:
1. core: order lifecycle, settlement, recharge and the balance ledger
2. database: SQLAlchemy models and session management
3. api: FastAPI request/response surface
4. monitoring: structured logging, Prometheus metrics, health checks
"""

__version__ = "1.0.0"
