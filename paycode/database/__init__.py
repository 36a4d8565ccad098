"""Database package for paycode."""
from .connection import (
    build_session_factory,
    create_engine_from_settings,
    init_db,
    unit_of_work,
)
from .models import Account, Base, LedgerTransaction, Order, Payment

__all__ = [
    "Base",
    "Account",
    "Order",
    "Payment",
    "LedgerTransaction",
    "build_session_factory",
    "create_engine_from_settings",
    "init_db",
    "unit_of_work",
]
