"""Core ledger logic: stores, order lifecycle, settlement and recharge."""
from .accounts import AccountKind, AccountStore, BalanceChange
from .ledger import HistoryPage, TransactionLog, TransactionType
from .lifecycle import OrderLifecycle
from .locking import LocalKeyedLock, RedisKeyedLock, build_lock
from .orders import OrderStatus, OrderStore
from .recharge import RechargeEngine, RechargeResult
from .reconciliation import LedgerReconciler, ReconciliationReport
from .services import Services, build_services
from .settlement import RefundResult, SettlementEngine, SettlementResult

__all__ = [
    "AccountKind",
    "AccountStore",
    "BalanceChange",
    "HistoryPage",
    "TransactionLog",
    "TransactionType",
    "OrderLifecycle",
    "LocalKeyedLock",
    "RedisKeyedLock",
    "build_lock",
    "OrderStatus",
    "OrderStore",
    "RechargeEngine",
    "RechargeResult",
    "LedgerReconciler",
    "ReconciliationReport",
    "Services",
    "build_services",
    "RefundResult",
    "SettlementEngine",
    "SettlementResult",
]
