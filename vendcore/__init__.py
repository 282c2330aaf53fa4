"""Vending machine transaction engine over a document record store."""

from .app import VendingApp, create_store
from .config import Settings
from .device import DeviceAdapter, ScriptedDevice, VendingMachine
from .engine import TransactionEngine
from .errors import (
    VendingError,
    NotFoundError,
    OutOfStockError,
    InsufficientFundsError,
    ConflictError,
    InvalidTransitionError,
    StoreUnavailableError,
    InvalidArgumentError,
    DuplicateRecordError,
    SlotOccupiedError,
)
from .inventory import InventoryStore
from .ledger import CreditAdjustment, CreditOperation, LedgerStore
from .models import (
    ORDER_QUANTITY,
    DeviceOutcome,
    DispenseInstruction,
    DispenseResult,
    Order,
    OrderStatus,
    Product,
    TransactionSnapshot,
    User,
)
from .order_log import OrderLog
from .queries import (
    DailySummary,
    OrderFilter,
    OrderPage,
    OrderQueries,
    OrderSummary,
    summarize,
)
from .store import MemoryRecordStore, RecordStore

__all__ = [
    # Application
    "VendingApp",
    "create_store",
    "Settings",
    # Engine
    "TransactionEngine",
    "DeviceAdapter",
    "ScriptedDevice",
    "VendingMachine",
    # Errors
    "VendingError",
    "NotFoundError",
    "OutOfStockError",
    "InsufficientFundsError",
    "ConflictError",
    "InvalidTransitionError",
    "StoreUnavailableError",
    "InvalidArgumentError",
    "DuplicateRecordError",
    "SlotOccupiedError",
    # Stores
    "RecordStore",
    "MemoryRecordStore",
    "LedgerStore",
    "CreditAdjustment",
    "CreditOperation",
    "InventoryStore",
    "OrderLog",
    # Models
    "ORDER_QUANTITY",
    "DeviceOutcome",
    "DispenseInstruction",
    "DispenseResult",
    "Order",
    "OrderStatus",
    "Product",
    "TransactionSnapshot",
    "User",
    # Queries
    "DailySummary",
    "OrderFilter",
    "OrderPage",
    "OrderQueries",
    "OrderSummary",
    "summarize",
]
