"""Application context: owns the store connection and wires the components."""

from typing import Optional

import structlog

from .config import Settings
from .engine import TransactionEngine
from .errors import StoreUnavailableError
from .inventory import InventoryStore
from .ledger import LedgerStore
from .order_log import OrderLog
from .queries import OrderQueries
from .store import MemoryRecordStore, RecordStore

logger = structlog.get_logger()


def create_store(settings: Settings) -> RecordStore:
    """Build the record store backend named in the settings."""
    if settings.store_backend == "mongo":
        from .mongo import MongoRecordStore

        return MongoRecordStore(
            settings.mongodb_url,
            settings.mongodb_database,
            timeout_ms=settings.mongodb_timeout_ms,
        )
    return MemoryRecordStore()


class VendingApp:
    """Opens the store at startup and closes it at shutdown.

    Usage:
        with VendingApp(Settings.from_env()) as app:
            result = app.engine.attempt_dispense(user_id, product_id)
    """

    def __init__(self, settings: Optional[Settings] = None, store: Optional[RecordStore] = None):
        self.settings = settings or Settings()
        self.store = store or create_store(self.settings)
        self.ledger = LedgerStore(self.store, retry_budget=self.settings.retry_budget)
        self.inventory = InventoryStore(self.store, slots=self.settings.slots)
        self.orders = OrderLog(self.store)
        self.engine = TransactionEngine(
            self.ledger,
            self.inventory,
            self.orders,
            retry_budget=self.settings.retry_budget,
        )
        self.queries = OrderQueries(self.orders, self.inventory, self.ledger)

    def __enter__(self) -> "VendingApp":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        """Connect, declare unique fields and finish any compensation left owing.

        Orders that still cannot be repaired are logged and stay pending for
        the ``RepairPending`` RPC.
        """
        self.store.open()
        self.ledger.setup()
        self.inventory.setup()
        try:
            repaired = self.engine.repair_pending()
        except StoreUnavailableError as e:
            logger.error("startup_repair_incomplete", failed_orders=e.context.get("failed_orders"), error=str(e))
            repaired = []
        logger.info(
            "app_started",
            store=self.settings.store_backend,
            slots=sorted(self.settings.slots),
            repaired_orders=len(repaired),
        )

    def close(self) -> None:
        self.store.close()
        logger.info("app_stopped")
