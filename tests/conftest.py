"""Shared pytest fixtures for vendcore tests."""

from datetime import datetime, timedelta, timezone

import pytest

from vendcore.engine import TransactionEngine
from vendcore.errors import StoreUnavailableError
from vendcore.inventory import InventoryStore
from vendcore.ledger import LedgerStore
from vendcore.order_log import OrderLog
from vendcore.queries import OrderQueries
from vendcore.store import MemoryRecordStore


class FlakyStore(MemoryRecordStore):
    """Memory store that fails chosen operations on demand.

    ``fail("update", "products")`` makes the next update on the products
    collection raise StoreUnavailableError; ``times`` repeats the failure.
    With ``applied=True`` the write lands first and the error is raised
    afterwards, like a connection dropped before the reply arrived.
    """

    def __init__(self) -> None:
        super().__init__()
        self._failures: list[tuple[str, str, bool]] = []

    def fail(self, operation: str, collection: str, times: int = 1, applied: bool = False) -> None:
        self._failures.extend([(operation, collection, applied)] * times)

    def _take_failure(self, operation: str, collection: str) -> "bool | None":
        for failure in self._failures:
            if failure[:2] == (operation, collection):
                self._failures.remove(failure)
                return failure[2]
        return None

    def _run(self, operation: str, collection: str, write):
        applied = self._take_failure(operation, collection)
        if applied is None:
            return write()
        if applied:
            write()
        raise StoreUnavailableError(operation, collection=collection)

    def insert(self, collection, doc):
        return self._run("insert", collection, lambda: super(FlakyStore, self).insert(collection, doc))

    def update(self, collection, record_id, changes, guard=None):
        return self._run(
            "update",
            collection,
            lambda: super(FlakyStore, self).update(collection, record_id, changes, guard),
        )


class FakeClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = FlakyStore()
    s.open()
    yield s
    s.close()


@pytest.fixture
def ledger(store, clock):
    ledger = LedgerStore(store, clock=clock)
    ledger.setup()
    return ledger


@pytest.fixture
def inventory(store, clock):
    inventory = InventoryStore(store, clock=clock)
    inventory.setup()
    return inventory


@pytest.fixture
def orders(store):
    return OrderLog(store)


@pytest.fixture
def engine(ledger, inventory, orders, clock):
    return TransactionEngine(ledger, inventory, orders, clock=clock)


@pytest.fixture
def queries(orders, inventory, ledger):
    return OrderQueries(orders, inventory, ledger)


@pytest.fixture
def alice(ledger):
    """User with 5 credits."""
    return ledger.create_user("Alice", "RFID-ALICE", credits=5)


@pytest.fixture
def cola(inventory):
    """Product priced 5 with one item in slot 1."""
    return inventory.create_product("Cola", price=5, slot_number=1, stock=1)
