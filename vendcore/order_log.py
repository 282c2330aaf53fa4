"""Order log: append-only order records with a guarded lifecycle."""

from collections.abc import Iterator, Mapping
from datetime import datetime
from typing import Any, Optional

import structlog

from .errors import InvalidArgumentError, NotFoundError
from .models import DeviceOutcome, Order, OrderStatus
from .store import ASCENDING, RecordStore, SortSpec

logger = structlog.get_logger()

ORDERS = "orders"

REFUND_STEP = "refund_pending"
RESTOCK_STEP = "restock_pending"
COMPENSATION_STEPS = (REFUND_STEP, RESTOCK_STEP)


class OrderLog:
    """Stores orders. Only the engine creates them and only a device
    outcome finalizes them."""

    def __init__(self, store: RecordStore):
        self._store = store

    def append(self, order: Order) -> Order:
        self._store.insert(ORDERS, order.to_record())
        return order

    def get(self, order_id: str) -> Order:
        doc = self._store.get(ORDERS, order_id)
        if doc is None:
            raise NotFoundError("order", order_id)
        return Order.from_record(doc)

    def transition(
        self,
        order_id: str,
        status: OrderStatus,
        outcome: DeviceOutcome,
        at: datetime,
    ) -> Optional[Order]:
        """Move a processing order into a terminal status.

        The write is guarded on the order still being ``processing``, so only
        one caller can finalize a given order. Returns None when the guard
        fails.
        """
        changes: dict[str, Any] = {
            "status": status.value,
            "device_outcome": outcome.value,
            "finalized_at": at,
        }
        if status is OrderStatus.DISPENSED:
            changes["dispensed_at"] = at
        elif status is OrderStatus.FAILED:
            changes[REFUND_STEP] = True
            changes[RESTOCK_STEP] = True
        doc = self._store.update(
            ORDERS,
            order_id,
            {"$set": changes},
            guard={"status": OrderStatus.PROCESSING.value},
        )
        return Order.from_record(doc) if doc is not None else None

    def complete_step(self, order_id: str, step: str) -> bool:
        """Clear a compensation step after its effect has been applied.

        The flag stays set until the step is known to have landed, so a
        crash or an ambiguous store error leaves it for ``repair_pending``.
        Returns False if the step was already cleared.
        """
        self._check_step(step)
        doc = self._store.update(ORDERS, order_id, {"$set": {step: False}}, guard={step: True})
        return doc is not None

    def pending_compensation(self) -> list[Order]:
        """Failed orders with at least one compensation step outstanding."""
        found: dict[str, Order] = {}
        for step in COMPENSATION_STEPS:
            query = {"status": OrderStatus.FAILED.value, step: True}
            for doc in self._store.find(ORDERS, query):
                found.setdefault(doc["_id"], Order.from_record(doc))
        return sorted(found.values(), key=lambda o: o.created_at)

    def find(
        self,
        query: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Order]:
        return [Order.from_record(doc) for doc in self._store.find(ORDERS, query, sort, skip, limit)]

    def iterate(
        self,
        query: Optional[Mapping[str, Any]] = None,
        batch_size: int = 500,
    ) -> Iterator[Order]:
        """Stream matching orders in ``_id`` order, one batch at a time.

        Each batch resumes after the last id seen, so orders inserted while
        streaming never shift a later batch.
        """
        last_id = None
        while True:
            batch_query = dict(query or {})
            if last_id is not None:
                batch_query["_id"] = {"$gt": last_id}
            batch = self.find(batch_query, [("_id", ASCENDING)], limit=batch_size)
            yield from batch
            if len(batch) < batch_size:
                return
            last_id = batch[-1].id

    def count(self, query: Optional[Mapping[str, Any]] = None) -> int:
        return self._store.count(ORDERS, query)

    def purge(self, order_id: str) -> Order:
        """Administrative delete. Outside the dispense lifecycle."""
        doc = self._store.delete(ORDERS, order_id)
        if doc is None:
            raise NotFoundError("order", order_id)
        order = Order.from_record(doc)
        logger.warning("order_purged", order_id=order_id, status=order.status.value, user_id=order.user_id)
        return order

    @staticmethod
    def _check_step(step: str) -> None:
        if step not in COMPENSATION_STEPS:
            raise InvalidArgumentError(f"unknown compensation step {step}")
