"""Inventory store: products, their slots and stock counts."""

from collections.abc import Collection
from datetime import datetime
from typing import Callable, Optional

import structlog

from .errors import DuplicateRecordError, NotFoundError, SlotOccupiedError
from .helpers import new_id, now
from .models import DEFAULT_SLOTS, Product
from .store import ASCENDING, RecordStore
from .validation import (
    require_int,
    require_non_negative,
    require_not_blank,
    require_one_of,
    require_positive,
)

logger = structlog.get_logger()

PRODUCTS = "products"
RESTOCKED_ORDERS = "restocked_orders"


class InventoryStore:
    """Persists products; stock changes are single-record atomic writes."""

    def __init__(
        self,
        store: RecordStore,
        slots: Collection[int] = DEFAULT_SLOTS,
        clock: Callable[[], datetime] = now,
    ):
        self._store = store
        self._slots = frozenset(slots)
        self._clock = clock

    @property
    def slots(self) -> frozenset[int]:
        return self._slots

    def setup(self) -> None:
        """Declare that a slot holds at most one product."""
        self._store.ensure_unique(PRODUCTS, "slot_number")

    def create_product(self, name: str, price: int, slot_number: int, stock: int = 0) -> Product:
        name = require_not_blank(name, "product name is required")
        price = require_positive(price, "price must be a positive number")
        slot_number = require_int(slot_number, "slot number must be an integer")
        slots = ", ".join(str(s) for s in sorted(self._slots))
        require_one_of(slot_number, self._slots, f"slot number must be one of: {slots}")
        stock = require_non_negative(stock, "stock must be a non-negative number")

        occupant = self.product_in_slot(slot_number)
        if occupant is not None:
            raise SlotOccupiedError(slot_number, occupant.name)

        timestamp = self._clock()
        product = Product(
            id=new_id(),
            name=name,
            price=price,
            slot_number=slot_number,
            stock=stock,
            created_at=timestamp,
            updated_at=timestamp,
        )
        try:
            self._store.insert(PRODUCTS, product.to_record())
        except DuplicateRecordError as e:
            # Lost a race for the slot against another insert.
            raise SlotOccupiedError(slot_number) from e
        logger.info("product_created", product_id=product.id, name=name, slot_number=slot_number, stock=stock)
        return product

    def update_product(
        self,
        product_id: str,
        name: Optional[str] = None,
        price: Optional[int] = None,
        stock: Optional[int] = None,
    ) -> Product:
        changes: dict = {"updated_at": self._clock()}
        if name is not None:
            changes["name"] = require_not_blank(name, "product name cannot be empty")
        if price is not None:
            changes["price"] = require_positive(price, "price must be a positive number")
        if stock is not None:
            changes["stock"] = require_non_negative(stock, "stock must be a non-negative number")

        doc = self._store.update(PRODUCTS, product_id, {"$set": changes})
        if doc is None:
            raise NotFoundError("product", product_id)
        logger.info("product_updated", product_id=product_id, fields=sorted(k for k in changes if k != "updated_at"))
        return Product.from_record(doc)

    def get_product(self, product_id: str) -> Product:
        doc = self._store.get(PRODUCTS, product_id)
        if doc is None:
            raise NotFoundError("product", product_id)
        return Product.from_record(doc)

    def product_in_slot(self, slot_number: int) -> Optional[Product]:
        docs = self._store.find(PRODUCTS, {"slot_number": slot_number}, limit=1)
        return Product.from_record(docs[0]) if docs else None

    def list_products(self) -> list[Product]:
        return [Product.from_record(doc) for doc in self._store.find(PRODUCTS, sort=[("slot_number", ASCENDING)])]

    def try_take_one(self, product_id: str) -> Optional[Product]:
        """Decrement stock by one only if an item is still available.

        Returns the updated product, or None if the guard failed.
        """
        doc = self._store.update(
            PRODUCTS,
            product_id,
            {"$inc": {"stock": -1}, "$set": {"updated_at": self._clock()}},
            guard={"stock": {"$gte": 1}},
        )
        return Product.from_record(doc) if doc is not None else None

    def put_back(self, product_id: str, order_id: str, quantity: int = 1) -> Product:
        """Return ``quantity`` items to stock once per ``order_id``.

        A repeated call for the same order leaves stock unchanged.
        """
        doc = self._store.update(
            PRODUCTS,
            product_id,
            {
                "$inc": {"stock": quantity},
                "$push": {RESTOCKED_ORDERS: order_id},
                "$set": {"updated_at": self._clock()},
            },
            guard={RESTOCKED_ORDERS: {"$ne": order_id}},
        )
        if doc is None:
            # Missing product, or this order was already restocked.
            return self.get_product(product_id)
        return Product.from_record(doc)
