"""Read-only query surface over the order log.

Filters, pagination and rollups for reporting. Nothing here writes; orders
in any status are tolerated.
"""

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from math import ceil
from typing import Any, Optional

from .errors import InvalidArgumentError
from .helpers import ensure_utc
from .inventory import InventoryStore
from .ledger import LedgerStore
from .models import Order, OrderStatus, parse_status
from .order_log import OrderLog
from .store import ASCENDING, DESCENDING

SORT_KEYS = ("created_at", "dispensed_at", "status")
SORT_DIRECTIONS = {"asc": ASCENDING, "desc": DESCENDING}
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class OrderFilter:
    user_id: Optional[str] = None
    product_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status is not None:
            object.__setattr__(self, "status", parse_status(self.status))
        if self.start and self.end and ensure_utc(self.start) > ensure_utc(self.end):
            raise InvalidArgumentError("start date must not be after end date")

    def to_query(self) -> dict[str, Any]:
        query: dict[str, Any] = {}
        if self.user_id:
            query["user_id"] = self.user_id
        if self.product_id:
            query["product_id"] = self.product_id
        if self.status is not None:
            query["status"] = self.status.value
        created: dict[str, datetime] = {}
        if self.start:
            created["$gte"] = ensure_utc(self.start)
        if self.end:
            created["$lte"] = ensure_utc(self.end)
        if created:
            query["created_at"] = created
        return query


@dataclass(frozen=True)
class OrderPage:
    orders: list[Order]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return ceil(self.total_count / self.page_size)

    @property
    def has_next_page(self) -> bool:
        return self.page * self.page_size < self.total_count

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "orders": [o.to_dict() for o in self.orders],
            "pagination": {
                "page": self.page,
                "page_size": self.page_size,
                "total_pages": self.total_pages,
                "total_count": self.total_count,
                "has_next_page": self.has_next_page,
                "has_prev_page": self.has_prev_page,
            },
        }


@dataclass(frozen=True)
class OrderSummary:
    total_orders: int = 0
    successful_orders: int = 0
    failed_orders: int = 0
    processing_orders: int = 0
    total_revenue: int = 0

    @property
    def success_rate(self) -> float:
        """Percentage of orders that dispensed, rounded to two places."""
        if not self.total_orders:
            return 0.0
        return round(self.successful_orders / self.total_orders * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_orders": self.total_orders,
            "successful_orders": self.successful_orders,
            "failed_orders": self.failed_orders,
            "processing_orders": self.processing_orders,
            "success_rate": self.success_rate,
            "total_revenue": self.total_revenue,
        }


@dataclass(frozen=True)
class PopularProduct:
    product_id: str
    name: str
    sales: int


@dataclass(frozen=True)
class DailySummary:
    day: date
    summary: OrderSummary
    most_popular_product: Optional[PopularProduct]

    def to_dict(self) -> dict[str, Any]:
        popular = self.most_popular_product
        return {
            "date": self.day.isoformat(),
            "stats": self.summary.to_dict(),
            "most_popular_product": (
                {"product_id": popular.product_id, "name": popular.name, "sales": popular.sales}
                if popular
                else None
            ),
        }


def summarize(orders: Iterable[Order]) -> OrderSummary:
    """Stream over orders once and roll them up."""
    counts: Counter = Counter()
    revenue = 0
    for order in orders:
        counts[order.status] += 1
        if order.status is OrderStatus.DISPENSED:
            revenue += order.total_price
    return OrderSummary(
        total_orders=sum(counts.values()),
        successful_orders=counts[OrderStatus.DISPENSED],
        failed_orders=counts[OrderStatus.FAILED],
        processing_orders=counts[OrderStatus.PROCESSING],
        total_revenue=revenue,
    )


class OrderQueries:
    """Reporting views over the order log."""

    def __init__(self, orders: OrderLog, inventory: InventoryStore, ledger: LedgerStore):
        self._orders = orders
        self._inventory = inventory
        self._ledger = ledger

    def list_orders(
        self,
        order_filter: Optional[OrderFilter] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort_key: str = "created_at",
        sort_dir: str = "desc",
    ) -> OrderPage:
        if page < 1:
            raise InvalidArgumentError("page must be at least 1", page=page)
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise InvalidArgumentError(f"page size must be between 1 and {MAX_PAGE_SIZE}", page_size=page_size)
        if sort_key not in SORT_KEYS:
            raise InvalidArgumentError(f"sort key must be one of: {', '.join(SORT_KEYS)}", sort_key=sort_key)
        direction = SORT_DIRECTIONS.get(str(sort_dir).lower())
        if direction is None:
            raise InvalidArgumentError("sort direction must be asc or desc", sort_dir=sort_dir)

        query = (order_filter or OrderFilter()).to_query()
        # _id breaks ties so pages never overlap.
        sort = [(sort_key, direction), ("_id", ASCENDING)]
        orders = self._orders.find(query, sort, skip=(page - 1) * page_size, limit=page_size)
        return OrderPage(
            orders=orders,
            total_count=self._orders.count(query),
            page=page,
            page_size=page_size,
        )

    def user_summary(self, user_id: str) -> OrderSummary:
        self._ledger.get_user(user_id)
        return summarize(self._orders.iterate({"user_id": user_id}))

    def product_summary(self, product_id: str) -> OrderSummary:
        self._inventory.get_product(product_id)
        return summarize(self._orders.iterate({"product_id": product_id}))

    def daily_summary(self, day: date, tz: tzinfo = timezone.utc) -> DailySummary:
        start = datetime.combine(day, time.min, tzinfo=tz)
        query = {"created_at": {"$gte": start, "$lt": start + timedelta(days=1)}}

        sales: Counter = Counter()

        def tally(orders: Iterable[Order]) -> Iterable[Order]:
            for order in orders:
                if order.status is OrderStatus.DISPENSED:
                    sales[order.product_id] += 1
                yield order

        summary = summarize(tally(self._orders.iterate(query)))
        return DailySummary(day=day, summary=summary, most_popular_product=self._most_popular(sales))

    def _most_popular(self, sales: Counter) -> Optional[PopularProduct]:
        if not sales:
            return None
        product_id, count = sales.most_common(1)[0]
        product = self._inventory.get_product(product_id)
        return PopularProduct(product_id=product_id, name=product.name, sales=count)
