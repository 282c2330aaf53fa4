"""Domain records: users, products and orders.

Each record converts to and from the plain document the record store keeps.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from .errors import InvalidArgumentError, InvalidTransitionError
from .helpers import ensure_utc, format_timestamp, now

# The machine dispenses exactly one item per transaction.
ORDER_QUANTITY = 1

DEFAULT_SLOTS = frozenset({1, 2})


class OrderStatus(StrEnum):
    """Order lifecycle status values."""

    PROCESSING = "processing"
    DISPENSED = "dispensed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PROCESSING


class DeviceOutcome(StrEnum):
    """Result reported by the dispensing hardware."""

    SUCCESS = "success"
    MOTOR_ERROR = "motor_error"
    SENSOR_ERROR = "sensor_error"
    TIMEOUT = "timeout"


# Every outcome maps to exactly one terminal status.
OUTCOME_STATUS: dict[DeviceOutcome, OrderStatus] = {
    DeviceOutcome.SUCCESS: OrderStatus.DISPENSED,
    DeviceOutcome.MOTOR_ERROR: OrderStatus.FAILED,
    DeviceOutcome.SENSOR_ERROR: OrderStatus.FAILED,
    DeviceOutcome.TIMEOUT: OrderStatus.FAILED,
}


def parse_outcome(value: "str | DeviceOutcome") -> DeviceOutcome:
    """Coerce a raw outcome into the closed enum."""
    try:
        return DeviceOutcome(value)
    except ValueError:
        valid = ", ".join(o.value for o in DeviceOutcome)
        raise InvalidArgumentError(f"device outcome must be one of: {valid}", outcome=value) from None


def parse_status(value: "str | OrderStatus") -> OrderStatus:
    """Coerce a raw status into the closed enum."""
    try:
        return OrderStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in OrderStatus)
        raise InvalidArgumentError(f"status must be one of: {valid}", status=value) from None


def next_status(order_id: str, current: OrderStatus, outcome: DeviceOutcome) -> OrderStatus:
    """Resolve the terminal status an outcome moves a processing order into.

    Raises:
        InvalidTransitionError: If the order already reached a terminal state.
    """
    if current.is_terminal:
        raise InvalidTransitionError(order_id, current.value, outcome.value)
    return OUTCOME_STATUS[outcome]


@dataclass
class User:
    id: str
    name: str
    rfid_tag: str
    credits: int = 0
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)

    def to_record(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "name": self.name,
            "rfid_tag": self.rfid_tag,
            "credits": self.credits,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, doc: dict[str, Any]) -> "User":
        return cls(
            id=doc["_id"],
            name=doc["name"],
            rfid_tag=doc["rfid_tag"],
            credits=int(doc.get("credits", 0)),
            created_at=ensure_utc(doc.get("created_at")),
            updated_at=ensure_utc(doc.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rfid_tag": self.rfid_tag,
            "credits": self.credits,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass
class Product:
    id: str
    name: str
    price: int
    slot_number: int
    stock: int = 0
    created_at: datetime = field(default_factory=now)
    updated_at: datetime = field(default_factory=now)

    def to_record(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "name": self.name,
            "price": self.price,
            "slot_number": self.slot_number,
            "stock": self.stock,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, doc: dict[str, Any]) -> "Product":
        return cls(
            id=doc["_id"],
            name=doc["name"],
            price=int(doc["price"]),
            slot_number=int(doc["slot_number"]),
            stock=int(doc.get("stock", 0)),
            created_at=ensure_utc(doc.get("created_at")),
            updated_at=ensure_utc(doc.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "slot_number": self.slot_number,
            "stock": self.stock,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass
class Order:
    """One dispense transaction.

    Quantity is not a field: every order dispenses ORDER_QUANTITY items, and
    there is no way to construct one with any other amount. Use ``Order.open``
    to start a new order in the processing state.
    """

    id: str
    user_id: str
    product_id: str
    unit_price: int
    slot_number: int
    status: OrderStatus = OrderStatus.PROCESSING
    device_outcome: Optional[DeviceOutcome] = None
    created_at: datetime = field(default_factory=now)
    dispensed_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    refund_pending: bool = False
    restock_pending: bool = False

    @property
    def quantity(self) -> int:
        return ORDER_QUANTITY

    @property
    def total_price(self) -> int:
        return self.unit_price * self.quantity

    @property
    def compensation_pending(self) -> bool:
        return self.refund_pending or self.restock_pending

    @classmethod
    def open(
        cls,
        order_id: str,
        user: User,
        product: Product,
        created_at: Optional[datetime] = None,
    ) -> "Order":
        """Start a processing order for one unit of ``product`` charged to ``user``."""
        return cls(
            id=order_id,
            user_id=user.id,
            product_id=product.id,
            unit_price=product.price,
            slot_number=product.slot_number,
            created_at=created_at or now(),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "_id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "slot_number": self.slot_number,
            "status": self.status.value,
            "device_outcome": self.device_outcome.value if self.device_outcome else None,
            "created_at": self.created_at,
            "dispensed_at": self.dispensed_at,
            "finalized_at": self.finalized_at,
            "refund_pending": self.refund_pending,
            "restock_pending": self.restock_pending,
        }

    @classmethod
    def from_record(cls, doc: dict[str, Any]) -> "Order":
        quantity = doc.get("quantity", ORDER_QUANTITY)
        if quantity != ORDER_QUANTITY:
            raise InvalidArgumentError(
                "vending machine dispenses only 1 item per transaction",
                order_id=doc.get("_id"),
                quantity=quantity,
            )
        outcome = doc.get("device_outcome")
        return cls(
            id=doc["_id"],
            user_id=doc["user_id"],
            product_id=doc["product_id"],
            unit_price=int(doc["unit_price"]),
            slot_number=int(doc["slot_number"]),
            status=OrderStatus(doc["status"]),
            device_outcome=DeviceOutcome(outcome) if outcome else None,
            created_at=ensure_utc(doc.get("created_at")),
            dispensed_at=ensure_utc(doc.get("dispensed_at")),
            finalized_at=ensure_utc(doc.get("finalized_at")),
            refund_pending=bool(doc.get("refund_pending", False)),
            restock_pending=bool(doc.get("restock_pending", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "slot_number": self.slot_number,
            "status": self.status.value,
            "device_outcome": self.device_outcome.value if self.device_outcome else None,
            "created_at": format_timestamp(self.created_at),
            "dispensed_at": format_timestamp(self.dispensed_at),
            "finalized_at": format_timestamp(self.finalized_at),
            "compensation_pending": self.compensation_pending,
        }


@dataclass(frozen=True)
class DispenseInstruction:
    """Directive handed to the device after a reservation succeeds."""

    slot_number: int
    order_id: str
    action: str = "dispense"

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action, "slot_number": self.slot_number, "order_id": self.order_id}


@dataclass(frozen=True)
class TransactionSnapshot:
    """Balances before and after a reservation, for audit."""

    credits_before: int
    credits_after: int
    stock_before: int
    stock_after: int

    @property
    def amount_deducted(self) -> int:
        return self.credits_before - self.credits_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_credits_before": self.credits_before,
            "user_credits_after": self.credits_after,
            "product_stock_before": self.stock_before,
            "product_stock_after": self.stock_after,
            "amount_deducted": self.amount_deducted,
        }


@dataclass(frozen=True)
class DispenseResult:
    order: Order
    instruction: DispenseInstruction
    transaction: TransactionSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "dispense_instruction": self.instruction.to_dict(),
            "transaction": self.transaction.to_dict(),
        }
