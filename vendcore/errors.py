"""Error types for the vending transaction engine.

Every error carries a ``kind`` callers can branch on, a ``context`` dict with
the data needed to present the failure, and the gRPC status code the
transport binding reports it under.
"""

from typing import Any, Optional

import grpc


class VendingError(Exception):
    """Base class for vending errors."""

    kind = "error"
    code = grpc.StatusCode.INTERNAL

    def __init__(self, message: str, cause: Optional[Exception] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = context

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Return the structured form of the error."""
        return {"kind": self.kind, "message": self.message, "context": dict(self.context)}


class NotFoundError(VendingError):
    """User, product or order does not exist."""

    kind = "not_found"
    code = grpc.StatusCode.NOT_FOUND

    def __init__(self, entity: str, record_id: str):
        super().__init__(f"{entity} not found", entity=entity, id=record_id)


class OutOfStockError(VendingError):
    """Product has no stock left to dispense."""

    kind = "out_of_stock"
    code = grpc.StatusCode.FAILED_PRECONDITION

    def __init__(self, product_id: str, name: str = ""):
        label = f'"{name}"' if name else "product"
        super().__init__(f"{label} is out of stock", product_id=product_id)


class InsufficientFundsError(VendingError):
    """User balance does not cover the product price."""

    kind = "insufficient_funds"
    code = grpc.StatusCode.FAILED_PRECONDITION

    def __init__(self, user_id: str, credits: int, price: int):
        super().__init__(
            "insufficient credits",
            user_id=user_id,
            credits=credits,
            price=price,
            shortfall=price - credits,
        )

    @property
    def shortfall(self) -> int:
        """Credits missing to complete the purchase."""
        return self.context["shortfall"]


class ConflictError(VendingError):
    """Concurrent writers kept invalidating a conditional update."""

    kind = "conflict"
    code = grpc.StatusCode.ABORTED

    def __init__(self, entity: str, record_id: str, attempts: int):
        super().__init__(
            f"{entity} changed concurrently, gave up after {attempts} attempts",
            entity=entity,
            id=record_id,
            attempts=attempts,
        )


class InvalidTransitionError(VendingError):
    """Order is not in a state that allows the requested transition."""

    kind = "invalid_transition"
    code = grpc.StatusCode.FAILED_PRECONDITION

    def __init__(self, order_id: str, status: str, outcome: str):
        super().__init__(
            f"order already {status}, cannot apply outcome {outcome}",
            order_id=order_id,
            status=status,
            outcome=outcome,
        )


class StoreUnavailableError(VendingError):
    """Record store could not be reached."""

    kind = "store_unavailable"
    code = grpc.StatusCode.UNAVAILABLE

    def __init__(self, operation: str, cause: Optional[Exception] = None, **context: Any):
        super().__init__(f"record store unavailable during {operation}", cause, operation=operation, **context)

    @property
    def repair_required(self) -> bool:
        """True when a compensation could not be applied and state needs repair."""
        return bool(self.context.get("repair_required", False))


class InvalidArgumentError(VendingError):
    """Invalid argument provided by caller."""

    kind = "invalid_argument"
    code = grpc.StatusCode.INVALID_ARGUMENT

    def __init__(self, message: str, **context: Any):
        super().__init__(f"invalid argument: {message}", **context)


class DuplicateRecordError(VendingError):
    """A unique field already holds the given value."""

    kind = "duplicate"
    code = grpc.StatusCode.ALREADY_EXISTS

    def __init__(self, collection: str, field: str, value: Any):
        super().__init__(
            f"{collection} with this {field} already exists",
            collection=collection,
            field=field,
            value=value,
        )


class SlotOccupiedError(VendingError):
    """Another product already occupies the slot."""

    kind = "slot_occupied"
    code = grpc.StatusCode.ALREADY_EXISTS

    def __init__(self, slot_number: int, occupant: str = ""):
        message = f"slot {slot_number} is already occupied"
        if occupant:
            message = f"{message} by product: {occupant}"
        super().__init__(message, slot_number=slot_number, occupant=occupant)
