"""Ledger store: user records and their credit balances."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Callable, Optional

import structlog

from .errors import (
    ConflictError,
    DuplicateRecordError,
    InsufficientFundsError,
    InvalidArgumentError,
    NotFoundError,
)
from .helpers import new_id, now
from .models import User
from .store import ASCENDING, RecordStore
from .validation import require_non_negative, require_not_blank, require_positive

logger = structlog.get_logger()

USERS = "users"
REFUNDED_ORDERS = "refunded_orders"


class CreditOperation(StrEnum):
    SET = "set"
    ADD = "add"
    SUBTRACT = "subtract"


@dataclass(frozen=True)
class CreditAdjustment:
    user: User
    previous_credits: int
    operation: CreditOperation

    @property
    def new_credits(self) -> int:
        return self.user.credits

    def to_dict(self) -> dict:
        return {
            "user_id": self.user.id,
            "name": self.user.name,
            "previous_credits": self.previous_credits,
            "new_credits": self.new_credits,
            "operation": self.operation.value,
        }


class LedgerStore:
    """Persists users; every balance change is a single-record atomic write."""

    def __init__(self, store: RecordStore, retry_budget: int = 3, clock: Callable[[], datetime] = now):
        self._store = store
        self._retry_budget = retry_budget
        self._clock = clock

    def setup(self) -> None:
        """Declare the unique fields of the users collection."""
        self._store.ensure_unique(USERS, "rfid_tag")
        self._store.ensure_unique(USERS, "name")

    def create_user(self, name: str, rfid_tag: str, credits: int = 0) -> User:
        name = require_not_blank(name, "name is required")
        rfid_tag = require_not_blank(rfid_tag, "rfid tag is required")
        credits = require_non_negative(credits, "credits cannot be negative")

        if self._store.find(USERS, {"name": name}, limit=1):
            raise DuplicateRecordError(USERS, "name", name)
        if self._store.find(USERS, {"rfid_tag": rfid_tag}, limit=1):
            raise DuplicateRecordError(USERS, "rfid_tag", rfid_tag)

        timestamp = self._clock()
        user = User(
            id=new_id(),
            name=name,
            rfid_tag=rfid_tag,
            credits=credits,
            created_at=timestamp,
            updated_at=timestamp,
        )
        self._store.insert(USERS, user.to_record())
        logger.info("user_created", user_id=user.id, name=name, credits=credits)
        return user

    def get_user(self, user_id: str) -> User:
        doc = self._store.get(USERS, user_id)
        if doc is None:
            raise NotFoundError("user", user_id)
        return User.from_record(doc)

    def find_by_rfid(self, rfid_tag: str) -> User:
        docs = self._store.find(USERS, {"rfid_tag": rfid_tag}, limit=1)
        if not docs:
            raise NotFoundError("user", rfid_tag)
        return User.from_record(docs[0])

    def list_users(self) -> list[User]:
        return [User.from_record(doc) for doc in self._store.find(USERS, sort=[("name", ASCENDING)])]

    def try_debit(self, user_id: str, amount: int) -> Optional[User]:
        """Debit ``amount`` only if the balance still covers it.

        Returns the updated user, or None if the guard failed.
        """
        doc = self._store.update(
            USERS,
            user_id,
            {"$inc": {"credits": -amount}, "$set": {"updated_at": self._clock()}},
            guard={"credits": {"$gte": amount}},
        )
        return User.from_record(doc) if doc is not None else None

    def credit(self, user_id: str, amount: int) -> User:
        """Add ``amount`` to the balance unconditionally."""
        doc = self._store.update(
            USERS,
            user_id,
            {"$inc": {"credits": amount}, "$set": {"updated_at": self._clock()}},
        )
        if doc is None:
            raise NotFoundError("user", user_id)
        return User.from_record(doc)

    def refund(self, user_id: str, amount: int, order_id: str) -> User:
        """Return ``amount`` to the user once per ``order_id``.

        The order id is recorded on the user in the same write, so repeating
        the call after an ambiguous failure cannot credit twice.
        """
        doc = self._store.update(
            USERS,
            user_id,
            {
                "$inc": {"credits": amount},
                "$push": {REFUNDED_ORDERS: order_id},
                "$set": {"updated_at": self._clock()},
            },
            guard={REFUNDED_ORDERS: {"$ne": order_id}},
        )
        if doc is None:
            # Missing user, or this order was already refunded.
            return self.get_user(user_id)
        return User.from_record(doc)

    def adjust_credits(
        self,
        user_id: str,
        amount: int,
        operation: "str | CreditOperation" = CreditOperation.SET,
    ) -> CreditAdjustment:
        """Administrative balance change.

        ``set`` replaces the balance, ``add`` tops it up and ``subtract``
        removes credits without ever driving the balance negative.
        """
        try:
            operation = CreditOperation(str(operation).lower())
        except ValueError:
            raise InvalidArgumentError("operation must be one of: set, add, subtract", operation=operation) from None

        if operation is CreditOperation.SET:
            amount = require_non_negative(amount, "credits cannot be negative")
            return self._set_credits(user_id, amount)

        amount = require_positive(amount, "credits must be a positive number")
        if operation is CreditOperation.ADD:
            user = self.credit(user_id, amount)
            logger.info("credits_added", user_id=user_id, amount=amount, new_credits=user.credits)
            return CreditAdjustment(user, user.credits - amount, operation)

        user = self.try_debit(user_id, amount)
        if user is None:
            current = self.get_user(user_id)
            logger.info("credit_subtract_rejected", user_id=user_id, amount=amount, credits=current.credits)
            raise InsufficientFundsError(user_id, current.credits, amount)
        logger.info("credits_subtracted", user_id=user_id, amount=amount, new_credits=user.credits)
        return CreditAdjustment(user, user.credits + amount, operation)

    def _set_credits(self, user_id: str, amount: int) -> CreditAdjustment:
        for _ in range(self._retry_budget):
            current = self.get_user(user_id)
            doc = self._store.update(
                USERS,
                user_id,
                {"$set": {"credits": amount, "updated_at": self._clock()}},
                guard={"credits": current.credits},
            )
            if doc is not None:
                logger.info("credits_set", user_id=user_id, previous=current.credits, new_credits=amount)
                return CreditAdjustment(User.from_record(doc), current.credits, CreditOperation.SET)
        raise ConflictError("user", user_id, self._retry_budget)
