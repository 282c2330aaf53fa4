"""Vending transaction engine.

Reserves funds and stock for a dispense, records the order, and reconciles
the order with the outcome the device reports. The record store offers no
multi-document transactions, so the engine relies on guarded single-record
writes and compensates whatever it already committed when a later step fails.
"""

from datetime import datetime
from typing import Callable

import structlog

from .errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidTransitionError,
    OutOfStockError,
    StoreUnavailableError,
    VendingError,
)
from .helpers import new_id, now
from .inventory import InventoryStore
from .ledger import LedgerStore
from .models import (
    DeviceOutcome,
    DispenseInstruction,
    DispenseResult,
    Order,
    OrderStatus,
    Product,
    TransactionSnapshot,
    User,
    next_status,
    parse_outcome,
)
from .order_log import REFUND_STEP, RESTOCK_STEP, OrderLog

logger = structlog.get_logger()

DEFAULT_RETRY_BUDGET = 3


class TransactionEngine:
    """Orchestrates dispense attempts across the ledger, inventory and order log."""

    def __init__(
        self,
        ledger: LedgerStore,
        inventory: InventoryStore,
        orders: OrderLog,
        retry_budget: int = DEFAULT_RETRY_BUDGET,
        clock: Callable[[], datetime] = now,
    ):
        if retry_budget < 1:
            raise ValueError("retry_budget must be at least 1")
        self.ledger = ledger
        self.inventory = inventory
        self.orders = orders
        self.retry_budget = retry_budget
        self._clock = clock

    # --- Reservation ---

    def attempt_dispense(self, user_id: str, product_id: str) -> DispenseResult:
        """Debit the user, take one item from stock and open a processing order.

        Raises:
            NotFoundError: User or product does not exist.
            OutOfStockError: No stock left.
            InsufficientFundsError: Balance does not cover the price.
            ConflictError: Retry budget exhausted under contention.
            StoreUnavailableError: Store unreachable. Anything already
                committed has been reversed unless ``repair_required`` is set.
        """
        log = logger.bind(user_id=user_id, product_id=product_id)

        user = self.ledger.get_user(user_id)
        product = self.inventory.get_product(product_id)

        if product.stock <= 0:
            log.info("dispense_rejected", reason="out_of_stock")
            raise OutOfStockError(product.id, product.name)
        if user.credits < product.price:
            log.info("dispense_rejected", reason="insufficient_funds", credits=user.credits, price=product.price)
            raise InsufficientFundsError(user.id, user.credits, product.price)

        price = product.price
        order_id = new_id()
        log = log.bind(order_id=order_id)
        log.info("debiting_credits", amount=price, credits=user.credits)
        debited = self._debit(user, price, log)

        taken = None
        try:
            log.info("taking_stock", slot_number=product.slot_number, stock=product.stock)
            taken = self._take_one(product, log)
            order = self.orders.append(Order.open(order_id, user, product, created_at=self._clock()))
        except VendingError as e:
            self._undo_reservation(
                order_id,
                user.id,
                price,
                product.id,
                stock_taken=taken is not None,
                cause=e,
                log=log,
            )
            raise

        snapshot = TransactionSnapshot(
            credits_before=debited.credits + price,
            credits_after=debited.credits,
            stock_before=taken.stock + order.quantity,
            stock_after=taken.stock,
        )
        log.info(
            "order_created",
            slot_number=order.slot_number,
            credits_after=snapshot.credits_after,
            stock_after=snapshot.stock_after,
        )
        return DispenseResult(
            order=order,
            instruction=DispenseInstruction(slot_number=order.slot_number, order_id=order.id),
            transaction=snapshot,
        )

    def _debit(self, user: User, price: int, log) -> User:
        for attempt in range(1, self.retry_budget + 1):
            debited = self.ledger.try_debit(user.id, price)
            if debited is not None:
                return debited
            user = self.ledger.get_user(user.id)
            if user.credits < price:
                log.info("dispense_rejected", reason="insufficient_funds", credits=user.credits, price=price)
                raise InsufficientFundsError(user.id, user.credits, price)
            log.info("debit_conflict", attempt=attempt)
        log.warning("dispense_conflict", entity="user", attempts=self.retry_budget)
        raise ConflictError("user", user.id, self.retry_budget)

    def _take_one(self, product: Product, log) -> Product:
        for attempt in range(1, self.retry_budget + 1):
            taken = self.inventory.try_take_one(product.id)
            if taken is not None:
                return taken
            product = self.inventory.get_product(product.id)
            if product.stock <= 0:
                log.info("dispense_rejected", reason="out_of_stock")
                raise OutOfStockError(product.id, product.name)
            log.info("stock_conflict", attempt=attempt)
        log.warning("dispense_conflict", entity="product", attempts=self.retry_budget)
        raise ConflictError("product", product.id, self.retry_budget)

    def _undo_reservation(
        self,
        order_id: str,
        user_id: str,
        amount: int,
        product_id: str,
        stock_taken: bool,
        cause: VendingError,
        log,
    ) -> None:
        """Reverse a partial reservation before the original error surfaces."""
        log.info("reservation_rollback", amount=amount, stock_taken=stock_taken, reason=cause.kind)
        try:
            self.ledger.refund(user_id, amount, order_id)
            if stock_taken:
                self.inventory.put_back(product_id, order_id)
        except VendingError as e:
            log.critical(
                "reservation_rollback_failed",
                amount=amount,
                stock_taken=stock_taken,
                reason=cause.kind,
                error=str(e),
            )
            raise StoreUnavailableError(
                "reservation rollback",
                e,
                repair_required=True,
                order_id=order_id,
                user_id=user_id,
                product_id=product_id,
                amount=amount,
                stock_taken=stock_taken,
            ) from cause

    # --- Reconciliation ---

    def finalize(self, order_id: str, outcome: "str | DeviceOutcome") -> Order:
        """Apply the device outcome to a processing order.

        A failed dispense re-credits the user and returns the item to stock.

        Raises:
            NotFoundError: Order does not exist.
            InvalidTransitionError: Order was already finalized.
            StoreUnavailableError: Compensation could not be applied; the
                order keeps its pending steps for ``repair_pending``.
        """
        outcome = parse_outcome(outcome)
        log = logger.bind(order_id=order_id, outcome=outcome.value)

        order = self.orders.get(order_id)
        try:
            status = next_status(order.id, order.status, outcome)
        except InvalidTransitionError:
            log.warning("invalid_transition", status=order.status.value)
            raise

        finalized = self.orders.transition(order.id, status, outcome, self._clock())
        if finalized is None:
            current = self.orders.get(order_id)
            log.warning("invalid_transition", status=current.status.value)
            raise InvalidTransitionError(order_id, current.status.value, outcome.value)

        log.info("order_finalized", status=status.value)
        if status is OrderStatus.FAILED:
            finalized = self._compensate(finalized, log)
        return finalized

    def repair_pending(self) -> list[Order]:
        """Re-run compensation for failed orders that still owe a refund or restock.

        Every pending order is attempted. Returns the repaired orders.

        Raises:
            StoreUnavailableError: Some orders could not be repaired; their
                ids are in ``context["failed_orders"]``.
        """
        repaired = []
        failed: list[str] = []
        first_error = None
        for order in self.orders.pending_compensation():
            log = logger.bind(order_id=order.id)
            log.info("repairing_order", refund_pending=order.refund_pending, restock_pending=order.restock_pending)
            try:
                repaired.append(self._compensate(order, log))
            except StoreUnavailableError as e:
                failed.append(order.id)
                first_error = first_error or e
        if failed:
            raise StoreUnavailableError(
                "repair",
                first_error,
                repair_required=True,
                failed_orders=failed,
            ) from first_error
        return repaired

    def _compensate(self, order: Order, log) -> Order:
        if order.refund_pending:
            self._run_step(
                order,
                REFUND_STEP,
                lambda: self.ledger.refund(order.user_id, order.total_price, order.id),
                log,
            )
        if order.restock_pending:
            self._run_step(
                order,
                RESTOCK_STEP,
                lambda: self.inventory.put_back(order.product_id, order.id, order.quantity),
                log,
            )
        return self.orders.get(order.id)

    def _run_step(self, order: Order, step: str, apply: Callable[[], object], log) -> None:
        # Refund and restock are keyed on the order id; reapplying a step is a no-op.
        try:
            apply()
            self.orders.complete_step(order.id, step)
        except VendingError as e:
            log.error("compensation_failed", step=step, error=str(e))
            raise StoreUnavailableError(
                "compensation",
                e,
                repair_required=True,
                order_id=order.id,
                step=step,
            ) from e
        log.info(
            "compensation_applied",
            step=step,
            user_id=order.user_id,
            product_id=order.product_id,
            amount=order.total_price,
        )

    # --- Queries ---

    def get_order(self, order_id: str) -> Order:
        return self.orders.get(order_id)
