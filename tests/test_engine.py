"""Tests for TransactionEngine."""

from unittest.mock import Mock

import pytest
from structlog.testing import capture_logs

from vendcore.engine import TransactionEngine
from vendcore.errors import (
    ConflictError,
    InsufficientFundsError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotFoundError,
    OutOfStockError,
    StoreUnavailableError,
)
from vendcore.models import DeviceOutcome, OrderStatus


@pytest.fixture
def bob(ledger):
    """User with 10 credits."""
    return ledger.create_user("Bob", "RFID-BOB", credits=10)


@pytest.fixture
def chips(inventory):
    """Product priced 5 with three items in slot 2."""
    return inventory.create_product("Chips", price=5, slot_number=2, stock=3)


def balances(ledger, inventory, user, product):
    return ledger.get_user(user.id).credits, inventory.get_product(product.id).stock


class TestAttemptDispense:
    """Tests for reserving a dispense."""

    def test_success_snapshot(self, engine, ledger, inventory, orders, bob, chips) -> None:
        """A reservation debits the price, takes one item and opens an order."""
        result = engine.attempt_dispense(bob.id, chips.id)

        assert result.transaction.credits_before == 10
        assert result.transaction.credits_after == 5
        assert result.transaction.stock_before == 3
        assert result.transaction.stock_after == 2
        assert result.transaction.amount_deducted == 5
        assert balances(ledger, inventory, bob, chips) == (5, 2)

        order = orders.get(result.order.id)
        assert order.status == OrderStatus.PROCESSING
        assert order.unit_price == 5
        assert order.quantity == 1
        assert result.instruction.slot_number == 2
        assert result.instruction.order_id == order.id

    def test_exact_balance_reaches_zero(self, engine, ledger, inventory, alice, cola) -> None:
        result = engine.attempt_dispense(alice.id, cola.id)
        assert result.transaction.credits_after == 0
        assert result.transaction.stock_after == 0

    def test_insufficient_funds_leaves_state_unchanged(self, engine, ledger, inventory, orders, cola) -> None:
        """Shortfall is reported and nothing is written."""
        carol = ledger.create_user("Carol", "RFID-CAROL", credits=3)

        with pytest.raises(InsufficientFundsError) as exc_info:
            engine.attempt_dispense(carol.id, cola.id)

        assert exc_info.value.shortfall == 2
        assert balances(ledger, inventory, carol, cola) == (3, 1)
        assert orders.count() == 0

    def test_out_of_stock_leaves_state_unchanged(self, engine, ledger, inventory, orders, bob) -> None:
        empty = inventory.create_product("Gum", price=1, slot_number=1, stock=0)

        with pytest.raises(OutOfStockError):
            engine.attempt_dispense(bob.id, empty.id)

        assert balances(ledger, inventory, bob, empty) == (10, 0)
        assert orders.count() == 0

    def test_out_of_stock_checked_before_funds(self, engine, ledger, inventory) -> None:
        """An empty slot is reported even when the user is also short."""
        poor = ledger.create_user("Poor", "RFID-POOR", credits=0)
        empty = inventory.create_product("Gum", price=1, slot_number=1, stock=0)
        with pytest.raises(OutOfStockError):
            engine.attempt_dispense(poor.id, empty.id)

    def test_unknown_user(self, engine, cola) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            engine.attempt_dispense("nope", cola.id)
        assert exc_info.value.context["entity"] == "user"

    def test_unknown_product(self, engine, bob) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            engine.attempt_dispense(bob.id, "nope")
        assert exc_info.value.context["entity"] == "product"

    def test_retry_budget_must_be_positive(self, ledger, inventory, orders) -> None:
        with pytest.raises(ValueError):
            TransactionEngine(ledger, inventory, orders, retry_budget=0)


class TestContention:
    """Tests for retries when a guarded write loses a race."""

    def test_balance_drained_between_read_and_debit(self, engine, ledger, bob, chips, monkeypatch) -> None:
        """A fresh read after a refused debit reports the real shortfall."""
        original = ledger.try_debit

        def drained(user_id, amount):
            ledger.adjust_credits(user_id, 1)
            return original(user_id, amount)

        monkeypatch.setattr(ledger, "try_debit", drained)
        with pytest.raises(InsufficientFundsError) as exc_info:
            engine.attempt_dispense(bob.id, chips.id)
        assert exc_info.value.shortfall == 4

    def test_debit_conflict_exhausts_budget(self, engine, ledger, inventory, bob, chips, monkeypatch) -> None:
        """Repeatedly refused debits end in a conflict with nothing written."""
        try_debit = Mock(return_value=None)
        monkeypatch.setattr(ledger, "try_debit", try_debit)

        with pytest.raises(ConflictError) as exc_info:
            engine.attempt_dispense(bob.id, chips.id)

        assert exc_info.value.context["entity"] == "user"
        assert try_debit.call_count == engine.retry_budget
        assert balances(ledger, inventory, bob, chips) == (10, 3)

    def test_stock_conflict_refunds_debit(self, engine, ledger, inventory, orders, bob, chips, monkeypatch) -> None:
        """A stock conflict after a successful debit re-credits the user."""
        monkeypatch.setattr(inventory, "try_take_one", Mock(return_value=None))

        with pytest.raises(ConflictError) as exc_info:
            engine.attempt_dispense(bob.id, chips.id)

        assert exc_info.value.context["entity"] == "product"
        assert balances(ledger, inventory, bob, chips) == (10, 3)
        assert orders.count() == 0

    def test_stock_emptied_between_read_and_take(self, engine, ledger, inventory, bob, chips, monkeypatch) -> None:
        """Stock sold out by another buyer refunds the debit and reports out of stock."""
        original = inventory.try_take_one

        def sold_out(product_id):
            inventory.update_product(product_id, stock=0)
            return original(product_id)

        monkeypatch.setattr(inventory, "try_take_one", sold_out)
        with pytest.raises(OutOfStockError):
            engine.attempt_dispense(bob.id, chips.id)
        assert ledger.get_user(bob.id).credits == 10


class TestRollback:
    """Tests for reversing partial reservations."""

    def test_stock_write_failure_refunds(self, engine, store, ledger, inventory, bob, chips) -> None:
        store.fail("update", "products")

        with pytest.raises(StoreUnavailableError) as exc_info:
            engine.attempt_dispense(bob.id, chips.id)

        assert not exc_info.value.repair_required
        assert balances(ledger, inventory, bob, chips) == (10, 3)

    def test_order_write_failure_reverses_both(self, engine, store, ledger, inventory, orders, bob, chips) -> None:
        """If the order cannot be recorded, credits and stock are both restored."""
        store.fail("insert", "orders")

        with pytest.raises(StoreUnavailableError):
            engine.attempt_dispense(bob.id, chips.id)

        assert balances(ledger, inventory, bob, chips) == (10, 3)
        assert orders.count() == 0

    def test_failed_rollback_requires_repair(self, engine, store, ledger, bob, chips, monkeypatch) -> None:
        """A rollback that cannot be applied is surfaced with repair_required."""
        store.fail("insert", "orders")
        monkeypatch.setattr(ledger, "refund", Mock(side_effect=StoreUnavailableError("update")))

        with capture_logs() as logs:
            with pytest.raises(StoreUnavailableError) as exc_info:
                engine.attempt_dispense(bob.id, chips.id)

        err = exc_info.value
        assert err.repair_required
        assert err.context["amount"] == 5
        assert err.context["stock_taken"] is True
        assert isinstance(err.__cause__, StoreUnavailableError)
        assert any(e["event"] == "reservation_rollback_failed" and e["log_level"] == "critical" for e in logs)


class TestFinalize:
    """Tests for applying device outcomes."""

    def test_success(self, engine, ledger, inventory, bob, chips) -> None:
        result = engine.attempt_dispense(bob.id, chips.id)

        order = engine.finalize(result.order.id, "success")

        assert order.status == OrderStatus.DISPENSED
        assert order.device_outcome == DeviceOutcome.SUCCESS
        assert order.dispensed_at is not None
        assert balances(ledger, inventory, bob, chips) == (5, 2)

    @pytest.mark.parametrize("outcome", ["motor_error", "sensor_error", "timeout"])
    def test_failure_compensates(self, engine, ledger, inventory, alice, cola, outcome) -> None:
        """A failed dispense refunds the price and restores the item."""
        result = engine.attempt_dispense(alice.id, cola.id)
        assert balances(ledger, inventory, alice, cola) == (0, 0)

        order = engine.finalize(result.order.id, outcome)

        assert order.status == OrderStatus.FAILED
        assert order.device_outcome == DeviceOutcome(outcome)
        assert order.dispensed_at is None
        assert not order.compensation_pending
        assert balances(ledger, inventory, alice, cola) == (5, 1)

    def test_second_finalize_rejected(self, engine, ledger, inventory, alice, cola) -> None:
        """A finalized order stays as it is."""
        result = engine.attempt_dispense(alice.id, cola.id)
        engine.finalize(result.order.id, DeviceOutcome.MOTOR_ERROR)

        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.finalize(result.order.id, DeviceOutcome.SUCCESS)

        assert exc_info.value.context["status"] == "failed"
        assert engine.get_order(result.order.id).status == OrderStatus.FAILED
        assert balances(ledger, inventory, alice, cola) == (5, 1)

    def test_unknown_outcome(self, engine, alice, cola) -> None:
        result = engine.attempt_dispense(alice.id, cola.id)
        with pytest.raises(InvalidArgumentError):
            engine.finalize(result.order.id, "exploded")
        assert engine.get_order(result.order.id).status == OrderStatus.PROCESSING

    def test_unknown_order(self, engine) -> None:
        with pytest.raises(NotFoundError):
            engine.finalize("nope", "success")

    def test_lost_race_to_finalize(self, engine, orders, alice, cola, monkeypatch) -> None:
        """A concurrent finalize that wins the guarded write leaves this caller rejected."""
        result = engine.attempt_dispense(alice.id, cola.id)
        original = orders.transition

        def raced(order_id, status, outcome, at):
            original(order_id, OrderStatus.DISPENSED, DeviceOutcome.SUCCESS, at)
            return original(order_id, status, outcome, at)

        monkeypatch.setattr(orders, "transition", raced)
        with pytest.raises(InvalidTransitionError) as exc_info:
            engine.finalize(result.order.id, "timeout")
        assert exc_info.value.context["status"] == "dispensed"


class TestRepair:
    """Tests for compensation that could not complete."""

    def test_refund_failure_is_repaired_later(self, engine, store, ledger, inventory, orders, alice, cola) -> None:
        """A failed refund leaves the steps pending until repair_pending runs."""
        result = engine.attempt_dispense(alice.id, cola.id)
        store.fail("update", "users")

        with pytest.raises(StoreUnavailableError) as exc_info:
            engine.finalize(result.order.id, "motor_error")

        assert exc_info.value.repair_required
        assert exc_info.value.context["step"] == "refund_pending"
        order = orders.get(result.order.id)
        assert order.status == OrderStatus.FAILED
        assert order.refund_pending and order.restock_pending
        assert balances(ledger, inventory, alice, cola) == (0, 0)

        repaired = engine.repair_pending()

        assert [o.id for o in repaired] == [result.order.id]
        assert not repaired[0].compensation_pending
        assert balances(ledger, inventory, alice, cola) == (5, 1)
        assert orders.pending_compensation() == []

    def test_restock_failure_keeps_refund(self, engine, store, ledger, inventory, orders, alice, cola) -> None:
        """Completed steps are not repeated by a repair."""
        result = engine.attempt_dispense(alice.id, cola.id)
        store.fail("update", "products")

        with pytest.raises(StoreUnavailableError):
            engine.finalize(result.order.id, "timeout")

        order = orders.get(result.order.id)
        assert not order.refund_pending
        assert order.restock_pending
        assert balances(ledger, inventory, alice, cola) == (5, 0)

        engine.repair_pending()
        assert balances(ledger, inventory, alice, cola) == (5, 1)

    def test_nothing_to_repair(self, engine) -> None:
        assert engine.repair_pending() == []

    def test_landed_refund_not_repeated(self, engine, store, ledger, inventory, orders, alice, cola) -> None:
        """A refund that landed but reported failure is not credited again by a repair."""
        result = engine.attempt_dispense(alice.id, cola.id)
        store.fail("update", "users", applied=True)

        with pytest.raises(StoreUnavailableError):
            engine.finalize(result.order.id, "motor_error")

        assert orders.get(result.order.id).refund_pending
        assert ledger.get_user(alice.id).credits == 5

        engine.repair_pending()

        assert balances(ledger, inventory, alice, cola) == (5, 1)
        assert orders.pending_compensation() == []

    def test_landed_restock_not_repeated(self, engine, store, ledger, inventory, alice, cola) -> None:
        result = engine.attempt_dispense(alice.id, cola.id)
        store.fail("update", "products", applied=True)

        with pytest.raises(StoreUnavailableError):
            engine.finalize(result.order.id, "sensor_error")

        engine.repair_pending()
        assert balances(ledger, inventory, alice, cola) == (5, 1)

    def test_step_kept_when_clear_fails(self, engine, ledger, inventory, orders, alice, cola, monkeypatch) -> None:
        """Losing the flag write after a refund leaves the step for repair, which does not pay twice."""
        result = engine.attempt_dispense(alice.id, cola.id)
        original = orders.complete_step
        monkeypatch.setattr(orders, "complete_step", Mock(side_effect=StoreUnavailableError("update")))

        with pytest.raises(StoreUnavailableError) as exc_info:
            engine.finalize(result.order.id, "timeout")

        assert exc_info.value.context["step"] == "refund_pending"
        assert orders.get(result.order.id).refund_pending
        assert ledger.get_user(alice.id).credits == 5

        monkeypatch.setattr(orders, "complete_step", original)
        engine.repair_pending()
        assert balances(ledger, inventory, alice, cola) == (5, 1)

    def test_repeated_repair_is_noop(self, engine, store, ledger, inventory, alice, cola) -> None:
        result = engine.attempt_dispense(alice.id, cola.id)
        store.fail("update", "users")
        with pytest.raises(StoreUnavailableError):
            engine.finalize(result.order.id, "motor_error")

        assert len(engine.repair_pending()) == 1
        assert engine.repair_pending() == []
        assert balances(ledger, inventory, alice, cola) == (5, 1)

    def test_repair_skips_failing_order(self, engine, store, ledger, inventory, alice, cola, bob, chips) -> None:
        """One unreachable record does not block the other pending orders."""
        first = engine.attempt_dispense(alice.id, cola.id)
        second = engine.attempt_dispense(bob.id, chips.id)
        store.fail("update", "users", times=2)
        for result in (first, second):
            with pytest.raises(StoreUnavailableError):
                engine.finalize(result.order.id, "timeout")

        store.fail("update", "users")
        with pytest.raises(StoreUnavailableError) as exc_info:
            engine.repair_pending()

        assert exc_info.value.repair_required
        assert exc_info.value.context["failed_orders"] == [first.order.id]
        assert balances(ledger, inventory, bob, chips) == (10, 3)
        assert balances(ledger, inventory, alice, cola) == (0, 0)

        assert [o.id for o in engine.repair_pending()] == [first.order.id]
        assert balances(ledger, inventory, alice, cola) == (5, 1)


class TestRollbackKeyedOnOrder:
    """Tests for reservation rollback under ambiguous writes."""

    def test_rollback_refund_lands_once(self, engine, store, ledger, inventory, orders, bob, chips) -> None:
        store.fail("insert", "orders")

        with pytest.raises(StoreUnavailableError):
            engine.attempt_dispense(bob.id, chips.id)

        user = store.get("users", bob.id)
        assert len(user["refunded_orders"]) == 1
        product = store.get("products", chips.id)
        assert product["restocked_orders"] == user["refunded_orders"]
        assert balances(ledger, inventory, bob, chips) == (10, 3)
