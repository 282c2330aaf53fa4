"""Tests for OrderLog."""

from datetime import datetime, timedelta, timezone

import pytest

from vendcore.errors import InvalidArgumentError, NotFoundError
from vendcore.models import DeviceOutcome, Order, OrderStatus, Product, User
from vendcore.order_log import REFUND_STEP, RESTOCK_STEP

T0 = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)

USER = User(id="u-1", name="Alice", rfid_tag="RFID-1", credits=5)
PRODUCT = Product(id="p-1", name="Cola", price=5, slot_number=1, stock=1)


def open_order(orders, order_id: str, minutes: int = 0) -> Order:
    return orders.append(Order.open(order_id, USER, PRODUCT, created_at=T0 + timedelta(minutes=minutes)))


class TestTransition:
    """Tests for the guarded lifecycle write."""

    def test_dispensed(self, orders) -> None:
        open_order(orders, "o-1")
        at = T0 + timedelta(seconds=30)
        order = orders.transition("o-1", OrderStatus.DISPENSED, DeviceOutcome.SUCCESS, at)
        assert order.status == OrderStatus.DISPENSED
        assert order.device_outcome == DeviceOutcome.SUCCESS
        assert order.dispensed_at == at
        assert order.finalized_at == at
        assert not order.compensation_pending

    def test_failed_marks_compensation(self, orders) -> None:
        """A failed order owes a refund and a restock."""
        open_order(orders, "o-1")
        order = orders.transition("o-1", OrderStatus.FAILED, DeviceOutcome.MOTOR_ERROR, T0)
        assert order.status == OrderStatus.FAILED
        assert order.dispensed_at is None
        assert order.refund_pending and order.restock_pending

    def test_second_transition_refused(self, orders) -> None:
        """Only a processing order can be finalized."""
        open_order(orders, "o-1")
        orders.transition("o-1", OrderStatus.DISPENSED, DeviceOutcome.SUCCESS, T0)
        assert orders.transition("o-1", OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0) is None
        assert orders.get("o-1").status == OrderStatus.DISPENSED

    def test_missing_order(self, orders) -> None:
        assert orders.transition("nope", OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0) is None
        with pytest.raises(NotFoundError):
            orders.get("nope")


class TestCompensationSteps:
    """Tests for clearing compensation steps."""

    def test_complete_once(self, orders) -> None:
        """A step clears once and leaves the other step pending."""
        open_order(orders, "o-1")
        orders.transition("o-1", OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0)
        assert orders.complete_step("o-1", REFUND_STEP)
        assert not orders.complete_step("o-1", REFUND_STEP)
        order = orders.get("o-1")
        assert not order.refund_pending
        assert order.restock_pending

    def test_complete_on_processing_order(self, orders) -> None:
        """A processing order owes nothing, so there is nothing to clear."""
        open_order(orders, "o-1")
        assert not orders.complete_step("o-1", RESTOCK_STEP)

    def test_unknown_step(self, orders) -> None:
        with pytest.raises(InvalidArgumentError):
            orders.complete_step("o-1", "status")

    def test_pending_compensation(self, orders) -> None:
        """Failed orders with outstanding steps are listed oldest first."""
        open_order(orders, "o-new", minutes=5)
        open_order(orders, "o-old", minutes=1)
        open_order(orders, "o-ok", minutes=2)
        open_order(orders, "o-done", minutes=3)
        for order_id in ("o-new", "o-old", "o-done"):
            orders.transition(order_id, OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0)
        orders.transition("o-ok", OrderStatus.DISPENSED, DeviceOutcome.SUCCESS, T0)
        orders.complete_step("o-old", REFUND_STEP)
        orders.complete_step("o-done", REFUND_STEP)
        orders.complete_step("o-done", RESTOCK_STEP)

        assert [o.id for o in orders.pending_compensation()] == ["o-old", "o-new"]


class TestReads:
    """Tests for listing, streaming and purging."""

    def test_iterate_crosses_batches(self, orders) -> None:
        for i in range(5):
            open_order(orders, f"o-{i}", minutes=i)
        assert [o.id for o in orders.iterate(batch_size=2)] == [f"o-{i}" for i in range(5)]

    def test_iterate_ignores_inserts_behind_cursor(self, orders) -> None:
        """An order that sorts before the current batch never repeats a later one."""
        for i in (1, 3, 5, 7):
            open_order(orders, f"o-{i}", minutes=i)

        seen = []
        for order in orders.iterate(batch_size=2):
            seen.append(order.id)
            if order.id == "o-3":
                open_order(orders, "o-0")
        assert seen == ["o-1", "o-3", "o-5", "o-7"]

    def test_iterate_with_query(self, orders) -> None:
        for i in range(4):
            open_order(orders, f"o-{i}", minutes=i)
        orders.transition("o-2", OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0)
        orders.transition("o-3", OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0)
        assert [o.id for o in orders.iterate({"status": "failed"}, batch_size=1)] == ["o-2", "o-3"]

    def test_count(self, orders) -> None:
        open_order(orders, "o-1")
        open_order(orders, "o-2")
        orders.transition("o-2", OrderStatus.FAILED, DeviceOutcome.TIMEOUT, T0)
        assert orders.count() == 2
        assert orders.count({"status": "failed"}) == 1

    def test_purge(self, orders) -> None:
        open_order(orders, "o-1")
        assert orders.purge("o-1").id == "o-1"
        with pytest.raises(NotFoundError):
            orders.purge("o-1")
