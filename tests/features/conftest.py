"""Shared steps and context for vending BDD scenarios."""

import pytest
from pytest_bdd import given, then, parsers

from vendcore.errors import VendingError


class VendingTestContext:
    """Test context for vending BDD scenarios."""

    def __init__(self):
        self.users = {}
        self.products = {}
        self.result = None
        self.order_id = None
        self.error = None


@pytest.fixture
def ctx():
    """Fixture providing fresh test context for each scenario."""
    return VendingTestContext()


@pytest.fixture
def attempt(ctx):
    """Run an engine call, keeping either its result or its error on ctx."""

    def run(fn, *args):
        ctx.error = None
        try:
            return fn(*args)
        except VendingError as e:
            ctx.error = e
            return None

    return run


# --- Given steps ---

@given(parsers.parse('a user "{name}" with {credits:d} credits'))
def user_with_credits(ctx, ledger, name, credits):
    ctx.users[name] = ledger.create_user(name, f"RFID-{name.upper()}", credits=credits)


@given(parsers.parse('a product "{name}" priced {price:d} in slot {slot:d} with stock {stock:d}'))
def product_in_slot(ctx, inventory, name, price, slot, stock):
    ctx.products[name] = inventory.create_product(name, price=price, slot_number=slot, stock=stock)


# --- Then steps ---

@then(parsers.parse('the attempt is rejected as "{kind}"'))
def rejected_as(ctx, kind):
    assert ctx.error is not None, "expected the call to be rejected"
    assert ctx.error.kind == kind


@then(parsers.parse('the order is "{status}"'))
def order_status(ctx, engine, status):
    assert engine.get_order(ctx.order_id).status.value == status


@then(parsers.parse('"{name}" has {credits:d} credits'))
def user_credits(ctx, ledger, name, credits):
    assert ledger.get_user(ctx.users[name].id).credits == credits


@then(parsers.parse('"{name}" has stock {stock:d}'))
def product_stock(ctx, inventory, name, stock):
    assert inventory.get_product(ctx.products[name].id).stock == stock
