"""Shared BDD fixtures and step definitions for the order lifecycle."""

import pytest
from orderflow.order.exceptions import OrderflowError
from orderflow.order.requests import CancelOrder
from pytest_bdd import given, parsers, then


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def error():
    """Container for the error raised by the last When step."""
    return {"exc": None}


@pytest.fixture()
def attempt(machine, error):
    """Run a request, capture any lifecycle error and return the stored order."""

    def _attempt(order, action):
        error["exc"] = None
        try:
            action()
        except OrderflowError as exc:
            error["exc"] = exc
        return machine.get_order(order.id)

    return _attempt


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(parsers.cfparse('a "{payment_method}" order totalling {total:d}'), target_fixture="order")
def _(place_order, payment_method, total):
    return place_order(payment_method=payment_method, unit_price=total)


@given(parsers.cfparse('a "{payment_method}" order that is "{status}"'), target_fixture="order")
def _(order_at, payment_method, status):
    return order_at(status, payment_method=payment_method)


@given("the customer canceled the order", target_fixture="order")
def _(machine, order):
    return machine.cancel_order(
        CancelOrder(
            order_id=order.id,
            expected_version=order.version,
            reason="no longer needed",
            actor_id="cust-001",
            actor_role="customer",
        )
    )


@given(parsers.cfparse("{days:d} days have passed"))
def _(clock, days):
    clock.advance(days=days)


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the order status is "{status}"'))
def _(machine, order, status):
    assert machine.get_order(order.id).status == status


@then(parsers.cfparse('the payment status is "{payment_status}"'))
def _(machine, order, payment_status):
    assert machine.get_order(order.id).payment_status == payment_status


@then(parsers.cfparse("the order version is {version:d}"))
def _(machine, order, version):
    assert machine.get_order(order.id).version == version


@then(parsers.cfparse('the request fails with "{code}"'))
def _(error, code):
    assert error["exc"] is not None, "Expected the request to fail but it succeeded"
    assert error["exc"].code == code


@then(parsers.cfparse('the history has {count:d} "{action_type}" entry'))
def _(machine, order, count, action_type):
    stored = machine.get_order(order.id)
    assert len(machine.audit.entries_of(stored, action_type)) == count


@then("the inventory is reserved for the order")
def _(inventory, order):
    assert inventory.is_reserved(str(order.id))


@then("the inventory is released for the order")
def _(inventory, order):
    assert not inventory.is_reserved(str(order.id))
    assert ("release", str(order.id)) in inventory.calls


@then("the items are restocked")
def _(inventory, order):
    assert str(order.id) in inventory.restocked


@then(parsers.cfparse("a refund of {amount:d} is pending"))
def _(machine, order, amount):
    assert machine.get_order(order.id).pending_refund_total() == amount


@then("no refund is pending")
def _(machine, order):
    assert machine.get_order(order.id).pending_refund_total() == 0


@then(parsers.cfparse('the customer is notified with "{event}"'))
def _(notifier, event):
    assert event in notifier.events_for("cust-001")
