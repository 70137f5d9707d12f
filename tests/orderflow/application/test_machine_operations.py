"""Application tests for OrderStateMachine operations and their guards."""

from datetime import timedelta

import pytest
from orderflow.order.exceptions import ConcurrentModification, InvalidTransition, PolicyViolation, ValidationError
from orderflow.order.order import TRANSITIONS, OrderStatus, PaymentStatus
from orderflow.order.requests import (
    ApproveReturn,
    AssignDelivery,
    CancelOrder,
    CompleteRefund,
    CompleteReturn,
    ConfirmPayment,
    InitiateRefund,
    MarkDelivered,
    MarkFailed,
    MarkReadyForPickup,
    MarkReturnInTransit,
    PutOnHold,
    RecordDeliveryAttempt,
    RecordPaymentFailure,
    RejectReturn,
    RequestReturn,
    RetryPayment,
    ScheduleReturnPickup,
    StartPayment,
    StartPreparing,
)

ADMIN = {"actor_id": "admin-001", "actor_role": "admin"}
CUSTOMER = {"actor_id": "cust-001", "actor_role": "customer"}
GATEWAY = {"actor_id": "payment-gateway", "actor_role": "gateway"}
RIDER = {"actor_id": "rider-7", "actor_role": "delivery"}


class TestCreateOrder:
    def test_order_starts_pending_at_version_zero(self, place_order, notifier, clock):
        order = place_order(unit_price=2500, quantity=2, tax=300, delivery_fee=200, discount=500)

        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == PaymentStatus.PENDING.value
        assert order.version == 0
        assert order.pricing.subtotal == 5000
        assert order.pricing.total == 5000
        assert order.created_at == clock()
        assert order.order_number.startswith("ORD-2026-")
        assert notifier.events_for("cust-001") == ["order_created"]

    def test_empty_items_rejected(self, machine):
        from orderflow.order.requests import CreateOrder

        with pytest.raises(ValidationError):
            machine.create_order(
                CreateOrder(customer_id="cust-001", items=[], payment_method="card", actor_id="cust-001")
            )

    def test_created_order_is_persisted(self, place_order, machine):
        order = place_order()
        assert machine.get_order(order.id).order_number == order.order_number


class TestPayment:
    def _fail(self, machine, order):
        return machine.record_payment_failure(
            RecordPaymentFailure(order_id=order.id, expected_version=order.version, reason="card declined", **GATEWAY)
        )

    def test_start_payment(self, place_order, machine, clock):
        order = place_order()
        order = machine.start_payment(StartPayment(order_id=order.id, expected_version=0, **CUSTOMER))

        assert order.status == OrderStatus.PAYMENT_PROCESSING.value
        assert order.payment_status == PaymentStatus.PROCESSING.value
        assert order.payment_attempts == 1
        assert order.version == 1

    def test_failure_then_retry(self, order_at, machine):
        order = self._fail(machine, order_at("payment_processing"))
        assert order.status == OrderStatus.PAYMENT_FAILED.value
        assert order.payment_status == PaymentStatus.FAILED.value

        order = machine.retry_payment(RetryPayment(order_id=order.id, expected_version=order.version, **CUSTOMER))
        assert order.status == OrderStatus.PAYMENT_PROCESSING.value
        assert order.payment_attempts == 2

    def test_retry_bounded_by_max_attempts(self, order_at, machine, policy):
        order = order_at("payment_processing")
        for _ in range(policy.max_payment_attempts - 1):
            order = self._fail(machine, order)
            order = machine.retry_payment(
                RetryPayment(order_id=order.id, expected_version=order.version, **CUSTOMER)
            )
        order = self._fail(machine, order)
        assert order.payment_attempts == policy.max_payment_attempts

        with pytest.raises(PolicyViolation):
            machine.retry_payment(RetryPayment(order_id=order.id, expected_version=order.version, **CUSTOMER))
        with pytest.raises(PolicyViolation):
            machine.start_payment(StartPayment(order_id=order.id, expected_version=order.version, **CUSTOMER))

        stored = machine.get_order(order.id)
        assert stored.status == OrderStatus.PAYMENT_FAILED.value
        assert stored.version == order.version

    def test_retry_requires_failed_payment(self, order_at, machine):
        order = order_at("payment_processing")
        with pytest.raises(InvalidTransition):
            machine.retry_payment(RetryPayment(order_id=order.id, expected_version=order.version, **CUSTOMER))

    def test_exhausted_payment_can_be_failed(self, order_at, machine):
        order = self._fail(machine, order_at("payment_processing"))
        order = machine.mark_failed(
            MarkFailed(order_id=order.id, expected_version=order.version, reason="payment abandoned", **ADMIN)
        )
        assert order.status == OrderStatus.FAILED.value

    def test_card_confirmation_requires_payment_id(self, order_at, machine):
        order = order_at("payment_processing")
        with pytest.raises(ValidationError):
            machine.confirm_payment(ConfirmPayment(order_id=order.id, expected_version=order.version, **GATEWAY))

    def test_cod_confirms_without_settlement(self, order_at):
        order = order_at("confirmed", payment_method="cod")

        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_status == PaymentStatus.PENDING.value
        assert order.settlement_deferred()
        assert not order.total_paid

    def test_cod_settles_on_delivery(self, order_at, machine):
        order = order_at("out_for_delivery", payment_method="cod")
        order = machine.mark_delivered(
            MarkDelivered(order_id=order.id, expected_version=order.version, actor_id="rider-7")
        )

        assert order.payment_status == PaymentStatus.COMPLETED.value
        assert order.total_paid == order.pricing.total


class TestVersioning:
    def test_each_accepted_change_bumps_version_by_one(self, order_at, machine):
        order = order_at("confirmed")
        versions = [order.version]

        order = machine.start_preparing(StartPreparing(order_id=order.id, expected_version=order.version, **ADMIN))
        versions.append(order.version)
        order = machine.mark_ready_for_pickup(
            MarkReadyForPickup(order_id=order.id, expected_version=order.version, **ADMIN)
        )
        versions.append(order.version)

        assert versions == [versions[0], versions[0] + 1, versions[0] + 2]
        assert machine.get_order(order.id).version == versions[-1]

    def test_stale_version_rejected(self, order_at, machine):
        order = order_at("confirmed")
        with pytest.raises(ConcurrentModification) as exc:
            machine.start_preparing(
                StartPreparing(order_id=order.id, expected_version=order.version - 1, **ADMIN)
            )
        assert exc.value.retryable is True
        assert exc.value.details["actual_version"] == order.version

    def test_unknown_order(self, machine):
        from orderflow.order.exceptions import NotFound

        with pytest.raises(NotFound):
            machine.start_preparing(StartPreparing(order_id="missing", expected_version=0, **ADMIN))


def _cancel(machine, order):
    return machine.cancel_order(
        CancelOrder(order_id=order.id, expected_version=order.version, reason="changed mind", **CUSTOMER)
    )


def _version(order):
    return {"order_id": order.id, "expected_version": order.version}


# The request that moves an order into each target status
REQUEST_FOR_TARGET = {
    OrderStatus.PAYMENT_PROCESSING: lambda o: StartPayment(**_version(o), **CUSTOMER),
    OrderStatus.CONFIRMED: lambda o: ConfirmPayment(**_version(o), payment_id="pay_x", **GATEWAY),
    OrderStatus.PAYMENT_FAILED: lambda o: RecordPaymentFailure(**_version(o), reason="declined", **GATEWAY),
    OrderStatus.PREPARING: lambda o: StartPreparing(**_version(o), **ADMIN),
    OrderStatus.READY_FOR_PICKUP: lambda o: MarkReadyForPickup(**_version(o), **ADMIN),
    OrderStatus.OUT_FOR_DELIVERY: lambda o: AssignDelivery(**_version(o), personnel_id="rider-7", **ADMIN),
    OrderStatus.DELIVERY_ATTEMPTED: lambda o: RecordDeliveryAttempt(**_version(o), reason="no answer", **RIDER),
    OrderStatus.DELIVERED: lambda o: MarkDelivered(**_version(o), **RIDER),
    OrderStatus.ON_HOLD: lambda o: PutOnHold(**_version(o), reason="stock check", **ADMIN),
    OrderStatus.CANCELED: lambda o: CancelOrder(**_version(o), reason="ops stop", override=True, **ADMIN),
    OrderStatus.FAILED: lambda o: MarkFailed(**_version(o), reason="undeliverable", **ADMIN),
    OrderStatus.RETURN_REQUESTED: lambda o: RequestReturn(**_version(o), reason="damaged", **CUSTOMER),
    OrderStatus.RETURN_APPROVED: lambda o: ApproveReturn(**_version(o), **ADMIN),
    OrderStatus.RETURN_REJECTED: lambda o: RejectReturn(**_version(o), reason="worn", **ADMIN),
    OrderStatus.RETURN_PICKUP_SCHEDULED: lambda o: ScheduleReturnPickup(
        **_version(o), pickup_time=o.created_at + timedelta(days=30), **ADMIN
    ),
    OrderStatus.RETURN_IN_TRANSIT: lambda o: MarkReturnInTransit(**_version(o), **RIDER),
    OrderStatus.RETURNED: lambda o: CompleteReturn(**_version(o), **ADMIN),
    OrderStatus.REFUND_PENDING: lambda o: InitiateRefund(**_version(o), **ADMIN),
    OrderStatus.REFUNDED: lambda o: CompleteRefund(**_version(o), reference="rf-1", **ADMIN),
}

# Statuses the shared ``order_at`` driver does not reach, built on one it does
EXTRA_STATES = {
    OrderStatus.PAYMENT_FAILED: (OrderStatus.PAYMENT_PROCESSING, [OrderStatus.PAYMENT_FAILED]),
    OrderStatus.ON_HOLD: (OrderStatus.PREPARING, [OrderStatus.ON_HOLD]),
    OrderStatus.RETURN_REJECTED: (OrderStatus.RETURN_REQUESTED, [OrderStatus.RETURN_REJECTED]),
    OrderStatus.REFUND_PENDING: (OrderStatus.RETURNED, [OrderStatus.REFUND_PENDING]),
    OrderStatus.REFUNDED: (OrderStatus.RETURNED, [OrderStatus.REFUND_PENDING, OrderStatus.REFUNDED]),
    OrderStatus.CANCELED: (OrderStatus.PENDING, [OrderStatus.CANCELED]),
    OrderStatus.FAILED: (OrderStatus.PAYMENT_PROCESSING, [OrderStatus.PAYMENT_FAILED, OrderStatus.FAILED]),
}

# A partial refund may be topped up while refund_pending
TOP_UP = (OrderStatus.REFUND_PENDING, OrderStatus.REFUND_PENDING)

# Every (status, target) pair the transition table forbids
FORBIDDEN_PAIRS = [
    (status, target)
    for status in OrderStatus
    for target in REQUEST_FOR_TARGET
    if target not in TRANSITIONS[status] and (status, target) != TOP_UP
]


@pytest.fixture()
def order_in(order_at, machine):
    def _in(status):
        start, steps = EXTRA_STATES.get(status, (status, []))
        order = order_at(start.value)
        for step in steps:
            order = machine.handle(REQUEST_FOR_TARGET[step](order))
        assert order.status == status.value
        return order

    return _in


@pytest.mark.parametrize(
    "status, target",
    FORBIDDEN_PAIRS,
    ids=[f"{status.value}->{target.value}" for status, target in FORBIDDEN_PAIRS],
)
def test_invalid_transition_leaves_order_untouched(status, target, order_in, machine, notifier, inventory):
    order = order_in(status)
    history_size = len(order.history)
    sent = len(notifier.sent)
    calls = list(inventory.calls)

    with pytest.raises(InvalidTransition) as exc:
        machine.handle(REQUEST_FOR_TARGET[target](order))

    assert exc.value.details["current"] == status.value
    stored = machine.get_order(order.id)
    assert stored.status == status.value
    assert stored.version == order.version
    assert len(stored.history) == history_size
    assert len(notifier.sent) == sent
    assert inventory.calls == calls


def test_forbidden_pairs_cover_the_table_complement():
    assert set(REQUEST_FOR_TARGET) == set(OrderStatus) - {OrderStatus.PENDING}

    allowed = sum(len(targets) for targets in TRANSITIONS.values())
    assert len(FORBIDDEN_PAIRS) == len(OrderStatus) * len(REQUEST_FOR_TARGET) - allowed - 1
