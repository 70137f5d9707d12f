from datetime import UTC, datetime, timedelta

import pytest
from protean.integrations.pytest import DomainFixture


class FrozenClock:
    """Clock injected into the state machine; moves only when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def orderflow_bed():
    from orderflow.domain import orderflow

    bed = DomainFixture(orderflow)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(orderflow_bed):
    with orderflow_bed.domain_context():
        yield


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2026, 3, 2, 10, 0, tzinfo=UTC))


@pytest.fixture()
def inventory():
    from orderflow.inventory.fake_adapter import FakeInventory

    return FakeInventory()


@pytest.fixture()
def notifier():
    from orderflow.notification.fake_adapter import FakeNotifier

    return FakeNotifier()


@pytest.fixture()
def store():
    from orderflow.domain import orderflow
    from orderflow.persistence.repository_adapter import RepositoryOrderStore

    return RepositoryOrderStore(orderflow)


@pytest.fixture()
def policy():
    from orderflow.order.policy import LifecyclePolicy

    return LifecyclePolicy()


@pytest.fixture()
def machine(store, inventory, notifier, policy, clock):
    from orderflow.order.machine import OrderStateMachine

    return OrderStateMachine(store, inventory, notifier, policy=policy, clock=clock)


@pytest.fixture()
def payments(machine):
    from orderflow.order.payment_events import PaymentEventAdapter

    return PaymentEventAdapter(machine)


@pytest.fixture()
def coordinator(machine):
    from orderflow.order.delivery import StateMachineDeliveryCoordinator

    return StateMachineDeliveryCoordinator(machine)


@pytest.fixture()
def place_order(machine):
    """Create an order through the state machine."""
    from orderflow.order.requests import CreateOrder

    def _place(payment_method="card", unit_price=10000, quantity=1, **kwargs):
        return machine.create_order(
            CreateOrder(
                customer_id="cust-001",
                items=[
                    {
                        "product_id": "prod-001",
                        "product_name": "Ceramic Mug",
                        "unit_price": unit_price,
                        "quantity": quantity,
                    }
                ],
                payment_method=payment_method,
                actor_id="cust-001",
                actor_role="customer",
                **kwargs,
            )
        )

    return _place


@pytest.fixture()
def order_at(machine, payments, place_order, clock):
    """Create an order and drive it to ``status`` through the state machine."""
    from orderflow.order.requests import (
        ApproveReturn,
        AssignDelivery,
        CompleteReturn,
        ConfirmPayment,
        MarkDelivered,
        MarkReadyForPickup,
        MarkReturnInTransit,
        RecordDeliveryAttempt,
        RequestReturn,
        ScheduleReturnPickup,
        StartPayment,
        StartPreparing,
    )

    admin = {"actor_id": "admin-001", "actor_role": "admin"}
    rider = {"actor_id": "rider-7", "actor_role": "delivery"}
    customer = {"actor_id": "cust-001", "actor_role": "customer"}

    def confirm(order):
        if order.payment_method == "cod":
            return machine.confirm_payment(
                ConfirmPayment(order_id=order.id, expected_version=order.version, actor_id="system", actor_role="system")
            )
        return payments.on_payment_captured(order.id, "pay_1")

    steps = {
        "payment_processing": lambda o: machine.start_payment(
            StartPayment(order_id=o.id, expected_version=o.version, **customer)
        ),
        "confirmed": confirm,
        "preparing": lambda o: machine.start_preparing(StartPreparing(order_id=o.id, expected_version=o.version, **admin)),
        "ready_for_pickup": lambda o: machine.mark_ready_for_pickup(
            MarkReadyForPickup(order_id=o.id, expected_version=o.version, **admin)
        ),
        "out_for_delivery": lambda o: machine.assign_delivery(
            AssignDelivery(order_id=o.id, expected_version=o.version, personnel_id="rider-7", **admin)
        ),
        "delivery_attempted": lambda o: machine.record_delivery_attempt(
            RecordDeliveryAttempt(order_id=o.id, expected_version=o.version, reason="customer not home", **rider)
        ),
        "delivered": lambda o: machine.mark_delivered(MarkDelivered(order_id=o.id, expected_version=o.version, **rider)),
        "return_requested": lambda o: machine.request_return(
            RequestReturn(order_id=o.id, expected_version=o.version, reason="damaged item", **customer)
        ),
        "return_approved": lambda o: machine.approve_return(
            ApproveReturn(order_id=o.id, expected_version=o.version, restock=True, **admin)
        ),
        "return_pickup_scheduled": lambda o: machine.schedule_return_pickup(
            ScheduleReturnPickup(
                order_id=o.id, expected_version=o.version, pickup_time=clock() + timedelta(days=1), **admin
            )
        ),
        "return_in_transit": lambda o: machine.mark_return_in_transit(
            MarkReturnInTransit(order_id=o.id, expected_version=o.version, **rider)
        ),
        "returned": lambda o: machine.complete_return(CompleteReturn(order_id=o.id, expected_version=o.version, **admin)),
    }
    happy_path = [
        "payment_processing",
        "confirmed",
        "preparing",
        "ready_for_pickup",
        "out_for_delivery",
        "delivered",
        "return_requested",
        "return_approved",
        "return_pickup_scheduled",
        "return_in_transit",
        "returned",
    ]

    def _at(status, payment_method="card"):
        order = place_order(payment_method=payment_method)
        if status == "pending":
            return order
        path = happy_path[:5] + ["delivery_attempted"] if status == "delivery_attempted" else happy_path
        for name in path:
            order = steps[name](order)
            if name == status:
                return order
        raise ValueError(f"Cannot drive an order to {status}")

    return _at
