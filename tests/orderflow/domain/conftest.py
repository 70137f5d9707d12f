from datetime import UTC, datetime, timedelta

import pytest

T0 = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


@pytest.fixture()
def build_order():
    """Build an in-memory order and walk it to ``status`` with aggregate methods."""
    from orderflow.order.order import Actor, Order

    customer = Actor(id="cust-001", role="customer")
    admin = Actor(id="admin-001", role="admin")

    def _build(status="pending", payment_method="card", unit_price=10000, quantity=1):
        order = Order.create(
            customer_id="cust-001",
            items_data=[
                {
                    "product_id": "prod-001",
                    "product_name": "Ceramic Mug",
                    "unit_price": unit_price,
                    "quantity": quantity,
                }
            ],
            payment_method=payment_method,
            actor=customer,
            at=T0,
        )
        steps = [
            ("payment_processing", lambda: order.begin_payment(customer, at=T0)),
            ("confirmed", lambda: order.confirm(admin, payment_id="pay_1", at=T0)),
            ("preparing", lambda: order.start_preparing(admin, at=T0)),
            ("ready_for_pickup", lambda: order.mark_ready_for_pickup(admin, at=T0)),
            ("out_for_delivery", lambda: order.dispatch(admin, "rider-7", at=T0)),
            ("delivered", lambda: order.mark_delivered(admin, timedelta(days=7), at=T0)),
            ("return_requested", lambda: order.request_return(customer, "damaged item", at=T0)),
            ("return_approved", lambda: order.approve_return(admin, restock=True, at=T0)),
            ("return_pickup_scheduled", lambda: order.schedule_return_pickup(admin, T0 + timedelta(days=1), at=T0)),
            ("return_in_transit", lambda: order.mark_return_in_transit(admin, at=T0)),
            ("returned", lambda: order.complete_return(admin, at=T0)),
        ]
        if status == "delivery_attempted":
            steps = steps[:5] + [
                ("delivery_attempted", lambda: order.record_delivery_attempt(admin, "customer not home", 3, at=T0))
            ]

        if status != "pending":
            for name, step in steps:
                step()
                if name == status:
                    break
            else:
                raise ValueError(f"Cannot build an order in {status}")

        order._events.clear()
        return order

    return _build


@pytest.fixture()
def admin():
    from orderflow.order.order import Actor

    return Actor(id="admin-001", role="admin")


@pytest.fixture()
def customer():
    from orderflow.order.order import Actor

    return Actor(id="cust-001", role="customer")
