"""Application tests for gateway callbacks through PaymentEventAdapter."""

import pytest
from orderflow.order.exceptions import ConcurrentModification, NotFound, ValidationError
from orderflow.order.order import OrderStatus, PaymentStatus
from orderflow.order.requests import CancelOrder, RecordPaymentFailure, StartPayment


def _payment_status_changes(order):
    return [e for e in order.history if e.action_type == "payment_status_change"]


class TestPaymentCaptured:
    def test_capture_confirms_pending_order(self, place_order, payments, inventory, notifier):
        order = place_order(unit_price=10000)
        assert order.status == OrderStatus.PENDING.value
        assert order.pricing.total == 10000

        order = payments.on_payment_captured(order.id, "pay_1")

        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_status == PaymentStatus.COMPLETED.value
        assert order.payment_id == "pay_1"
        assert inventory.is_reserved(str(order.id))
        assert len(_payment_status_changes(order)) == 1
        assert "order_confirmed" in notifier.events_for("cust-001")

    def test_capture_walks_through_processing_in_one_version(self, place_order, payments, machine):
        order = place_order()
        order = payments.on_payment_captured(order.id, "pay_1")

        assert order.version == 1
        actions = [e.action_type for e in machine.audit.entries(order)]
        assert actions == ["order_created", "status_change", "payment_status_change"]

    def test_replayed_capture_is_a_no_op(self, place_order, payments, machine, inventory):
        order = place_order()
        first = payments.on_payment_captured(order.id, "pay_1")
        second = payments.on_payment_captured(order.id, "pay_1")

        stored = machine.get_order(order.id)
        assert second.version == first.version == stored.version
        assert stored.status == OrderStatus.CONFIRMED.value
        assert len(_payment_status_changes(stored)) == 1
        assert inventory.calls.count(("reserve", str(order.id))) == 1

    def test_capture_for_processing_order(self, order_at, payments):
        order = order_at("payment_processing")
        order = payments.on_payment_captured(order.id, "pay_1")
        assert order.status == OrderStatus.CONFIRMED.value

    def test_late_success_after_failure_ignores_attempt_limit(self, place_order, machine, payments, policy):
        order = place_order()
        for _ in range(policy.max_payment_attempts):
            order = machine.start_payment(
                StartPayment(order_id=order.id, expected_version=order.version, actor_id="cust-001")
            )
            order = machine.record_payment_failure(
                RecordPaymentFailure(
                    order_id=order.id, expected_version=order.version, reason="declined", actor_id="gateway"
                )
            )
        assert order.payment_attempts == policy.max_payment_attempts

        order = payments.on_payment_captured(order.id, "pay_late")
        assert order.status == OrderStatus.CONFIRMED.value
        assert order.payment_id == "pay_late"

    def test_capture_on_canceled_order_initiates_refund(self, place_order, machine, payments, inventory):
        order = place_order()
        order = machine.cancel_order(
            CancelOrder(order_id=order.id, expected_version=order.version, reason="changed my mind", actor_id="cust-001")
        )

        order = payments.on_payment_captured(order.id, "pay_1")

        assert order.status == OrderStatus.CANCELED.value
        assert order.total_paid == 10000
        assert order.payment_status == PaymentStatus.REFUND_INITIATED.value
        assert order.pending_refund_total() == 10000
        assert not inventory.is_reserved(str(order.id))

    def test_second_capture_with_other_id_after_confirmation_is_ignored(self, order_at, payments):
        order = order_at("preparing")
        result = payments.on_payment_captured(order.id, "pay_2")
        assert result.version == order.version
        assert result.payment_id == "pay_1"

    def test_amount_mismatch_rejected(self, place_order, payments, machine):
        order = place_order()
        with pytest.raises(ValidationError):
            payments.on_payment_captured(order.id, "pay_1", amount=500)
        assert machine.get_order(order.id).status == OrderStatus.PENDING.value

    def test_blank_payment_id_rejected(self, place_order, payments):
        order = place_order()
        with pytest.raises(ValidationError):
            payments.on_payment_captured(order.id, " ")

    def test_unknown_order(self, payments):
        with pytest.raises(NotFound):
            payments.on_payment_captured("missing-order", "pay_1")


class TestPaymentFailed:
    def test_failure_from_pending(self, place_order, payments):
        order = place_order()
        order = payments.on_payment_failed(order.id, reason="insufficient funds")
        assert order.status == OrderStatus.PAYMENT_FAILED.value
        assert order.payment_status == PaymentStatus.FAILED.value
        assert order.payment_attempts == 1

    def test_replayed_failure_is_a_no_op(self, place_order, payments):
        order = place_order()
        first = payments.on_payment_failed(order.id, reason="insufficient funds")
        second = payments.on_payment_failed(order.id, reason="insufficient funds")
        assert second.version == first.version
        assert second.payment_attempts == 1

    def test_failure_after_confirmation_is_ignored(self, order_at, payments):
        order = order_at("confirmed")
        result = payments.on_payment_failed(order.id, reason="late decline")
        assert result.status == OrderStatus.CONFIRMED.value
        assert result.version == order.version

    def test_failure_then_success(self, place_order, payments):
        order = place_order()
        payments.on_payment_failed(order.id, reason="timeout")
        order = payments.on_payment_captured(order.id, "pay_1")
        assert order.status == OrderStatus.CONFIRMED.value


def test_callback_errors_propagate(place_order, payments, store, monkeypatch):
    order = place_order()

    def conflict(order, expected_version):
        raise ConcurrentModification(str(order.id), expected_version, expected_version + 1)

    monkeypatch.setattr(store, "save", conflict)
    with pytest.raises(ConcurrentModification):
        payments.on_payment_captured(order.id, "pay_1")
