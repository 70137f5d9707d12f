"""Payment gateway callbacks.

Gateways deliver callbacks at least once and in no guaranteed order, so both
handlers are idempotent: a replayed capture or failure leaves the order as it
is. Errors are not caught here; they propagate so the sender redelivers.
"""

import structlog

from orderflow.order.exceptions import ValidationError
from orderflow.order.order import Actor, ActorRole, OrderStatus

logger = structlog.get_logger(__name__)

GATEWAY_ACTOR = Actor(id="payment-gateway", role=ActorRole.GATEWAY.value)

_AWAITING_PAYMENT = frozenset(
    {
        OrderStatus.PENDING.value,
        OrderStatus.PAYMENT_PROCESSING.value,
        OrderStatus.PAYMENT_FAILED.value,
    }
)
_TERMINATED = frozenset({OrderStatus.CANCELED.value, OrderStatus.FAILED.value})


class PaymentEventAdapter:
    def __init__(self, machine, actor=GATEWAY_ACTOR):
        self.machine = machine
        self.actor = actor

    def on_payment_captured(self, order_id, payment_id, amount=None):
        """Settle the order for a captured payment.

        Orders still awaiting payment are walked to ``confirmed``. Orders that
        were terminated in the meantime keep their status and the captured
        amount is put up for refund.
        """
        if not payment_id or not str(payment_id).strip():
            raise ValidationError("Payment id is required", field="payment_id")

        order = self.machine.get_order(order_id)

        if order.payment_id == payment_id and order.status not in _AWAITING_PAYMENT:
            logger.info("Payment already processed", order_id=order_id, payment_id=payment_id)
            return order

        if amount is not None and amount != order.pricing.total:
            raise ValidationError(
                f"Captured amount {amount} does not match order total {order.pricing.total}",
                field="amount",
                amount=amount,
                total=order.pricing.total,
            )

        if order.status in _AWAITING_PAYMENT:

            def settle(order, now):
                # A late success after a failure re-enters processing without the attempt limit
                if order.status != OrderStatus.PAYMENT_PROCESSING.value:
                    order.begin_payment(self.actor, at=now)
                order.confirm(self.actor, payment_id=payment_id, at=now)

            return self.machine.execute(order_id, order.version, self.actor, "payment_captured", settle)

        if order.status in _TERMINATED and not order.payment_completed():
            logger.warning(
                "Payment captured for terminated order",
                order_id=order_id,
                payment_id=payment_id,
                status=order.status,
            )
            return self.machine.execute(
                order_id,
                order.version,
                self.actor,
                "payment_captured",
                lambda order, now: order.record_late_payment(self.actor, payment_id, at=now),
            )

        logger.warning(
            "Ignoring payment capture",
            order_id=order_id,
            payment_id=payment_id,
            status=order.status,
            payment_status=order.payment_status,
        )
        return order

    def on_payment_failed(self, order_id, reason=None):
        """Record a failed payment attempt for an order awaiting settlement."""
        order = self.machine.get_order(order_id)

        if order.status not in (OrderStatus.PENDING.value, OrderStatus.PAYMENT_PROCESSING.value):
            logger.info(
                "Ignoring payment failure",
                order_id=order_id,
                status=order.status,
                reason=reason,
            )
            return order

        def fail(order, now):
            if order.status == OrderStatus.PENDING.value:
                order.begin_payment(self.actor, at=now)
            order.fail_payment(
                self.actor,
                reason=reason,
                can_retry=self.machine.policy.can_retry_payment(order.payment_attempts or 0),
                at=now,
            )

        return self.machine.execute(order_id, order.version, self.actor, "payment_failed", fail)
