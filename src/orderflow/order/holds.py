"""Hold and release of in-flight orders.

A hold freezes an order in ``on_hold`` and remembers the state it was taken
from. Release goes back to exactly that state and nowhere else.
"""

import structlog

from orderflow.order.exceptions import InvalidTransition, ValidationError
from orderflow.order.order import HOLDABLE_STATES, OrderStatus

logger = structlog.get_logger(__name__)


class HoldManager:
    def captured_state(self, order):
        """The state a held order returns to, or None if not held."""
        if order.status != OrderStatus.ON_HOLD.value:
            return None
        return order.held_from_status

    def effective_status(self, order):
        """Status used for guards: the captured state while held."""
        return self.captured_state(order) or order.status

    def can_hold(self, order):
        return OrderStatus(order.status) in HOLDABLE_STATES

    def hold(self, order, actor, reason, note=None, at=None):
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to put an order on hold", field="reason")
        if not self.can_hold(order):
            raise InvalidTransition(
                order.status,
                OrderStatus.ON_HOLD.value,
                f"Orders in {order.status} cannot be put on hold",
            )

        order.put_on_hold(actor, reason, note=note, at=at)
        logger.info(
            "Order put on hold",
            order_id=str(order.id),
            held_from_status=order.held_from_status,
            reason=reason,
        )

    def release(self, order, actor, target=None, note=None, at=None):
        """Release a hold. ``target`` defaults to the captured state."""
        captured = self.captured_state(order)
        if captured is None:
            raise InvalidTransition(
                order.status,
                target or "",
                f"Order is not on hold (status {order.status})",
            )

        order.release_hold(actor, target or captured, note=note, at=at)
        logger.info("Order hold released", order_id=str(order.id), restored_status=order.status)
