"""Post-delivery returns and refunds.

A delivered order may be returned while its return window is open. Approved
returns go through pickup and transit before the goods are back; the refund
is then initiated and completed with an external settlement reference.
Refunds may be partial; across any sequence of them the refunded total never
exceeds what was paid.
"""

from datetime import UTC

import structlog

from orderflow.order.exceptions import InvalidTransition, PolicyViolation, ValidationError
from orderflow.order.order import OrderStatus

logger = structlog.get_logger(__name__)

# Terminated orders whose captured payment is refunded without a status change
_TERMINATED_STATES = frozenset({OrderStatus.CANCELED, OrderStatus.FAILED})


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ReturnRefundWorkflow:
    def __init__(self, policy):
        self.policy = policy

    # -------------------------------------------------------------------
    # Returns
    # -------------------------------------------------------------------
    def return_window_open(self, order, now):
        if order.status != OrderStatus.DELIVERED.value or order.return_window_ends_at is None:
            return False
        return _aware(now) <= _aware(order.return_window_ends_at)

    def request(self, order, actor, reason, now):
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to request a return", field="reason")
        if order.status != OrderStatus.DELIVERED.value:
            raise InvalidTransition(
                order.status,
                OrderStatus.RETURN_REQUESTED.value,
                f"Only delivered orders can be returned (status {order.status})",
            )
        if not self.return_window_open(order, now):
            raise PolicyViolation(
                "Return window has closed",
                return_window_ends_at=order.return_window_ends_at.isoformat(),
            )

        order.request_return(actor, reason, at=now)
        logger.info("Return requested", order_id=str(order.id), reason=reason)

    def approve(self, order, actor, notes=None, restock=False, now=None):
        order.approve_return(actor, notes=notes, restock=restock, at=now)
        logger.info("Return approved", order_id=str(order.id), approved_by=actor.id, restock=bool(restock))

    def reject(self, order, actor, reason, now=None):
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a return", field="reason")
        order.reject_return(actor, reason, at=now)
        logger.info("Return rejected", order_id=str(order.id), reason=reason)

    def schedule_pickup(self, order, actor, pickup_time, notes=None, now=None):
        order.schedule_return_pickup(actor, pickup_time, notes=notes, at=now)

    def mark_in_transit(self, order, actor, now=None):
        order.mark_return_in_transit(actor, at=now)

    def complete(self, order, actor, restock=None, notes=None, now=None):
        order.complete_return(actor, restock=restock, notes=notes, at=now)
        logger.info("Return received", order_id=str(order.id), restock=bool(order.restock_on_return))

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def initiate_refund(self, order, actor, amount=None, reason=None, now=None):
        """Initiate a refund, by default for the whole refundable balance."""
        status = OrderStatus(order.status)
        if status not in (OrderStatus.RETURNED, OrderStatus.REFUND_PENDING):
            raise InvalidTransition(
                status.value,
                OrderStatus.REFUND_PENDING.value,
                f"Refunds can only be initiated for returned orders (status {status.value})",
            )

        balance = order.refundable_balance()
        if amount is None:
            amount = balance
        elif not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Refund amount must be a positive integer", field="amount", amount=amount)

        if amount <= 0:
            raise PolicyViolation("Nothing left to refund", refundable_balance=balance)
        if amount > balance:
            raise PolicyViolation(
                f"Refund of {amount} exceeds refundable balance of {balance}",
                amount=amount,
                refundable_balance=balance,
            )

        refund = order.initiate_refund(actor, amount, reason=reason, at=now)
        logger.info("Refund initiated", order_id=str(order.id), amount=amount, refund_id=str(refund.id))
        return refund

    def complete_refund(self, order, actor, reference, now=None):
        """Settle the oldest initiated refund with an external reference."""
        if not reference or not reference.strip():
            raise ValidationError("A settlement reference is required", field="reference")

        status = OrderStatus(order.status)
        if status != OrderStatus.REFUND_PENDING and status not in _TERMINATED_STATES:
            raise InvalidTransition(
                status.value,
                OrderStatus.REFUNDED.value,
                f"No refund can be completed in status {status.value}",
            )
        if not order.pending_refunds():
            raise InvalidTransition(
                status.value,
                OrderStatus.REFUNDED.value,
                "Order has no initiated refund to complete",
            )

        refund = order.complete_refund(actor, reference, at=now)
        logger.info(
            "Refund completed",
            order_id=str(order.id),
            amount=refund.amount,
            reference=reference,
            status=order.status,
        )
        return refund
