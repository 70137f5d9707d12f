"""Domain events for the Order aggregate.

Events are immutable facts raised alongside every accepted mutation. They
are published only when the mutation is persisted; a transition that is
rolled back never emits its events. Amounts are integer minor units.
"""

from protean.fields import DateTime, Identifier, Integer, String, Text

from orderflow.domain import orderflow


@orderflow.event(part_of="Order")
class OrderCreated:
    """A new order was placed, together with its items."""

    __version__ = 1

    order_id = Identifier(required=True)
    order_number = String(required=True)
    customer_id = Identifier(required=True)
    items = Text(required=True)  # JSON: list of item dicts
    payment_method = String(required=True)
    total = Integer(required=True)
    currency = String(default="INR")
    created_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class PaymentProcessingStarted:
    __version__ = 1

    order_id = Identifier(required=True)
    attempt_number = Integer(required=True)
    started_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderConfirmed:
    """Payment settled (or was deferred) and inventory is reserved."""

    __version__ = 1

    order_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    payment_id = String()
    payment_status = String(required=True)
    amount_paid = Integer(required=True)
    confirmed_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class PaymentFailed:
    __version__ = 1

    order_id = Identifier(required=True)
    reason = String(max_length=500)
    attempt_number = Integer(required=True)
    can_retry = String(required=True)  # serialized bool
    failed_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class PreparationStarted:
    __version__ = 1

    order_id = Identifier(required=True)
    started_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderReadyForPickup:
    __version__ = 1

    order_id = Identifier(required=True)
    ready_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderOutForDelivery:
    """Delivery personnel took the order, first dispatch or a retry."""

    __version__ = 1

    order_id = Identifier(required=True)
    personnel_id = String(required=True)
    attempt_number = Integer(required=True)
    estimated_delivery_time = DateTime()
    dispatched_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class DeliveryAttempted:
    __version__ = 1

    order_id = Identifier(required=True)
    attempt_number = Integer(required=True)
    reason = String(required=True, max_length=500)
    can_retry = String(required=True)  # serialized bool
    attempted_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderDelivered:
    __version__ = 1

    order_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    delivered_at = DateTime(required=True)
    return_window_ends_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderPutOnHold:
    __version__ = 1

    order_id = Identifier(required=True)
    held_from_status = String(required=True)
    reason = String(required=True, max_length=500)
    held_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class HoldReleased:
    __version__ = 1

    order_id = Identifier(required=True)
    restored_status = String(required=True)
    released_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderCanceled:
    """The order was intentionally terminated before delivery."""

    __version__ = 1

    order_id = Identifier(required=True)
    customer_id = Identifier(required=True)
    previous_status = String(required=True)
    reason = String(required=True, max_length=500)
    canceled_by = String(required=True)
    refund_amount = Integer(default=0)
    canceled_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderFailed:
    """Fulfillment became impossible; the order will not be delivered."""

    __version__ = 1

    order_id = Identifier(required=True)
    previous_status = String(required=True)
    reason = String(required=True, max_length=500)
    refund_amount = Integer(default=0)
    failed_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class ReturnRequested:
    __version__ = 1

    order_id = Identifier(required=True)
    reason = String(required=True, max_length=500)
    requested_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class ReturnApproved:
    __version__ = 1

    order_id = Identifier(required=True)
    approved_by = String(required=True)
    restock = String(required=True)  # serialized bool
    approved_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class ReturnRejected:
    __version__ = 1

    order_id = Identifier(required=True)
    reason = String(required=True, max_length=500)
    rejected_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class ReturnPickupScheduled:
    __version__ = 1

    order_id = Identifier(required=True)
    pickup_time = DateTime(required=True)
    scheduled_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class ReturnInTransit:
    __version__ = 1

    order_id = Identifier(required=True)
    picked_up_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderReturned:
    __version__ = 1

    order_id = Identifier(required=True)
    restock = String(required=True)  # serialized bool
    returned_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class RefundInitiated:
    """A refund was recorded; settlement happens outside this context."""

    __version__ = 1

    order_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    amount = Integer(required=True)
    reason = String(max_length=500)
    initiated_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class RefundCompleted:
    __version__ = 1

    order_id = Identifier(required=True)
    refund_id = Identifier(required=True)
    amount = Integer(required=True)
    reference = String(required=True)
    completed_at = DateTime(required=True)


@orderflow.event(part_of="Order")
class OrderAnnotated:
    """A note, customer contact or instruction change that leaves status alone."""

    __version__ = 1

    order_id = Identifier(required=True)
    action_type = String(required=True)
    content = Text(required=True)
    annotated_at = DateTime(required=True)
