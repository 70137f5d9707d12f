"""Order aggregate: the entity evolved by the order lifecycle state machine.

The aggregate owns its items, an append-only history and its refund records.
Every mutating method checks the transition table, records exactly one
history entry per accepted transition and raises the matching domain event.
Policy guards that depend on configuration (retry limits, return window,
cancellation overrides) live in the state machine components; this module
only knows the shape of the graph.

Transition graph:
    pending → payment_processing → confirmed → preparing → ready_for_pickup →
    out_for_delivery → delivered
    payment_processing → payment_failed → payment_processing (retry)
    out_for_delivery → delivery_attempted → out_for_delivery (retry)
    {preparing, ready_for_pickup, out_for_delivery, delivery_attempted} ⇄ on_hold
    delivered → return_requested → return_approved → return_pickup_scheduled →
    return_in_transit → returned → refund_pending → refunded
    return_requested → return_rejected
    pre-delivery states → canceled | failed
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from protean import atomic_change, invariant
from protean.exceptions import ValidationError
from protean.fields import (
    Boolean,
    DateTime,
    HasMany,
    Identifier,
    Integer,
    String,
    Text,
    ValueObject,
)

from orderflow.domain import orderflow
from orderflow.order.events import (
    DeliveryAttempted,
    HoldReleased,
    OrderAnnotated,
    OrderCanceled,
    OrderConfirmed,
    OrderCreated,
    OrderDelivered,
    OrderFailed,
    OrderOutForDelivery,
    OrderPutOnHold,
    OrderReadyForPickup,
    OrderReturned,
    PaymentFailed,
    PaymentProcessingStarted,
    PreparationStarted,
    RefundCompleted,
    RefundInitiated,
    ReturnApproved,
    ReturnInTransit,
    ReturnPickupScheduled,
    ReturnRejected,
    ReturnRequested,
)
from orderflow.order.exceptions import InvalidTransition


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING = "pending"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_FAILED = "payment_failed"
    CONFIRMED = "confirmed"
    ON_HOLD = "on_hold"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERY_ATTEMPTED = "delivery_attempted"
    DELIVERED = "delivered"
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURN_REJECTED = "return_rejected"
    RETURN_PICKUP_SCHEDULED = "return_pickup_scheduled"
    RETURN_IN_TRANSIT = "return_in_transit"
    RETURNED = "returned"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    FAILED = "failed"


class PaymentStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(Enum):
    CARD = "card"
    UPI = "upi"
    COD = "cod"


class RefundStatus(Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"


class ActorRole(Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"
    GATEWAY = "gateway"
    DELIVERY = "delivery"


class HistoryAction(Enum):
    ORDER_CREATED = "order_created"
    STATUS_CHANGE = "status_change"
    PAYMENT_STATUS_CHANGE = "payment_status_change"
    DELIVERY_ASSIGNMENT = "delivery_assignment"
    DELIVERY_ATTEMPT = "delivery_attempt"
    ON_HOLD = "on_hold"
    HOLD_RELEASED = "hold_released"
    CANCELLATION = "cancellation"
    FAILURE = "failure"
    RETURN_REQUEST = "return_request"
    RETURN_APPROVAL = "return_approval"
    RETURN_REJECTION = "return_rejection"
    RETURN_PICKUP = "return_pickup"
    RETURN_COMPLETE = "return_complete"
    REFUND_INITIATED = "refund_initiated"
    REFUND_COMPLETED = "refund_completed"
    NOTE = "note"
    CUSTOMER_CONTACT = "customer_contact"
    DELIVERY_INSTRUCTIONS_UPDATE = "delivery_instructions_update"


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------
_HOLD_RESUMABLE = {
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERY_ATTEMPTED,
}

TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAYMENT_PROCESSING, OrderStatus.CANCELED}),
    OrderStatus.PAYMENT_PROCESSING: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELED}
    ),
    OrderStatus.PAYMENT_FAILED: frozenset(
        {OrderStatus.PAYMENT_PROCESSING, OrderStatus.CANCELED, OrderStatus.FAILED}
    ),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELED, OrderStatus.FAILED}),
    OrderStatus.PREPARING: frozenset(
        {OrderStatus.READY_FOR_PICKUP, OrderStatus.ON_HOLD, OrderStatus.CANCELED, OrderStatus.FAILED}
    ),
    OrderStatus.READY_FOR_PICKUP: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.ON_HOLD, OrderStatus.CANCELED, OrderStatus.FAILED}
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.DELIVERY_ATTEMPTED, OrderStatus.ON_HOLD, OrderStatus.CANCELED}
    ),
    OrderStatus.DELIVERY_ATTEMPTED: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.ON_HOLD, OrderStatus.CANCELED, OrderStatus.FAILED}
    ),
    OrderStatus.ON_HOLD: frozenset(_HOLD_RESUMABLE | {OrderStatus.CANCELED, OrderStatus.FAILED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_REQUESTED}),
    OrderStatus.RETURN_REQUESTED: frozenset({OrderStatus.RETURN_APPROVED, OrderStatus.RETURN_REJECTED}),
    OrderStatus.RETURN_APPROVED: frozenset({OrderStatus.RETURN_PICKUP_SCHEDULED}),
    OrderStatus.RETURN_PICKUP_SCHEDULED: frozenset({OrderStatus.RETURN_IN_TRANSIT}),
    OrderStatus.RETURN_IN_TRANSIT: frozenset({OrderStatus.RETURNED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUND_PENDING}),
    OrderStatus.REFUND_PENDING: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.RETURN_REJECTED: frozenset(),  # Terminal
    OrderStatus.REFUNDED: frozenset(),  # Terminal
    OrderStatus.CANCELED: frozenset(),  # Terminal
    OrderStatus.FAILED: frozenset(),  # Terminal
}

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

HOLDABLE_STATES = frozenset(status for status in _HOLD_RESUMABLE if OrderStatus.ON_HOLD in TRANSITIONS[status])

# Cancellation open to any actor; later states need an admin override
FREELY_CANCELLABLE_STATES = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.PAYMENT_PROCESSING,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
    }
)
OVERRIDE_CANCELLABLE_STATES = frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERY_ATTEMPTED})

# Payment must be settled in these states, except where settlement is deferred
_SETTLED_STATES = frozenset(
    set(OrderStatus)
    - {
        OrderStatus.PENDING,
        OrderStatus.PAYMENT_PROCESSING,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CANCELED,
        OrderStatus.FAILED,
    }
)
_DEFERRABLE_STATES = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERY_ATTEMPTED,
        OrderStatus.ON_HOLD,
    }
)
DEFERRED_SETTLEMENT_METHODS = frozenset({PaymentMethod.COD.value})


def is_terminal(status):
    return OrderStatus(status) in TERMINAL_STATES


def can_transition(current, target):
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def _now():
    return datetime.now(UTC)


@dataclass(frozen=True)
class Actor:
    """Who asked for a change: a customer, an admin, the gateway or the system."""

    id: str
    role: str = ActorRole.CUSTOMER.value

    @property
    def is_admin(self):
        return self.role in (ActorRole.ADMIN.value, ActorRole.SYSTEM.value)


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM.value)


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@orderflow.value_object(part_of="Order")
class OrderPricing:
    """Monetary summary of an order in integer minor units.

    Amounts are locked when the order is created.
    """

    subtotal = Integer(default=0, min_value=0)
    tax = Integer(default=0, min_value=0)
    delivery_fee = Integer(default=0, min_value=0)
    discount = Integer(default=0, min_value=0)
    total = Integer(default=0, min_value=0)
    currency = String(max_length=3, default="INR")

    @invariant.post
    def total_matches_components(self):
        expected = (self.subtotal or 0) + (self.tax or 0) + (self.delivery_fee or 0) - (self.discount or 0)
        if self.total != expected:
            raise ValidationError({"total": [f"Total {self.total} does not match computed total {expected}"]})


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@orderflow.entity(part_of="Order")
class OrderItem:
    """A line item, created with the order and never edited afterwards."""

    product_id = Identifier(required=True)
    product_name = String(required=True, max_length=255)
    unit_price = Integer(required=True, min_value=0)
    quantity = Integer(required=True, min_value=1)
    total_price = Integer(min_value=0)


@orderflow.entity(part_of="Order")
class OrderHistoryEntry:
    """One accepted transition or annotation. Appended, never changed."""

    action_type = String(required=True, choices=HistoryAction)
    old_value = String(max_length=100)
    new_value = String(max_length=100)
    reason = String(max_length=500)
    note = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(required=True, choices=ActorRole)
    created_at = DateTime(required=True)


@orderflow.entity(part_of="Order")
class RefundRecord:
    """A refund against the order. Settled with an external reference."""

    amount = Integer(required=True, min_value=1)
    status = String(choices=RefundStatus, default=RefundStatus.INITIATED.value)
    reason = String(max_length=500)
    reference = String(max_length=255)
    initiated_at = DateTime(required=True)
    completed_at = DateTime()


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@orderflow.aggregate
class Order:
    order_number = String(required=True, max_length=50)
    customer_id = Identifier(required=True)
    status = String(choices=OrderStatus, default=OrderStatus.PENDING.value)
    payment_status = String(choices=PaymentStatus, default=PaymentStatus.PENDING.value)
    payment_method = String(required=True, choices=PaymentMethod)
    payment_id = String(max_length=255)
    payment_attempts = Integer(default=0)
    version = Integer(default=0)
    pricing = ValueObject(OrderPricing)
    items = HasMany(OrderItem)
    history = HasMany(OrderHistoryEntry)
    refunds = HasMany(RefundRecord)
    total_paid = Integer(default=0)
    total_refunded = Integer(default=0)
    refund_reference = String(max_length=255)
    inventory_reserved = Boolean(default=False)
    deferred_settlement = Boolean(default=False)

    # Per-phase timestamps
    created_at = DateTime()
    updated_at = DateTime()
    payment_started_at = DateTime()
    confirmed_at = DateTime()
    preparing_at = DateTime()
    ready_for_pickup_at = DateTime()
    out_for_delivery_at = DateTime()
    delivery_attempted_at = DateTime()
    delivered_at = DateTime()
    canceled_at = DateTime()
    failed_at = DateTime()
    return_requested_at = DateTime()
    return_approved_at = DateTime()
    return_rejected_at = DateTime()
    return_pickup_at = DateTime()
    return_in_transit_at = DateTime()
    returned_at = DateTime()
    refund_initiated_at = DateTime()
    refund_completed_at = DateTime()

    # Hold
    on_hold_reason = String(max_length=500)
    on_hold_at = DateTime()
    held_from_status = String(choices=OrderStatus)

    # Delivery
    delivery_personnel_id = String(max_length=255)
    estimated_delivery_time = DateTime()
    delivery_attempt_count = Integer(default=0)
    delivery_failure_reason = String(max_length=500)
    delivery_instructions = Text()
    delivery_instructions_updated_at = DateTime()
    return_window_ends_at = DateTime()

    # Returns
    return_reason = String(max_length=500)
    return_notes = Text()
    return_approved_by = String(max_length=255)
    return_rejection_reason = String(max_length=500)
    restock_on_return = Boolean(default=False)

    # Termination
    cancellation_reason = String(max_length=500)
    canceled_by = String(max_length=50)
    failure_reason = String(max_length=500)

    @invariant.post
    def payment_settles_before_fulfillment(self):
        if not self.status or self.payment_status != PaymentStatus.PENDING.value:
            return
        status = OrderStatus(self.status)
        if status not in _SETTLED_STATES:
            return
        if status in _DEFERRABLE_STATES and self.deferred_settlement:
            return
        raise ValidationError({"payment_status": [f"Order cannot be {status.value} while payment is pending"]})

    @invariant.post
    def refunds_cannot_exceed_amount_paid(self):
        if (self.total_refunded or 0) + self.pending_refund_total() > (self.total_paid or 0):
            raise ValidationError({"refunds": ["Refunded amount cannot exceed the amount paid"]})

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        customer_id,
        items_data,
        payment_method,
        actor,
        tax=0,
        delivery_fee=0,
        discount=0,
        currency="INR",
        defer_settlement=None,
        at=None,
    ):
        """Create a new order in ``pending`` together with its items.

        Args:
            customer_id: The customer placing the order.
            items_data: List of dicts with product_id, product_name,
                        unit_price (minor units) and quantity.
            payment_method: One of ``card``, ``upi``, ``cod``.
            actor: The ``Actor`` placing the order.
            defer_settlement: Collect payment at delivery instead of at
                        confirmation. Defaults to true for ``cod``.
        """
        if not items_data:
            raise ValidationError({"items": ["Order must have at least one item"]})

        now = at or _now()
        items = []
        for data in items_data:
            item = OrderItem(
                product_id=data.get("product_id"),
                product_name=data.get("product_name"),
                unit_price=data.get("unit_price"),
                quantity=data.get("quantity"),
            )
            item.total_price = item.unit_price * item.quantity
            items.append(item)
        subtotal = sum(item.total_price for item in items)
        pricing = OrderPricing(
            subtotal=subtotal,
            tax=tax,
            delivery_fee=delivery_fee,
            discount=discount,
            total=subtotal + tax + delivery_fee - discount,
            currency=currency,
        )

        order = cls(
            order_number=f"ORD-{now.year}-{uuid4().hex[:6].upper()}",
            customer_id=customer_id,
            payment_method=payment_method,
            pricing=pricing,
            items=items,
            deferred_settlement=(
                payment_method in DEFERRED_SETTLEMENT_METHODS if defer_settlement is None else defer_settlement
            ),
            created_at=now,
            updated_at=now,
        )
        order.record(
            HistoryAction.ORDER_CREATED,
            actor,
            new_value=OrderStatus.PENDING.value,
            at=now,
        )
        order.raise_(
            OrderCreated(
                order_id=str(order.id),
                order_number=order.order_number,
                customer_id=str(customer_id),
                items=json.dumps(order.line_items()),
                payment_method=payment_method,
                total=pricing.total,
                currency=currency,
                created_at=now,
            )
        )
        return order

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def line_items(self):
        """Items in the shape the inventory collaborator expects."""
        return [{"product_id": str(item.product_id), "quantity": item.quantity} for item in self.items]

    def is_terminal(self):
        return is_terminal(self.status)

    def pending_refunds(self):
        return [r for r in (self.refunds or []) if r.status == RefundStatus.INITIATED.value]

    def pending_refund_total(self):
        return sum(r.amount for r in self.pending_refunds())

    def refundable_balance(self):
        return (self.total_paid or 0) - (self.total_refunded or 0) - self.pending_refund_total()

    def payment_completed(self):
        return (self.total_paid or 0) > 0

    def settlement_deferred(self):
        return bool(self.deferred_settlement)

    # -------------------------------------------------------------------
    # History and transition helpers
    # -------------------------------------------------------------------
    def record(self, action, actor, old_value=None, new_value=None, reason=None, note=None, at=None):
        """Append one history entry. Entries are never edited or removed."""
        self.add_history(
            OrderHistoryEntry(
                action_type=HistoryAction(action).value,
                old_value=old_value,
                new_value=new_value,
                reason=reason,
                note=note,
                actor_id=actor.id,
                actor_role=actor.role,
                created_at=at or _now(),
            )
        )

    def _assert_can_transition(self, target):
        current = OrderStatus(self.status)
        if current in TERMINAL_STATES:
            raise InvalidTransition(
                current.value,
                target.value,
                f"Order is in terminal state {current.value}",
            )
        if target not in TRANSITIONS[current]:
            raise InvalidTransition(current.value, target.value)

    def _transition(self, target, action, actor, at, reason=None, note=None):
        """Move to ``target`` and record it. Returns the previous status."""
        self._assert_can_transition(target)
        previous = self.status
        self.status = target.value
        self.updated_at = at
        self.record(action, actor, old_value=previous, new_value=target.value, reason=reason, note=note, at=at)
        return previous

    def _open_refund(self, amount, reason, at):
        refund = RefundRecord(amount=amount, reason=reason, initiated_at=at)
        self.add_refunds(refund)
        self.payment_status = PaymentStatus.REFUND_INITIATED.value
        self.refund_initiated_at = at
        self.raise_(
            RefundInitiated(
                order_id=str(self.id),
                refund_id=str(refund.id),
                amount=amount,
                reason=reason,
                initiated_at=at,
            )
        )
        return refund

    # -------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------
    def begin_payment(self, actor, at=None):
        """Hand the order to the gateway (first attempt or a retry)."""
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.PAYMENT_PROCESSING, HistoryAction.STATUS_CHANGE, actor, now)
            self.payment_attempts = (self.payment_attempts or 0) + 1
            self.payment_status = PaymentStatus.PROCESSING.value
            self.payment_started_at = now
        self.raise_(
            PaymentProcessingStarted(
                order_id=str(self.id),
                attempt_number=self.payment_attempts,
                started_at=now,
            )
        )

    def confirm(self, actor, payment_id=None, at=None):
        """Confirm the order; settle payment unless the method defers it."""
        now = at or _now()
        with atomic_change(self):
            self._transition(
                OrderStatus.CONFIRMED,
                HistoryAction.PAYMENT_STATUS_CHANGE,
                actor,
                now,
                note=f"payment {payment_id}" if payment_id else None,
            )
            if payment_id:
                self.payment_id = payment_id
            if self.settlement_deferred():
                self.payment_status = PaymentStatus.PENDING.value
            else:
                self.payment_status = PaymentStatus.COMPLETED.value
                self.total_paid = self.pricing.total
            self.confirmed_at = now
            self.inventory_reserved = True
        self.raise_(
            OrderConfirmed(
                order_id=str(self.id),
                customer_id=str(self.customer_id),
                payment_id=self.payment_id,
                payment_status=self.payment_status,
                amount_paid=self.total_paid or 0,
                confirmed_at=now,
            )
        )

    def fail_payment(self, actor, reason=None, can_retry=True, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.PAYMENT_FAILED, HistoryAction.PAYMENT_STATUS_CHANGE, actor, now, reason=reason)
            self.payment_status = PaymentStatus.FAILED.value
        self.raise_(
            PaymentFailed(
                order_id=str(self.id),
                reason=reason,
                attempt_number=self.payment_attempts or 0,
                can_retry=str(can_retry),
                failed_at=now,
            )
        )

    def record_late_payment(self, actor, payment_id, at=None):
        """Record money captured after the order was already terminated.

        The status does not change; the captured amount is immediately put
        up for refund.
        """
        now = at or _now()
        with atomic_change(self):
            self.payment_id = payment_id
            self.total_paid = self.pricing.total
            self.payment_status = PaymentStatus.COMPLETED.value
            self.updated_at = now
            self.record(
                HistoryAction.REFUND_INITIATED,
                actor,
                old_value=PaymentStatus.COMPLETED.value,
                new_value=PaymentStatus.REFUND_INITIATED.value,
                reason=f"Payment {payment_id} captured after order was {self.status}",
                at=now,
            )
            refund = self._open_refund(self.refundable_balance(), "Payment captured after termination", now)
        return refund

    # -------------------------------------------------------------------
    # Preparation and delivery
    # -------------------------------------------------------------------
    def start_preparing(self, actor, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.PREPARING, HistoryAction.STATUS_CHANGE, actor, now)
            self.preparing_at = now
        self.raise_(PreparationStarted(order_id=str(self.id), started_at=now))

    def mark_ready_for_pickup(self, actor, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.READY_FOR_PICKUP, HistoryAction.STATUS_CHANGE, actor, now)
            self.ready_for_pickup_at = now
        self.raise_(OrderReadyForPickup(order_id=str(self.id), ready_at=now))

    def dispatch(self, actor, personnel_id, estimated_delivery_time=None, note=None, at=None):
        """Hand the order to delivery personnel (first dispatch or retry)."""
        if not personnel_id:
            raise ValidationError({"personnel_id": ["Delivery personnel is required to dispatch"]})
        now = at or _now()
        with atomic_change(self):
            self._transition(
                OrderStatus.OUT_FOR_DELIVERY,
                HistoryAction.DELIVERY_ASSIGNMENT,
                actor,
                now,
                note=note or f"personnel {personnel_id}",
            )
            self.delivery_personnel_id = personnel_id
            if estimated_delivery_time:
                self.estimated_delivery_time = estimated_delivery_time
            self.out_for_delivery_at = now
        self.raise_(
            OrderOutForDelivery(
                order_id=str(self.id),
                personnel_id=personnel_id,
                attempt_number=(self.delivery_attempt_count or 0) + 1,
                estimated_delivery_time=self.estimated_delivery_time,
                dispatched_at=now,
            )
        )

    def record_delivery_attempt(self, actor, reason, max_attempts, notes=None, reschedule_time=None, at=None):
        """Record a failed delivery attempt. The counter only ever grows."""
        now = at or _now()
        with atomic_change(self):
            self._transition(
                OrderStatus.DELIVERY_ATTEMPTED,
                HistoryAction.DELIVERY_ATTEMPT,
                actor,
                now,
                reason=reason,
                note=notes,
            )
            self.delivery_attempt_count = (self.delivery_attempt_count or 0) + 1
            self.delivery_failure_reason = reason
            self.delivery_attempted_at = now
            if reschedule_time:
                self.estimated_delivery_time = reschedule_time
        self.raise_(
            DeliveryAttempted(
                order_id=str(self.id),
                attempt_number=self.delivery_attempt_count,
                reason=reason,
                can_retry=str(self.delivery_attempt_count < max_attempts),
                attempted_at=now,
            )
        )

    def mark_delivered(self, actor, return_window, note=None, at=None):
        """Record actual delivery and open the return-eligibility window."""
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.DELIVERED, HistoryAction.STATUS_CHANGE, actor, now, note=note)
            self.delivered_at = now
            self.return_window_ends_at = now + return_window
            # Cash collected on delivery
            if self.settlement_deferred() and self.payment_status == PaymentStatus.PENDING.value:
                self.payment_status = PaymentStatus.COMPLETED.value
                self.total_paid = self.pricing.total
        self.raise_(
            OrderDelivered(
                order_id=str(self.id),
                customer_id=str(self.customer_id),
                delivered_at=now,
                return_window_ends_at=self.return_window_ends_at,
            )
        )

    # -------------------------------------------------------------------
    # Hold
    # -------------------------------------------------------------------
    def put_on_hold(self, actor, reason, note=None, at=None):
        now = at or _now()
        with atomic_change(self):
            previous = self._transition(
                OrderStatus.ON_HOLD, HistoryAction.ON_HOLD, actor, now, reason=reason, note=note
            )
            self.held_from_status = previous
            self.on_hold_reason = reason
            self.on_hold_at = now
        self.raise_(
            OrderPutOnHold(
                order_id=str(self.id),
                held_from_status=previous,
                reason=reason,
                held_at=now,
            )
        )

    def release_hold(self, actor, target, note=None, at=None):
        """Return to ``target``, which must be the state captured at hold time."""
        current = OrderStatus(self.status)
        target = OrderStatus(target)
        if current != OrderStatus.ON_HOLD:
            raise InvalidTransition(current.value, target.value, f"Order is not on hold (status {current.value})")
        if self.held_from_status != target.value:
            raise InvalidTransition(
                current.value,
                target.value,
                f"Hold can only be released to {self.held_from_status}",
            )

        now = at or _now()
        with atomic_change(self):
            self._transition(target, HistoryAction.HOLD_RELEASED, actor, now, note=note)
            self.held_from_status = None
            self.on_hold_reason = None
            self.on_hold_at = None
        self.raise_(HoldReleased(order_id=str(self.id), restored_status=target.value, released_at=now))

    # -------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------
    def _terminate(self, target, action, actor, reason, now):
        previous = self.status
        refund_amount = self.refundable_balance() if self.payment_completed() else 0
        note = f"refund of {refund_amount} initiated" if refund_amount else None
        self._transition(target, action, actor, now, reason=reason, note=note)
        self.held_from_status = None
        self.inventory_reserved = False
        if refund_amount:
            self._open_refund(refund_amount, reason, now)
        return previous, refund_amount

    def cancel(self, actor, reason, at=None):
        """Cancel the order. Returns the amount put up for refund."""
        now = at or _now()
        with atomic_change(self):
            previous, refund_amount = self._terminate(OrderStatus.CANCELED, HistoryAction.CANCELLATION, actor, reason, now)
            self.cancellation_reason = reason
            self.canceled_by = actor.role
            self.canceled_at = now
        self.raise_(
            OrderCanceled(
                order_id=str(self.id),
                customer_id=str(self.customer_id),
                previous_status=previous,
                reason=reason,
                canceled_by=actor.role,
                refund_amount=refund_amount,
                canceled_at=now,
            )
        )
        return refund_amount

    def fail(self, actor, reason, at=None):
        """Mark fulfillment as impossible. Returns the amount put up for refund."""
        now = at or _now()
        with atomic_change(self):
            previous, refund_amount = self._terminate(OrderStatus.FAILED, HistoryAction.FAILURE, actor, reason, now)
            self.failure_reason = reason
            self.failed_at = now
        self.raise_(
            OrderFailed(
                order_id=str(self.id),
                previous_status=previous,
                reason=reason,
                refund_amount=refund_amount,
                failed_at=now,
            )
        )
        return refund_amount

    # -------------------------------------------------------------------
    # Returns
    # -------------------------------------------------------------------
    def request_return(self, actor, reason, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.RETURN_REQUESTED, HistoryAction.RETURN_REQUEST, actor, now, reason=reason)
            self.return_reason = reason
            self.return_requested_at = now
        self.raise_(ReturnRequested(order_id=str(self.id), reason=reason, requested_at=now))

    def approve_return(self, actor, notes=None, restock=False, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.RETURN_APPROVED, HistoryAction.RETURN_APPROVAL, actor, now, note=notes)
            self.return_approved_by = actor.id
            self.return_notes = notes
            self.restock_on_return = bool(restock)
            self.return_approved_at = now
        self.raise_(
            ReturnApproved(
                order_id=str(self.id),
                approved_by=actor.id,
                restock=str(bool(restock)),
                approved_at=now,
            )
        )

    def reject_return(self, actor, reason, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.RETURN_REJECTED, HistoryAction.RETURN_REJECTION, actor, now, reason=reason)
            self.return_rejection_reason = reason
            self.return_rejected_at = now
        self.raise_(ReturnRejected(order_id=str(self.id), reason=reason, rejected_at=now))

    def schedule_return_pickup(self, actor, pickup_time, notes=None, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(
                OrderStatus.RETURN_PICKUP_SCHEDULED,
                HistoryAction.RETURN_PICKUP,
                actor,
                now,
                note=notes or f"pickup at {pickup_time.isoformat()}",
            )
            self.return_pickup_at = pickup_time
        self.raise_(ReturnPickupScheduled(order_id=str(self.id), pickup_time=pickup_time, scheduled_at=now))

    def mark_return_in_transit(self, actor, at=None):
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.RETURN_IN_TRANSIT, HistoryAction.STATUS_CHANGE, actor, now)
            self.return_in_transit_at = now
        self.raise_(ReturnInTransit(order_id=str(self.id), picked_up_at=now))

    def complete_return(self, actor, restock=None, notes=None, at=None):
        """Record that the returned items arrived. ``restock`` overrides the approval intent."""
        now = at or _now()
        with atomic_change(self):
            self._transition(OrderStatus.RETURNED, HistoryAction.RETURN_COMPLETE, actor, now, note=notes)
            if restock is not None:
                self.restock_on_return = bool(restock)
            self.returned_at = now
        self.raise_(
            OrderReturned(
                order_id=str(self.id),
                restock=str(bool(self.restock_on_return)),
                returned_at=now,
            )
        )

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def initiate_refund(self, actor, amount, reason=None, at=None):
        """Put ``amount`` up for refund.

        From ``returned`` this moves the order to ``refund_pending``; further
        partial refunds while pending are recorded without a status change.
        """
        now = at or _now()
        with atomic_change(self):
            if OrderStatus(self.status) == OrderStatus.REFUND_PENDING:
                self.updated_at = now
                self.record(
                    HistoryAction.REFUND_INITIATED,
                    actor,
                    new_value=str(amount),
                    reason=reason,
                    at=now,
                )
            else:
                self._transition(
                    OrderStatus.REFUND_PENDING,
                    HistoryAction.REFUND_INITIATED,
                    actor,
                    now,
                    reason=reason,
                    note=f"amount {amount}",
                )
            refund = self._open_refund(amount, reason, now)
        return refund

    def complete_refund(self, actor, reference, at=None):
        """Settle the oldest initiated refund with an external reference."""
        pending = self.pending_refunds()
        if not pending:
            raise ValidationError({"refunds": ["No initiated refund to complete"]})

        now = at or _now()
        refund = min(pending, key=lambda r: r.initiated_at)
        with atomic_change(self):
            refund.status = RefundStatus.COMPLETED.value
            refund.reference = reference
            refund.completed_at = now
            self.total_refunded = (self.total_refunded or 0) + refund.amount
            self.refund_reference = reference
            self.refund_completed_at = now
            if self.pending_refunds():
                self.payment_status = PaymentStatus.REFUND_INITIATED.value
            elif self.total_refunded >= (self.total_paid or 0):
                self.payment_status = PaymentStatus.REFUND_COMPLETED.value
            else:
                self.payment_status = PaymentStatus.PARTIALLY_REFUNDED.value

            if OrderStatus(self.status) == OrderStatus.REFUND_PENDING and not self.pending_refunds():
                self._transition(
                    OrderStatus.REFUNDED,
                    HistoryAction.REFUND_COMPLETED,
                    actor,
                    now,
                    note=f"reference {reference}",
                )
            else:
                self.updated_at = now
                self.record(
                    HistoryAction.REFUND_COMPLETED,
                    actor,
                    new_value=str(refund.amount),
                    note=f"reference {reference}",
                    at=now,
                )
        self.raise_(
            RefundCompleted(
                order_id=str(self.id),
                refund_id=str(refund.id),
                amount=refund.amount,
                reference=reference,
                completed_at=now,
            )
        )
        return refund

    # -------------------------------------------------------------------
    # Annotations
    # -------------------------------------------------------------------
    def annotate(self, actor, action, content, reason=None, at=None):
        """Append a history entry that leaves ``status`` untouched."""
        now = at or _now()
        with atomic_change(self):
            self.updated_at = now
            self.record(action, actor, reason=reason, note=content, at=now)
        self.raise_(
            OrderAnnotated(
                order_id=str(self.id),
                action_type=HistoryAction(action).value,
                content=content,
                annotated_at=now,
            )
        )

    def update_delivery_instructions(self, actor, instructions, at=None):
        now = at or _now()
        with atomic_change(self):
            previous = self.delivery_instructions
            self.delivery_instructions = instructions
            self.delivery_instructions_updated_at = now
            self.updated_at = now
            self.record(
                HistoryAction.DELIVERY_INSTRUCTIONS_UPDATE,
                actor,
                old_value=(previous or "")[:100] or None,
                new_value=instructions[:100],
                note=instructions,
                at=now,
            )
        self.raise_(
            OrderAnnotated(
                order_id=str(self.id),
                action_type=HistoryAction.DELIVERY_INSTRUCTIONS_UPDATE.value,
                content=instructions,
                annotated_at=now,
            )
        )
