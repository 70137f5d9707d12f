"""Requests accepted by the order state machine.

Each caller-initiated transition has its own command carrying only the
fields that transition accepts. Every command identifies the order, the
version the caller last saw and the acting user.

``parse_request`` builds a command from a plain payload with a ``type``
discriminator and rejects fields the command does not declare.

The commands have no Protean command handler. They are dispatched by
``OrderStateMachine.handle`` on a machine built with its store, inventory
and notifier, and a registered handler would need one global machine
instead.
"""

from enum import Enum

from protean.exceptions import ValidationError as ProteanValidationError
from protean.fields import Boolean, DateTime, Dict, Identifier, Integer, List, String, Text
from protean.utils.reflection import declared_fields

from orderflow.domain import orderflow
from orderflow.order.exceptions import ValidationError
from orderflow.order.order import Actor, ActorRole, OrderStatus, PaymentMethod


class ContactMethod(Enum):
    PHONE = "phone"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


def actor_of(command):
    return Actor(id=command.actor_id, role=command.actor_role)


# ---------------------------------------------------------------------------
# Creation and payment
# ---------------------------------------------------------------------------
@orderflow.command(part_of="Order")
class CreateOrder:
    customer_id = Identifier(required=True)
    items = List(content_type=Dict, required=True)
    payment_method = String(required=True, choices=PaymentMethod)
    tax = Integer(default=0, min_value=0)
    delivery_fee = Integer(default=0, min_value=0)
    discount = Integer(default=0, min_value=0)
    currency = String(max_length=3, default="INR")
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.CUSTOMER.value)


@orderflow.command(part_of="Order")
class StartPayment:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.CUSTOMER.value)


@orderflow.command(part_of="Order")
class ConfirmPayment:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    payment_id = String(max_length=255)  # Not needed when settlement is deferred
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.GATEWAY.value)


@orderflow.command(part_of="Order")
class RecordPaymentFailure:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(max_length=500)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.GATEWAY.value)


@orderflow.command(part_of="Order")
class RetryPayment:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.CUSTOMER.value)


# ---------------------------------------------------------------------------
# Preparation and delivery
# ---------------------------------------------------------------------------
@orderflow.command(part_of="Order")
class StartPreparing:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class MarkReadyForPickup:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class AssignDelivery:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    personnel_id = String(required=True, max_length=255)
    estimated_delivery_time = DateTime()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class RecordDeliveryAttempt:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(required=True, max_length=500)
    notes = Text()
    reschedule_time = DateTime()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.DELIVERY.value)


@orderflow.command(part_of="Order")
class RetryDelivery:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    new_delivery_time = DateTime()
    personnel_id = String(max_length=255)
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class MarkDelivered:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.DELIVERY.value)


# ---------------------------------------------------------------------------
# Hold and termination
# ---------------------------------------------------------------------------
@orderflow.command(part_of="Order")
class PutOnHold:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(required=True, max_length=500)
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class ReleaseHold:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    target_status = String(choices=OrderStatus)
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class CancelOrder:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(max_length=500)
    override = Boolean(default=False)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.CUSTOMER.value)


@orderflow.command(part_of="Order")
class MarkFailed:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(required=True, max_length=500)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.SYSTEM.value)


# ---------------------------------------------------------------------------
# Returns and refunds
# ---------------------------------------------------------------------------
@orderflow.command(part_of="Order")
class RequestReturn:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(required=True, max_length=500)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.CUSTOMER.value)


@orderflow.command(part_of="Order")
class ApproveReturn:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    notes = Text()
    restock = Boolean(default=False)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class RejectReturn:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reason = String(required=True, max_length=500)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class ScheduleReturnPickup:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    pickup_time = DateTime(required=True)
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class MarkReturnInTransit:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.DELIVERY.value)


@orderflow.command(part_of="Order")
class CompleteReturn:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    restock = Boolean()
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class InitiateRefund:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    amount = Integer()  # Defaults to the refundable balance
    reason = String(max_length=500)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class CompleteRefund:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    reference = String(max_length=255)
    notes = Text()
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.SYSTEM.value)


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------
@orderflow.command(part_of="Order")
class ContactCustomer:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    method = String(required=True, choices=ContactMethod)
    message = Text(required=True)
    response_received = Boolean(default=False)
    follow_up_required = Boolean(default=False)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


@orderflow.command(part_of="Order")
class UpdateDeliveryInstructions:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    instructions = Text(required=True)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.CUSTOMER.value)


@orderflow.command(part_of="Order")
class AddNote:
    order_id = Identifier(required=True)
    expected_version = Integer(required=True, min_value=0)
    note = Text(required=True)
    actor_id = String(required=True, max_length=255)
    actor_role = String(choices=ActorRole, default=ActorRole.ADMIN.value)


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------
REQUEST_TYPES = {
    "create_order": CreateOrder,
    "start_payment": StartPayment,
    "confirm_payment": ConfirmPayment,
    "record_payment_failure": RecordPaymentFailure,
    "retry_payment": RetryPayment,
    "start_preparing": StartPreparing,
    "mark_ready_for_pickup": MarkReadyForPickup,
    "assign_delivery": AssignDelivery,
    "record_delivery_attempt": RecordDeliveryAttempt,
    "retry_delivery": RetryDelivery,
    "mark_delivered": MarkDelivered,
    "put_on_hold": PutOnHold,
    "release_hold": ReleaseHold,
    "cancel_order": CancelOrder,
    "mark_failed": MarkFailed,
    "request_return": RequestReturn,
    "approve_return": ApproveReturn,
    "reject_return": RejectReturn,
    "schedule_return_pickup": ScheduleReturnPickup,
    "mark_return_in_transit": MarkReturnInTransit,
    "complete_return": CompleteReturn,
    "initiate_refund": InitiateRefund,
    "complete_refund": CompleteRefund,
    "contact_customer": ContactCustomer,
    "update_delivery_instructions": UpdateDeliveryInstructions,
    "add_note": AddNote,
}


def accepted_fields(command_cls):
    return {name for name in declared_fields(command_cls) if not name.startswith("_")}


def parse_request(payload):
    """Build the command named by ``payload["type"]``.

    Raises ``ValidationError`` for an unknown type, for fields the command
    does not accept and for values the command rejects.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request payload must be an object")

    data = dict(payload)
    request_type = data.pop("type", None)
    command_cls = REQUEST_TYPES.get(request_type)
    if command_cls is None:
        raise ValidationError(f"Unknown request type {request_type!r}", field="type")

    unknown = sorted(set(data) - accepted_fields(command_cls))
    if unknown:
        raise ValidationError(
            f"Unknown fields for {request_type}: {', '.join(unknown)}",
            fields=unknown,
        )

    try:
        return command_cls(**data)
    except ProteanValidationError as exc:
        raise ValidationError(f"Invalid {request_type} request", errors=exc.messages) from exc
