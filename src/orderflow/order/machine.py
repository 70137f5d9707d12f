"""Order state machine: the single entry point for changing an order.

Every operation follows the same unit of work:

1. lock and load the order and compare its version with the caller's
   ``expected_version``; the lock is held until the save
2. check guards and apply the mutation in memory (the aggregate checks the
   transition table and records the history entry)
3. run side effects against collaborators; on failure compensate the ones
   already run, in reverse order, and raise ``SideEffectFailed``
4. persist with a version check; on conflict compensate side effects and
   raise ``ConcurrentModification``
5. notify the customer; failures are logged and never undo the change

Nothing is persisted unless the whole unit succeeds, so an order is never
left half-transitioned.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

import structlog
from protean.exceptions import ValidationError as ProteanValidationError

from orderflow.order.audit import AuditTrail
from orderflow.order.delivery import DeliveryRetryPolicy
from orderflow.order.exceptions import (
    InvalidTransition,
    OrderflowError,
    PolicyViolation,
    SideEffectFailed,
    ValidationError,
)
from orderflow.order.holds import HoldManager
from orderflow.order.order import (
    FREELY_CANCELLABLE_STATES,
    OVERRIDE_CANCELLABLE_STATES,
    HistoryAction,
    Order,
    OrderStatus,
)
from orderflow.order.policy import LifecyclePolicy
from orderflow.order.requests import (
    AddNote,
    ApproveReturn,
    AssignDelivery,
    CancelOrder,
    CompleteRefund,
    CompleteReturn,
    ConfirmPayment,
    ContactCustomer,
    CreateOrder,
    InitiateRefund,
    MarkDelivered,
    MarkFailed,
    MarkReadyForPickup,
    MarkReturnInTransit,
    PutOnHold,
    RecordDeliveryAttempt,
    RecordPaymentFailure,
    RejectReturn,
    ReleaseHold,
    RequestReturn,
    RetryDelivery,
    RetryPayment,
    ScheduleReturnPickup,
    StartPayment,
    StartPreparing,
    UpdateDeliveryInstructions,
    actor_of,
)
from orderflow.order.returns import ReturnRefundWorkflow

logger = structlog.get_logger(__name__)

# Delivery instructions can change until the order reaches the customer
_INSTRUCTIONS_EDITABLE = frozenset(
    {
        OrderStatus.PENDING,
        OrderStatus.PAYMENT_PROCESSING,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERY_ATTEMPTED,
        OrderStatus.ON_HOLD,
    }
)

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class SideEffect:
    name: str
    apply: Callable[[], None]
    compensate: Callable[[], None]


@dataclass(frozen=True)
class _Snapshot:
    status: str
    inventory_reserved: bool


@dataclass(frozen=True)
class OrderDetails:
    order: Order
    timeline: list


def _blank(value):
    return value is None or not str(value).strip()


class OrderStateMachine:
    def __init__(self, store, inventory, notifier, policy=None, clock=None):
        self.store = store
        self.inventory = inventory
        self.notifier = notifier
        self.policy = policy or LifecyclePolicy()
        self.clock = clock or (lambda: datetime.now(UTC))

        self.audit = AuditTrail()
        self.holds = HoldManager()
        self.returns = ReturnRefundWorkflow(self.policy)
        self.delivery_policy = DeliveryRetryPolicy(self.policy.max_delivery_attempts)

        self._handlers = {
            CreateOrder: self.create_order,
            StartPayment: self.start_payment,
            ConfirmPayment: self.confirm_payment,
            RecordPaymentFailure: self.record_payment_failure,
            RetryPayment: self.retry_payment,
            StartPreparing: self.start_preparing,
            MarkReadyForPickup: self.mark_ready_for_pickup,
            AssignDelivery: self.assign_delivery,
            RecordDeliveryAttempt: self.record_delivery_attempt,
            RetryDelivery: self.retry_delivery,
            MarkDelivered: self.mark_delivered,
            PutOnHold: self.put_on_hold,
            ReleaseHold: self.release_hold,
            CancelOrder: self.cancel_order,
            MarkFailed: self.mark_failed,
            RequestReturn: self.request_return,
            ApproveReturn: self.approve_return,
            RejectReturn: self.reject_return,
            ScheduleReturnPickup: self.schedule_return_pickup,
            MarkReturnInTransit: self.mark_return_in_transit,
            CompleteReturn: self.complete_return,
            InitiateRefund: self.initiate_refund,
            CompleteRefund: self.complete_refund,
            ContactCustomer: self.contact_customer,
            UpdateDeliveryInstructions: self.update_delivery_instructions,
            AddNote: self.add_note,
        }

    def now(self):
        return self.clock()

    def get_order(self, order_id):
        return self.store.get(order_id)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def order_details(self, order_id):
        """The order with its history timeline, newest entry first."""
        order = self.store.get(order_id)
        return OrderDetails(order=order, timeline=list(reversed(self.audit.entries(order))))

    def list_orders(self, status=None, customer_id=None, created_from=None, created_to=None, page=1, page_size=20):
        """Page through orders, newest first, optionally filtered."""
        if status is not None:
            try:
                status = OrderStatus(status).value
            except ValueError as exc:
                raise ValidationError(f"Unknown order status {status!r}", field="status") from exc
        if not isinstance(page, int) or page < 1:
            raise ValidationError("Page must be a positive integer", field="page", page=page)
        if not isinstance(page_size, int) or not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"Page size must be between 1 and {MAX_PAGE_SIZE}",
                field="page_size",
                page_size=page_size,
            )

        return self.store.list_orders(
            customer_id=customer_id,
            status=status,
            created_from=created_from,
            created_to=created_to,
            page=page,
            page_size=page_size,
        )

    def customer_orders(self, customer_id, page=1, page_size=20):
        return self.list_orders(customer_id=customer_id, page=page, page_size=page_size)

    def handle(self, command):
        """Dispatch any request command to its operation."""
        handler = self._handlers.get(type(command))
        if handler is None:
            raise ValidationError(f"Unsupported request {type(command).__name__}")
        return handler(command)

    # -------------------------------------------------------------------
    # Unit of work
    # -------------------------------------------------------------------
    @contextmanager
    def _domain_errors(self, order_id=None):
        try:
            yield
        except ProteanValidationError as exc:
            raise ValidationError("Invalid order change", order_id=order_id, errors=exc.messages) from exc

    def execute(self, order_id, expected_version, actor, operation, mutate):
        """Run ``mutate(order, now)`` as one atomic, versioned change.

        The order stays locked from the version check to the save, so a
        stale writer fails before any side effect runs.
        """
        with self.store.locked(order_id, expected_version) as order:
            before = _Snapshot(status=order.status, inventory_reserved=bool(order.inventory_reserved))
            with self._domain_errors(order_id):
                mutate(order, self.now())

            applied = self._run_side_effects(order, self._side_effects_for(order, before))
            try:
                with self._domain_errors(order_id):
                    self.store.save(order, expected_version)
            except OrderflowError:
                self._compensate(order, applied)
                raise

        logger.info(
            "Order transitioned",
            order_id=str(order.id),
            operation=operation,
            from_status=before.status,
            to_status=order.status,
            version=order.version,
            actor_id=actor.id,
        )
        self._notify(order, before)
        return order

    def _side_effects_for(self, order, before):
        order_id = str(order.id)
        items = order.line_items()
        effects = []

        if order.inventory_reserved and not before.inventory_reserved:
            effects.append(
                SideEffect(
                    "inventory.reserve",
                    lambda: self.inventory.reserve(order_id, items),
                    lambda: self.inventory.release(order_id, items),
                )
            )
        if before.inventory_reserved and not order.inventory_reserved:
            effects.append(
                SideEffect(
                    "inventory.release",
                    lambda: self.inventory.release(order_id, items),
                    lambda: self.inventory.reserve(order_id, items),
                )
            )
        if (
            order.status == OrderStatus.REFUNDED.value
            and before.status != OrderStatus.REFUNDED.value
            and order.restock_on_return
        ):
            effects.append(
                SideEffect(
                    "inventory.restock",
                    lambda: self.inventory.restock(order_id, items),
                    lambda: self.inventory.unrestock(order_id, items),
                )
            )
        return effects

    def _run_side_effects(self, order, effects):
        applied = []
        for effect in effects:
            try:
                effect.apply()
            except Exception as exc:
                logger.error(
                    "Side effect failed",
                    order_id=str(order.id),
                    effect=effect.name,
                    error=str(exc),
                )
                self._compensate(order, applied)
                raise SideEffectFailed(str(order.id), effect.name, exc) from exc
            applied.append(effect)
        return applied

    def _compensate(self, order, applied):
        for effect in reversed(applied):
            try:
                effect.compensate()
            except Exception:
                logger.exception("Compensation failed", order_id=str(order.id), effect=effect.name)
            else:
                logger.info("Side effect compensated", order_id=str(order.id), effect=effect.name)

    def _notify(self, order, before):
        if order.status == before.status:
            return
        event = f"order_{order.status}"
        try:
            self.notifier.notify(
                str(order.customer_id),
                event,
                {
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "status": order.status,
                    "previous_status": before.status,
                },
            )
        except Exception as exc:
            logger.warning("Notification failed", order_id=str(order.id), notification=event, error=str(exc))

    def _run(self, command, operation, mutate):
        return self.execute(command.order_id, command.expected_version, actor_of(command), operation, mutate)

    # -------------------------------------------------------------------
    # Creation and payment
    # -------------------------------------------------------------------
    def create_order(self, command: CreateOrder) -> Order:
        actor = actor_of(command)
        with self._domain_errors():
            order = Order.create(
                customer_id=command.customer_id,
                items_data=command.items,
                payment_method=command.payment_method,
                actor=actor,
                tax=command.tax,
                delivery_fee=command.delivery_fee,
                discount=command.discount,
                currency=command.currency,
                defer_settlement=self.policy.defers_settlement(command.payment_method),
                at=self.now(),
            )
            self.store.add(order)

        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            total=order.pricing.total,
            payment_method=order.payment_method,
        )
        try:
            self.notifier.notify(
                str(order.customer_id),
                "order_created",
                {"order_id": str(order.id), "order_number": order.order_number, "status": order.status},
            )
        except Exception as exc:
            logger.warning("Notification failed", order_id=str(order.id), notification="order_created", error=str(exc))
        return order

    def start_payment(self, command: StartPayment) -> Order:
        def mutate(order, now):
            if order.status == OrderStatus.PAYMENT_FAILED.value:
                self._check_payment_retry(order)
            order.begin_payment(actor_of(command), at=now)

        return self._run(command, "start_payment", mutate)

    def confirm_payment(self, command: ConfirmPayment) -> Order:
        def mutate(order, now):
            if _blank(command.payment_id) and not order.settlement_deferred():
                raise ValidationError("Payment id is required", field="payment_id")
            order.confirm(actor_of(command), payment_id=command.payment_id, at=now)

        return self._run(command, "confirm_payment", mutate)

    def record_payment_failure(self, command: RecordPaymentFailure) -> Order:
        def mutate(order, now):
            order.fail_payment(
                actor_of(command),
                reason=command.reason,
                can_retry=self.policy.can_retry_payment(order.payment_attempts or 0),
                at=now,
            )

        return self._run(command, "record_payment_failure", mutate)

    def _check_payment_retry(self, order):
        attempts = order.payment_attempts or 0
        if not self.policy.can_retry_payment(attempts):
            raise PolicyViolation(
                f"Payment retry limit reached after {attempts} attempts",
                order_id=str(order.id),
                attempts=attempts,
                max_attempts=self.policy.max_payment_attempts,
            )

    def retry_payment(self, command: RetryPayment) -> Order:
        def mutate(order, now):
            if order.status != OrderStatus.PAYMENT_FAILED.value:
                raise InvalidTransition(
                    order.status,
                    OrderStatus.PAYMENT_PROCESSING.value,
                    f"Only failed payments can be retried (status {order.status})",
                )
            self._check_payment_retry(order)
            order.begin_payment(actor_of(command), at=now)

        return self._run(command, "retry_payment", mutate)

    # -------------------------------------------------------------------
    # Preparation and delivery
    # -------------------------------------------------------------------
    def start_preparing(self, command: StartPreparing) -> Order:
        return self._run(
            command,
            "start_preparing",
            lambda order, now: order.start_preparing(actor_of(command), at=now),
        )

    def mark_ready_for_pickup(self, command: MarkReadyForPickup) -> Order:
        return self._run(
            command,
            "mark_ready_for_pickup",
            lambda order, now: order.mark_ready_for_pickup(actor_of(command), at=now),
        )

    def assign_delivery(self, command: AssignDelivery) -> Order:
        def mutate(order, now):
            if order.status != OrderStatus.READY_FOR_PICKUP.value:
                raise InvalidTransition(
                    order.status,
                    OrderStatus.OUT_FOR_DELIVERY.value,
                    f"Only orders ready for pickup can be assigned (status {order.status})",
                )
            order.dispatch(
                actor_of(command),
                command.personnel_id,
                estimated_delivery_time=command.estimated_delivery_time,
                at=now,
            )

        return self._run(command, "assign_delivery", mutate)

    def record_delivery_attempt(self, command: RecordDeliveryAttempt) -> Order:
        def mutate(order, now):
            order.record_delivery_attempt(
                actor_of(command),
                command.reason,
                self.delivery_policy.max_attempts,
                notes=command.notes,
                reschedule_time=command.reschedule_time,
                at=now,
            )

        return self._run(command, "record_delivery_attempt", mutate)

    def retry_delivery(self, command: RetryDelivery) -> Order:
        def mutate(order, now):
            if order.status != OrderStatus.DELIVERY_ATTEMPTED.value:
                raise InvalidTransition(
                    order.status,
                    OrderStatus.OUT_FOR_DELIVERY.value,
                    f"Only attempted deliveries can be retried (status {order.status})",
                )
            self.delivery_policy.check_retry(order)
            order.dispatch(
                actor_of(command),
                command.personnel_id or order.delivery_personnel_id,
                estimated_delivery_time=command.new_delivery_time,
                note=command.notes,
                at=now,
            )

        return self._run(command, "retry_delivery", mutate)

    def mark_delivered(self, command: MarkDelivered) -> Order:
        return self._run(
            command,
            "mark_delivered",
            lambda order, now: order.mark_delivered(
                actor_of(command), self.policy.return_window, note=command.notes, at=now
            ),
        )

    # -------------------------------------------------------------------
    # Hold and termination
    # -------------------------------------------------------------------
    def put_on_hold(self, command: PutOnHold) -> Order:
        return self._run(
            command,
            "put_on_hold",
            lambda order, now: self.holds.hold(order, actor_of(command), command.reason, note=command.notes, at=now),
        )

    def release_hold(self, command: ReleaseHold) -> Order:
        return self._run(
            command,
            "release_hold",
            lambda order, now: self.holds.release(
                order, actor_of(command), target=command.target_status, note=command.notes, at=now
            ),
        )

    def _check_cancellation(self, order, actor, command):
        if order.is_terminal():
            raise InvalidTransition(
                order.status,
                OrderStatus.CANCELED.value,
                f"Order is in terminal state {order.status}",
            )
        if _blank(command.reason):
            raise ValidationError("A reason is required to cancel an order", field="reason")

        effective = OrderStatus(self.holds.effective_status(order))
        if effective in FREELY_CANCELLABLE_STATES:
            return
        if effective in OVERRIDE_CANCELLABLE_STATES:
            if not (command.override and actor.is_admin):
                raise PolicyViolation(
                    f"Cancelling an order in {effective.value} requires an admin override",
                    order_id=str(order.id),
                    status=effective.value,
                )
            return
        raise InvalidTransition(order.status, OrderStatus.CANCELED.value)

    def cancel_order(self, command: CancelOrder) -> Order:
        def mutate(order, now):
            actor = actor_of(command)
            self._check_cancellation(order, actor, command)
            refund_amount = order.cancel(actor, command.reason, at=now)
            if refund_amount:
                logger.info("Refund initiated on cancellation", order_id=str(order.id), amount=refund_amount)

        return self._run(command, "cancel_order", mutate)

    def mark_failed(self, command: MarkFailed) -> Order:
        def mutate(order, now):
            actor = actor_of(command)
            if not actor.is_admin:
                raise PolicyViolation(
                    "Only admins or the system can mark an order as failed",
                    order_id=str(order.id),
                    actor_role=actor.role,
                )
            if _blank(command.reason):
                raise ValidationError("A reason is required to fail an order", field="reason")
            order.fail(actor, command.reason, at=now)

        return self._run(command, "mark_failed", mutate)

    # -------------------------------------------------------------------
    # Returns and refunds
    # -------------------------------------------------------------------
    def request_return(self, command: RequestReturn) -> Order:
        return self._run(
            command,
            "request_return",
            lambda order, now: self.returns.request(order, actor_of(command), command.reason, now),
        )

    def approve_return(self, command: ApproveReturn) -> Order:
        return self._run(
            command,
            "approve_return",
            lambda order, now: self.returns.approve(
                order, actor_of(command), notes=command.notes, restock=command.restock, now=now
            ),
        )

    def reject_return(self, command: RejectReturn) -> Order:
        return self._run(
            command,
            "reject_return",
            lambda order, now: self.returns.reject(order, actor_of(command), command.reason, now=now),
        )

    def schedule_return_pickup(self, command: ScheduleReturnPickup) -> Order:
        return self._run(
            command,
            "schedule_return_pickup",
            lambda order, now: self.returns.schedule_pickup(
                order, actor_of(command), command.pickup_time, notes=command.notes, now=now
            ),
        )

    def mark_return_in_transit(self, command: MarkReturnInTransit) -> Order:
        return self._run(
            command,
            "mark_return_in_transit",
            lambda order, now: self.returns.mark_in_transit(order, actor_of(command), now=now),
        )

    def complete_return(self, command: CompleteReturn) -> Order:
        return self._run(
            command,
            "complete_return",
            lambda order, now: self.returns.complete(
                order, actor_of(command), restock=command.restock, notes=command.notes, now=now
            ),
        )

    def initiate_refund(self, command: InitiateRefund) -> Order:
        return self._run(
            command,
            "initiate_refund",
            lambda order, now: self.returns.initiate_refund(
                order, actor_of(command), amount=command.amount, reason=command.reason, now=now
            ),
        )

    def complete_refund(self, command: CompleteRefund) -> Order:
        return self._run(
            command,
            "complete_refund",
            lambda order, now: self.returns.complete_refund(order, actor_of(command), command.reference, now=now),
        )

    # -------------------------------------------------------------------
    # Annotations
    # -------------------------------------------------------------------
    def contact_customer(self, command: ContactCustomer) -> Order:
        def mutate(order, now):
            flags = []
            if command.response_received:
                flags.append("response received")
            if command.follow_up_required:
                flags.append("follow-up required")
            self.audit.annotate(
                order,
                actor_of(command),
                HistoryAction.CUSTOMER_CONTACT,
                command.message,
                reason=f"via {command.method}" + (f" ({', '.join(flags)})" if flags else ""),
                at=now,
            )

        return self._run(command, "contact_customer", mutate)

    def update_delivery_instructions(self, command: UpdateDeliveryInstructions) -> Order:
        def mutate(order, now):
            if OrderStatus(order.status) not in _INSTRUCTIONS_EDITABLE:
                raise PolicyViolation(
                    f"Delivery instructions cannot change once the order is {order.status}",
                    order_id=str(order.id),
                    status=order.status,
                )
            if _blank(command.instructions):
                raise ValidationError("Delivery instructions cannot be blank", field="instructions")
            self.audit.annotate(
                order,
                actor_of(command),
                HistoryAction.DELIVERY_INSTRUCTIONS_UPDATE,
                command.instructions,
                at=now,
            )

        return self._run(command, "update_delivery_instructions", mutate)

    def add_note(self, command: AddNote) -> Order:
        def mutate(order, now):
            if _blank(command.note):
                raise ValidationError("Note cannot be blank", field="note")
            self.audit.annotate(order, actor_of(command), HistoryAction.NOTE, command.note, at=now)

        return self._run(command, "add_note", mutate)
