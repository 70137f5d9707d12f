"""Delivery coordination: dispatch, failed attempts and bounded retries.

The attempt counter only grows. Once it reaches the configured maximum the
order can no longer be sent out again; cancellation and failure stay
available to resolve it.
"""

from abc import ABC, abstractmethod

import structlog

from orderflow.order.exceptions import PolicyViolation
from orderflow.order.order import SYSTEM_ACTOR
from orderflow.order.requests import AssignDelivery, MarkDelivered, RecordDeliveryAttempt, RetryDelivery

logger = structlog.get_logger(__name__)


class DeliveryRetryPolicy:
    def __init__(self, max_attempts: int):
        self.max_attempts = max_attempts

    def can_retry(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts

    def remaining(self, attempt_count: int) -> int:
        return max(self.max_attempts - attempt_count, 0)

    def check_retry(self, order) -> None:
        count = order.delivery_attempt_count or 0
        if not self.can_retry(count):
            raise PolicyViolation(
                f"Delivery retry limit reached after {count} attempts",
                order_id=str(order.id),
                attempts=count,
                max_attempts=self.max_attempts,
            )


class DeliveryCoordinator(ABC):
    """Abstract interface for driving an order through delivery."""

    @abstractmethod
    def assign_personnel(self, order_id: str, personnel_id: str, estimated_delivery_time=None):
        """Hand a ready order to delivery personnel."""
        ...

    @abstractmethod
    def record_attempt(self, order_id: str, reason: str, notes: str | None = None):
        """Record a failed delivery attempt."""
        ...

    @abstractmethod
    def retry(self, order_id: str, new_time=None, personnel_id: str | None = None):
        """Send an attempted order out again, within the retry limit."""
        ...

    @abstractmethod
    def mark_delivered(self, order_id: str):
        """Record that the order reached the customer."""
        ...


class StateMachineDeliveryCoordinator(DeliveryCoordinator):
    """Coordinator that issues delivery requests to an ``OrderStateMachine``.

    Each call acts on the latest persisted version of the order.
    """

    def __init__(self, machine, actor=SYSTEM_ACTOR):
        self.machine = machine
        self.actor = actor

    def _common(self, order_id):
        return {
            "order_id": order_id,
            "expected_version": self.machine.get_order(order_id).version,
            "actor_id": self.actor.id,
            "actor_role": self.actor.role,
        }

    def assign_personnel(self, order_id, personnel_id, estimated_delivery_time=None):
        return self.machine.assign_delivery(
            AssignDelivery(
                personnel_id=personnel_id,
                estimated_delivery_time=estimated_delivery_time,
                **self._common(order_id),
            )
        )

    def record_attempt(self, order_id, reason, notes=None):
        order = self.machine.record_delivery_attempt(
            RecordDeliveryAttempt(reason=reason, notes=notes, **self._common(order_id))
        )
        remaining = self.machine.delivery_policy.remaining(order.delivery_attempt_count)
        if not remaining:
            logger.warning(
                "Delivery attempts exhausted",
                order_id=order_id,
                attempts=order.delivery_attempt_count,
            )
        return order

    def retry(self, order_id, new_time=None, personnel_id=None):
        return self.machine.retry_delivery(
            RetryDelivery(
                new_delivery_time=new_time,
                personnel_id=personnel_id,
                **self._common(order_id),
            )
        )

    def mark_delivered(self, order_id):
        return self.machine.mark_delivered(MarkDelivered(**self._common(order_id)))
