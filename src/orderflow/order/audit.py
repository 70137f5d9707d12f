"""Append-only audit trail over an order's history entries.

Entries are written by the aggregate as part of each accepted mutation, so an
entry exists if and only if the change it describes was persisted. This
module adds read helpers and the annotation entry point used for notes,
customer contacts and delivery instruction changes.
"""

import structlog

from orderflow.order.order import HistoryAction, OrderStatus

logger = structlog.get_logger(__name__)

ANNOTATION_ACTIONS = frozenset(
    {
        HistoryAction.NOTE,
        HistoryAction.CUSTOMER_CONTACT,
        HistoryAction.DELIVERY_INSTRUCTIONS_UPDATE,
    }
)


class AuditTrail:
    def entries(self, order):
        """All entries, oldest first."""
        return sorted(order.history or [], key=lambda entry: entry.created_at)

    def entries_of(self, order, action):
        action = HistoryAction(action).value
        return [entry for entry in self.entries(order) if entry.action_type == action]

    def latest(self, order):
        entries = self.entries(order)
        return entries[-1] if entries else None

    def status_path(self, order):
        """The sequence of statuses the order moved through."""
        statuses = {status.value for status in OrderStatus}
        annotations = {action.value for action in ANNOTATION_ACTIONS}
        path = []
        for entry in self.entries(order):
            if entry.action_type in annotations:
                continue
            if entry.new_value in statuses and entry.old_value != entry.new_value:
                path.append(entry.new_value)
        return path

    def annotate(self, order, actor, action, content, reason=None, at=None):
        """Append a note-like entry that never changes ``status``."""
        action = HistoryAction(action)
        if action not in ANNOTATION_ACTIONS:
            raise ValueError(f"{action.value} is not an annotation action")

        if action == HistoryAction.DELIVERY_INSTRUCTIONS_UPDATE:
            order.update_delivery_instructions(actor, content, at=at)
        else:
            order.annotate(actor, action, content, reason=reason, at=at)

        logger.debug(
            "Order annotated",
            order_id=str(order.id),
            action_type=action.value,
            actor_id=actor.id,
        )
