"""Notification port: abstract interface for customer notifications.

Notifications are sent after a transition has been persisted. Delivery
failures never undo or block the transition.
"""

from abc import ABC, abstractmethod


class NotificationPort(ABC):
    """Abstract interface for notification adapters."""

    @abstractmethod
    def notify(self, user_id: str, event: str, payload: dict) -> None:
        """Send ``event`` with ``payload`` to ``user_id``."""
        ...
