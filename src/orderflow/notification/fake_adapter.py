"""Fake notifier: records sent notifications for testing."""

from orderflow.notification.port import NotificationPort


class NotificationFailed(Exception):
    pass


class FakeNotifier(NotificationPort):
    """Notifier that records notifications in memory for test assertions."""

    def __init__(self):
        self.sent: list[dict] = []
        self.should_succeed = True
        self.failure_reason = "Notification delivery failed"

    def configure(self, should_succeed: bool = True, failure_reason: str = "Notification delivery failed"):
        """Configure the fake notifier behavior for testing."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def notify(self, user_id: str, event: str, payload: dict) -> None:
        if not self.should_succeed:
            raise NotificationFailed(self.failure_reason)
        self.sent.append({"user_id": user_id, "event": event, "payload": payload})

    def events_for(self, user_id: str) -> list[str]:
        return [n["event"] for n in self.sent if n["user_id"] == user_id]

    def reset(self):
        """Clear sent notifications (useful between tests)."""
        self.sent.clear()
        self.should_succeed = True
        self.failure_reason = "Notification delivery failed"
