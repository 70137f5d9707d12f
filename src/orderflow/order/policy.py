"""Configurable limits of the order lifecycle."""

import os
from dataclasses import dataclass
from datetime import timedelta

MAX_DELIVERY_ATTEMPTS = 3
MAX_PAYMENT_ATTEMPTS = 3
RETURN_WINDOW_DAYS = 7


@dataclass(frozen=True)
class LifecyclePolicy:
    max_delivery_attempts: int = MAX_DELIVERY_ATTEMPTS
    max_payment_attempts: int = MAX_PAYMENT_ATTEMPTS
    return_window: timedelta = timedelta(days=RETURN_WINDOW_DAYS)
    deferred_settlement_methods: tuple = ("cod",)

    @classmethod
    def from_env(cls, environ=None):
        """Build a policy from ``ORDERFLOW_*`` environment variables."""
        environ = os.environ if environ is None else environ
        return cls(
            max_delivery_attempts=int(environ.get("ORDERFLOW_MAX_DELIVERY_ATTEMPTS", MAX_DELIVERY_ATTEMPTS)),
            max_payment_attempts=int(environ.get("ORDERFLOW_MAX_PAYMENT_ATTEMPTS", MAX_PAYMENT_ATTEMPTS)),
            return_window=timedelta(days=int(environ.get("ORDERFLOW_RETURN_WINDOW_DAYS", RETURN_WINDOW_DAYS))),
        )

    def can_retry_payment(self, attempts):
        return attempts < self.max_payment_attempts

    def defers_settlement(self, payment_method):
        return payment_method in self.deferred_settlement_methods
