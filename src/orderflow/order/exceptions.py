"""Order lifecycle errors.

Every error carries a stable ``code`` and a ``retryable`` flag so callers can
turn it into a structured response. ``ConcurrentModification`` and
``SideEffectFailed`` are retryable: nothing was persisted and the operation
can be re-invoked with fresh state.
"""


class OrderflowError(Exception):
    code = "orderflow_error"
    retryable = False

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(OrderflowError):
    """Malformed input: unknown fields, negative amounts, blank references."""

    code = "validation_error"


class PolicyViolation(ValidationError):
    """A business policy blocks the request.

    Raised for refunds above the refundable balance, expired return windows,
    exhausted delivery or payment retries and cancellations that need an
    admin override.
    """

    code = "policy_violation"


class InvalidTransition(OrderflowError):
    code = "invalid_transition"

    def __init__(self, current, target, message=None):
        super().__init__(
            message or f"Cannot transition from {current} to {target}",
            current=current,
            target=target,
        )


class ConcurrentModification(OrderflowError):
    code = "concurrent_modification"
    retryable = True

    def __init__(self, order_id, expected_version, actual_version, message=None):
        super().__init__(
            message
            or f"Order {order_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            order_id=order_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


class NotFound(OrderflowError):
    code = "not_found"

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found", order_id=order_id)


class SideEffectFailed(OrderflowError):
    code = "side_effect_failed"
    retryable = True

    def __init__(self, order_id, effect, error):
        super().__init__(
            f"Side effect '{effect}' failed for order {order_id}: {error}",
            order_id=order_id,
            effect=effect,
        )
