"""Fake inventory adapter: in-memory stock ledger for testing.

Tracks which orders hold reservations and which have been restocked.
Configurable success/failure behavior for exercising compensation paths.
"""

from orderflow.inventory.port import InventoryError, InventoryPort


class FakeInventory(InventoryPort):
    """Inventory that always succeeds by default."""

    def __init__(self):
        self.reservations: dict[str, list[dict]] = {}
        self.restocked: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.should_succeed = True
        self.failure_reason = "Inventory unavailable"
        self.fail_on: set[str] = set()

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Inventory unavailable",
        fail_on: tuple[str, ...] = (),
    ):
        """Configure the fake inventory behavior for testing.

        ``fail_on`` limits failures to the named operations; empty means all.
        """
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.fail_on = set(fail_on)

    def _check(self, operation: str):
        if self.should_succeed:
            return
        if self.fail_on and operation not in self.fail_on:
            return
        raise InventoryError(self.failure_reason)

    def reserve(self, order_id: str, items: list[dict]) -> None:
        self._check("reserve")
        self.calls.append(("reserve", order_id))
        self.reservations[order_id] = list(items)

    def release(self, order_id: str, items: list[dict]) -> None:
        self._check("release")
        self.calls.append(("release", order_id))
        self.reservations.pop(order_id, None)

    def restock(self, order_id: str, items: list[dict]) -> None:
        self._check("restock")
        self.calls.append(("restock", order_id))
        self.restocked[order_id] = list(items)

    def unrestock(self, order_id: str, items: list[dict]) -> None:
        self.calls.append(("unrestock", order_id))
        self.restocked.pop(order_id, None)

    def is_reserved(self, order_id: str) -> bool:
        return order_id in self.reservations

    def reset(self):
        """Clear all state (useful between tests)."""
        self.reservations.clear()
        self.restocked.clear()
        self.calls.clear()
        self.should_succeed = True
        self.failure_reason = "Inventory unavailable"
        self.fail_on = set()
