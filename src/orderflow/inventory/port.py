"""Inventory port: abstract interface for the stock-keeping collaborator.

The state machine reserves stock on confirmation, releases it on
cancellation or failure and restocks returned goods. Each call must be
idempotent per order id so a retried transition never double-counts.
"""

from abc import ABC, abstractmethod


class InventoryError(Exception):
    """Raised by adapters when the inventory system refuses or fails a call."""


class InventoryPort(ABC):
    """Abstract interface for inventory adapters."""

    @abstractmethod
    def reserve(self, order_id: str, items: list[dict]) -> None:
        """Reserve stock for every item of the order.

        ``items`` is a list of dicts with ``product_id`` and ``quantity``.
        """
        ...

    @abstractmethod
    def release(self, order_id: str, items: list[dict]) -> None:
        """Release a reservation made for the order."""
        ...

    @abstractmethod
    def restock(self, order_id: str, items: list[dict]) -> None:
        """Put returned items back on the shelf."""
        ...

    @abstractmethod
    def unrestock(self, order_id: str, items: list[dict]) -> None:
        """Undo a restock that was made for a change which did not persist."""
        ...
