"""Order store port: load and persist orders with optimistic concurrency."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class OrderPage:
    """One page of a listing, newest orders first."""

    orders: list
    total: int
    page: int
    page_size: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


class OrderStore(ABC):
    """Abstract interface for order persistence."""

    @abstractmethod
    def get(self, order_id: str):
        """Load an order. Raises ``NotFound`` when it does not exist."""
        ...

    @abstractmethod
    def locked(self, order_id: str, expected_version: int):
        """Context manager yielding the order for one unit of work.

        Raises ``ConcurrentModification`` when the stored version differs
        from ``expected_version`` or the order is already inside a unit of
        work on this thread. Other writers of the order wait until the block
        exits.
        """
        ...

    @abstractmethod
    def add(self, order):
        """Persist a newly created order at version 0."""
        ...

    @abstractmethod
    def save(self, order, expected_version: int):
        """Persist ``order`` if the stored version still equals ``expected_version``.

        On success the order's version is incremented by one. Raises
        ``ConcurrentModification`` when another writer got there first.
        """
        ...

    @abstractmethod
    def list_orders(
        self,
        customer_id=None,
        status=None,
        created_from=None,
        created_to=None,
        page: int = 1,
        page_size: int = 20,
    ) -> OrderPage:
        """List orders matching every given filter, newest first."""
        ...
