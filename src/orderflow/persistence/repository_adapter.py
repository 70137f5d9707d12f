"""Order store backed by the Protean repository of the given domain.

Each order has a lock that lives only while someone is using it. A unit of
work holds the lock from the version check through the save, so a writer
that read a stale version is turned away before it touches a collaborator.
Writers on different orders never contend.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field

import structlog
from protean.exceptions import ObjectNotFoundError

from orderflow.order.exceptions import ConcurrentModification, NotFound
from orderflow.order.order import Order
from orderflow.persistence.port import OrderPage, OrderStore

logger = structlog.get_logger(__name__)


@dataclass
class _OrderLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0
    in_unit_of_work: bool = False


class RepositoryOrderStore(OrderStore):
    def __init__(self, domain):
        self.domain = domain
        self._locks: dict[str, _OrderLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _held(self, order_id: str):
        with self._locks_guard:
            entry = self._locks.setdefault(order_id, _OrderLock())
            entry.users += 1
        try:
            with entry.lock:
                yield entry
        finally:
            with self._locks_guard:
                entry.users -= 1
                if not entry.users:
                    del self._locks[order_id]

    def _repository(self):
        return self.domain.repository_for(Order)

    def get(self, order_id: str):
        with self._held(str(order_id)):
            try:
                return self._repository().get(order_id)
            except ObjectNotFoundError as exc:
                raise NotFound(order_id) from exc

    @contextmanager
    def locked(self, order_id: str, expected_version: int):
        order_id = str(order_id)
        with self._held(order_id) as entry:
            order = self.get(order_id)
            if entry.in_unit_of_work:
                # Only the thread already inside the unit of work can get here
                raise ConcurrentModification(
                    order_id,
                    expected_version,
                    order.version,
                    f"Order {order_id} is already being modified",
                )
            if order.version != expected_version:
                raise ConcurrentModification(order_id, expected_version, order.version)

            entry.in_unit_of_work = True
            try:
                yield order
            finally:
                entry.in_unit_of_work = False

    def add(self, order):
        order.version = 0
        self._repository().add(order)
        logger.debug("Order stored", order_id=str(order.id), version=0)
        return order

    def save(self, order, expected_version: int):
        order_id = str(order.id)
        with self._held(order_id):
            current = self.get(order_id).version
            if current != expected_version:
                logger.warning(
                    "Version conflict",
                    order_id=order_id,
                    expected_version=expected_version,
                    actual_version=current,
                )
                raise ConcurrentModification(order_id, expected_version, current)

            order.version = expected_version + 1
            self._repository().add(order)

        logger.debug("Order saved", order_id=order_id, version=order.version)
        return order

    def list_orders(
        self,
        customer_id=None,
        status=None,
        created_from=None,
        created_to=None,
        page: int = 1,
        page_size: int = 20,
    ) -> OrderPage:
        criteria = {}
        if customer_id is not None:
            criteria["customer_id"] = str(customer_id)
        if status is not None:
            criteria["status"] = status
        if created_from is not None:
            criteria["created_at__gte"] = created_from
        if created_to is not None:
            criteria["created_at__lte"] = created_to

        query = self._repository()._dao.query
        if criteria:
            query = query.filter(**criteria)
        results = query.order_by("-created_at").offset((page - 1) * page_size).limit(page_size).all()
        return OrderPage(orders=list(results.items), total=results.total, page=page, page_size=page_size)
