"""Orderflow bounded context: order lifecycle coordination.

Takes an order from creation through payment settlement, preparation,
delivery (with retries and manual holds) and the post-delivery
return/refund flow. Collaborators (inventory, notifications, persistence)
are injected into the state machine rather than looked up globally.
"""

import structlog
from protean.domain import Domain

from orderflow.utils.logging import configure_logging

configure_logging()

orderflow = Domain(name="orderflow")

logger = structlog.get_logger(__name__)
