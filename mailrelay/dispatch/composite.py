"""
Fan-out over several dispatch sinks.
"""

import asyncio
import logging
from typing import List, Optional

from .base import DeliveryResult, DispatchSink, Notification
from ..core.exceptions import DispatchError


logger = logging.getLogger(__name__)


class CompositeSink(DispatchSink):
    """
    Delivers to every child sink concurrently.

    DELIVERED if at least one child delivered. If no child delivered and at
    least one failed (DispatchError or child timeout), the first failure in
    sink order is raised so the caller can retry later; otherwise
    UNDELIVERABLE.

    Each child is bounded by child_timeout_seconds, so a hanging transport
    cannot hold back the answer of one that already delivered. Keep it below
    the relay's dispatch timeout.
    """

    name = "composite"

    def __init__(self, sinks: List[DispatchSink], child_timeout_seconds: Optional[float] = None):
        self.sinks = list(sinks)
        self.child_timeout_seconds = child_timeout_seconds

    async def _deliver_one(self, sink: DispatchSink, user_id: str, notification: Notification):
        """Result of one child, or the DispatchError it failed with."""
        try:
            return await asyncio.wait_for(
                sink.deliver(user_id, notification), timeout=self.child_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"{sink.name} delivery to user {user_id} timed out after {self.child_timeout_seconds}s"
            )
            return DispatchError(f"{sink.name} delivery timed out")
        except DispatchError as e:
            logger.warning(f"{sink.name} delivery to user {user_id} failed: {e}")
            return e

    async def deliver(self, user_id: str, notification: Notification) -> DeliveryResult:
        results = await asyncio.gather(
            *(self._deliver_one(sink, user_id, notification) for sink in self.sinks)
        )

        if any(result is DeliveryResult.DELIVERED for result in results):
            return DeliveryResult.DELIVERED

        errors = [result for result in results if isinstance(result, DispatchError)]
        if errors:
            raise errors[0]
        return DeliveryResult.UNDELIVERABLE

    async def close(self):
        for sink in self.sinks:
            await sink.close()
