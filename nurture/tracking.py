"""Delivery callback handling and revenue attribution."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import DeliveryEvent
from .persistence.models import DeliveryLog
from .persistence.repository import WorkflowRepository
from .stats import StatsAggregator
from .utils.time import ensure_utc

logger = logging.getLogger(__name__)

_RANK = {"sent": 0, "delivered": 1, "opened": 2, "clicked": 3}
_TERMINAL = ("bounced", "failed")


class DeliveryTracker:
    """Moves Delivery Logs forward as dispatch callbacks arrive.

    Each timestamp is stamped at most once and ``status`` never moves
    backwards; ``bounced`` and ``failed`` are final. A click implies an open.
    """

    def __init__(
        self, repository: WorkflowRepository, stats: Optional[StatsAggregator] = None
    ) -> None:
        self._repository = repository
        self._stats = stats or StatsAggregator(repository)

    async def apply(self, event: DeliveryEvent) -> Optional[DeliveryLog]:
        log = await self._repository.get_delivery(event.delivery_id)
        if log is None:
            logger.warning(f"Delivery event for unknown delivery {event.delivery_id}")
            return None

        at = ensure_utc(event.timestamp)
        stamped = []
        if event.event == "clicked" and log.opened_at is None:
            log.opened_at = at
            stamped.append("opened")
        field = f"{event.event}_at"
        if getattr(log, field) is None:
            setattr(log, field, at)
            stamped.append(event.event)
        if not stamped:
            logger.debug(f"Duplicate {event.event} event for delivery {log.delivery_id}")
            return log

        if log.status not in _TERMINAL:
            if event.event in _TERMINAL or _RANK[event.event] > _RANK[log.status]:
                log.status = event.event
        await self._repository.save_delivery(log)
        for kind in stamped:
            await self._stats.email_engaged(log.workflow_id, kind)
        logger.info(f"Delivery {log.delivery_id} {event.event} (status {log.status})")
        return log

    async def attribute_revenue(
        self, delivery_id: str, amount: float
    ) -> Optional[DeliveryLog]:
        """Add ``amount`` to the revenue credited to one delivery."""
        log = await self._repository.get_delivery(delivery_id)
        if log is None:
            logger.warning(f"Revenue for unknown delivery {delivery_id}")
            return None
        log.revenue += amount
        await self._repository.save_delivery(log)
        await self._stats.revenue(log.workflow_id, amount)
        return log
