"""Facade wiring storage, collaborators and engine components together."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .config import NurtureConfig, load_config
from .contracts import DeliveryEvent, TriggerEvent, WorkflowStats
from .execute import StepExecutor
from .persistence import get_repository
from .persistence.models import DeliveryLog, Enrollment
from .persistence.repository import WorkflowRepository
from .scheduler import ScanReport, Scheduler
from .services import Services, get_services
from .stats import StatsAggregator
from .tracking import DeliveryTracker
from .triggers import TriggerMatcher
from .workflows import WorkflowManager

logger = logging.getLogger(__name__)


class AutomationEngine:
    """One engine instance: a repository, its collaborators and the workers."""

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        services: Optional[Services] = None,
        config: Optional[NurtureConfig] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(self.config.database_url)
        self.services = services or get_services(self.config)
        self.stats = StatsAggregator(self.repository)
        self.workflows = WorkflowManager(self.repository)
        self.matcher = TriggerMatcher(
            self.repository,
            self.services.contacts,
            stats=self.stats,
            call_timeout=self.config.services.call_timeout_seconds,
        )
        self.executor = StepExecutor(
            self.repository, self.services, config=self.config, stats=self.stats
        )
        self.scheduler = Scheduler(
            self.repository, self.executor, config=self.config, worker_id=worker_id
        )
        self.tracker = DeliveryTracker(self.repository, stats=self.stats)

    async def ingest(
        self, event: TriggerEvent, now: Optional[datetime] = None
    ) -> List[Enrollment]:
        """Enroll the event's contact in every workflow it triggers."""
        return await self.matcher.match(event, now=now)

    async def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        return await self.scheduler.run_once(now)

    async def handle_delivery_event(self, event: DeliveryEvent) -> Optional[DeliveryLog]:
        return await self.tracker.apply(event)

    async def attribute_revenue(
        self, delivery_id: str, amount: float
    ) -> Optional[DeliveryLog]:
        return await self.tracker.attribute_revenue(delivery_id, amount)

    async def rebuild_stats(self, workflow_id: str) -> WorkflowStats:
        return await self.stats.rebuild(workflow_id)
