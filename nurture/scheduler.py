"""Scan loop that claims due enrollments and hands them to the executor."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from .config import NurtureConfig, load_config
from .contracts import EnrollmentStatus, WorkflowDefinition, WorkflowStatus
from .errors import SchedulerClaimConflict
from .execute import StepExecutor
from .persistence.models import Enrollment
from .persistence.repository import WorkflowRepository
from .utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    """What one scan did with the enrollments it found due."""

    due: int = 0
    processed: int = 0
    skipped: int = 0
    conflicts: int = 0
    timeouts: int = 0
    errors: int = 0


class Scheduler:
    """Finds due enrollments, claims them and advances them.

    Several schedulers may share one repository; the claim guarantees an
    enrollment is advanced by one worker at a time.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        executor: StepExecutor,
        config: Optional[NurtureConfig] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        config = config or load_config()
        self._repository = repository
        self._executor = executor
        self._config = config.scheduler
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"

    async def run_once(self, now: Optional[datetime] = None) -> ScanReport:
        """Scan once and process every due enrollment found."""
        now = ensure_utc(now) if now else utcnow()
        due = await self._repository.find_due(now, self._config.batch_size)
        report = ScanReport(due=len(due))
        if not due:
            return report

        definitions: Dict[str, Optional[WorkflowDefinition]] = {}
        for workflow_id in {e.workflow_id for e in due}:
            definitions[workflow_id] = await self._repository.get_definition(workflow_id)

        semaphore = asyncio.Semaphore(self._config.concurrency)

        async def bounded(candidate: Enrollment) -> str:
            async with semaphore:
                return await self._process(candidate, definitions, now)

        outcomes = await asyncio.gather(*(bounded(e) for e in due))
        for outcome in outcomes:
            setattr(report, outcome, getattr(report, outcome) + 1)
        logger.debug(f"Scan by {self.worker_id}: {report}")
        return report

    async def _process(
        self,
        candidate: Enrollment,
        definitions: Dict[str, Optional[WorkflowDefinition]],
        now: datetime,
    ) -> str:
        definition = definitions.get(candidate.workflow_id)
        if (
            candidate.status == EnrollmentStatus.PAUSED
            and definition is not None
            and definition.status != WorkflowStatus.ACTIVE
        ):
            return "skipped"

        until = now + timedelta(seconds=self._config.claim_lease_seconds)
        claimed = await self._repository.claim_enrollment(
            candidate.id, self.worker_id, now, until
        )
        if claimed is None:
            logger.debug(f"Enrollment {candidate.id} claimed by another worker")
            return "conflicts"

        try:
            await asyncio.wait_for(
                self._executor.advance(claimed, self.worker_id, now),
                timeout=self._config.execution_timeout_seconds,
            )
            return "processed"
        except asyncio.TimeoutError:
            logger.warning(
                f"Enrollment {claimed.id} timed out; it will be retried on a later scan"
            )
            return "timeouts"
        except SchedulerClaimConflict as exc:
            logger.debug(f"Enrollment {claimed.id} lost its claim: {exc}")
            return "conflicts"
        except Exception:
            logger.exception(f"Enrollment {claimed.id} could not be processed")
            return "errors"
        finally:
            await self._repository.release_claim(claimed.id, self.worker_id)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Scan every ``scan_interval`` seconds.

        Args:
            lifespan: Maximum time in seconds to keep scanning. If None, runs
                indefinitely.
        """
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        logger.info(f"Scheduler {self.worker_id} started")
        while True:
            if lifespan and loop.time() - start_time >= lifespan:
                break
            try:
                report = await self.run_once()
                if report.due:
                    logger.info(
                        f"Scheduler {self.worker_id} processed {report.processed}/{report.due} due enrollments"
                    )
            except Exception:
                logger.exception(f"Scheduler {self.worker_id} scan failed")
            await asyncio.sleep(self._config.scan_interval)
        logger.info(f"Scheduler {self.worker_id} stopped")
