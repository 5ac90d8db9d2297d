"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import (
    EnrollmentStatus,
    StepStats,
    WorkflowDefinition,
    WorkflowStats,
    WorkflowStatus,
)
from ..errors import DuplicateEnrollmentError, SchedulerClaimConflict
from .models import DeliveryLog, Enrollment
from .repository import WorkflowRepository

_CLAIM_FIELDS = {"claimed_by", "claimed_until"}


def _affected(status: str) -> int:
    # asyncpg reports e.g. "UPDATE 1"
    return int(status.split()[-1])


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist automation state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                definition JSONB NOT NULL,
                stats JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_action_at TIMESTAMPTZ,
                enrolled_at TIMESTAMPTZ NOT NULL,
                claimed_by TEXT,
                claimed_until TIMESTAMPTZ,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS enrollments_one_open
            ON enrollments (workflow_id, contact_id)
            WHERE status IN ('active', 'paused')
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS enrollments_due ON enrollments (status, next_action_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS deliveries (
                delivery_id TEXT PRIMARY KEY,
                enrollment_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                sent_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )

    @staticmethod
    def _definition_from_row(row: Any) -> WorkflowDefinition:
        definition = WorkflowDefinition.model_validate_json(row["definition"])
        definition.stats = WorkflowStats.model_validate_json(row["stats"])
        return definition

    @staticmethod
    def _enrollment_from_row(row: Any) -> Enrollment:
        enrollment = Enrollment.model_validate_json(row["document"])
        enrollment.claimed_by = row["claimed_by"]
        enrollment.claimed_until = row["claimed_until"]
        return enrollment

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflows (id, status, trigger_type, definition, stats)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    trigger_type = EXCLUDED.trigger_type,
                    definition = EXCLUDED.definition
                """,
                definition.id,
                definition.status.value,
                definition.trigger.type,
                definition.model_dump_json(exclude={"stats"}),
                definition.stats.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT definition, stats FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return self._definition_from_row(row) if row else None

    async def list_definitions(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT definition, stats FROM workflows
                WHERE ($1::text IS NULL OR status = $1)
                  AND ($2::text IS NULL OR trigger_type = $2)
                """,
                status.value if status is not None else None,
                trigger_type,
            )
        finally:
            await conn.close()
        return [self._definition_from_row(r) for r in rows]

    async def increment_stats(
        self,
        workflow_id: str,
        deltas: dict[str, float],
        step_id: Optional[str] = None,
        last_entry_at: Optional[datetime] = None,
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT stats FROM workflows WHERE id = $1 FOR UPDATE",
                    workflow_id,
                )
                if not row:
                    return
                stats = WorkflowStats.model_validate_json(row["stats"])
                target = stats
                if step_id is not None:
                    target = stats.steps.setdefault(step_id, StepStats())
                for key, delta in deltas.items():
                    setattr(target, key, getattr(target, key) + delta)
                if last_entry_at is not None:
                    stats.last_entry_at = last_entry_at
                await conn.execute(
                    "UPDATE workflows SET stats = $1 WHERE id = $2",
                    stats.model_dump_json(),
                    workflow_id,
                )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO enrollments
                (id, workflow_id, contact_id, status, next_action_at, enrolled_at, document)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                enrollment.id,
                enrollment.workflow_id,
                enrollment.contact_id,
                enrollment.status.value,
                enrollment.next_action_at,
                enrollment.enrolled_at,
                enrollment.model_dump_json(exclude=_CLAIM_FIELDS),
            )
        except asyncpg.exceptions.UniqueViolationError as exc:
            raise DuplicateEnrollmentError(
                f"Contact {enrollment.contact_id} already enrolled in "
                f"workflow {enrollment.workflow_id}"
            ) from exc
        finally:
            await conn.close()

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document, claimed_by, claimed_until FROM enrollments WHERE id = $1",
                enrollment_id,
            )
        finally:
            await conn.close()
        return self._enrollment_from_row(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT document, claimed_by, claimed_until FROM enrollments
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND ($2::text IS NULL OR contact_id = $2)
                  AND ($3::text IS NULL OR status = $3)
                ORDER BY enrolled_at
                """,
                workflow_id,
                contact_id,
                status.value if status is not None else None,
            )
        finally:
            await conn.close()
        return [self._enrollment_from_row(r) for r in rows]

    async def find_due(self, now: datetime, limit: int) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT document, claimed_by, claimed_until FROM enrollments
                WHERE status IN ('active', 'paused')
                  AND next_action_at IS NOT NULL AND next_action_at <= $1
                  AND (claimed_until IS NULL OR claimed_until <= $1)
                ORDER BY next_action_at
                LIMIT $2
                """,
                now,
                limit,
            )
        finally:
            await conn.close()
        return [self._enrollment_from_row(r) for r in rows]

    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, until: datetime
    ) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                UPDATE enrollments SET claimed_by = $1, claimed_until = $2
                WHERE id = $3 AND status IN ('active', 'paused')
                  AND next_action_at IS NOT NULL AND next_action_at <= $4
                  AND (claimed_until IS NULL OR claimed_until <= $4)
                RETURNING document, claimed_by, claimed_until
                """,
                worker_id,
                until,
                enrollment_id,
                now,
            )
        finally:
            await conn.close()
        return self._enrollment_from_row(row) if row else None

    async def save_enrollment(self, enrollment: Enrollment, worker_id: str) -> None:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments SET status = $1, next_action_at = $2, document = $3
                WHERE id = $4 AND claimed_by = $5
                """,
                enrollment.status.value,
                enrollment.next_action_at,
                enrollment.model_dump_json(exclude=_CLAIM_FIELDS),
                enrollment.id,
                worker_id,
            )
        finally:
            await conn.close()
        if not _affected(status):
            raise SchedulerClaimConflict(
                f"Worker {worker_id} does not hold enrollment {enrollment.id}"
            )

    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE enrollments SET claimed_by = NULL, claimed_until = NULL
                WHERE id = $1 AND claimed_by = $2
                """,
                enrollment_id,
                worker_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_delivery(self, log: DeliveryLog) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO deliveries (delivery_id, enrollment_id, step_id, sent_at, document)
                VALUES ($1, $2, $3, $4, $5)
                """,
                log.delivery_id,
                log.enrollment_id,
                log.step_id,
                log.sent_at,
                log.model_dump_json(),
            )
        finally:
            await conn.close()

    async def save_delivery(self, log: DeliveryLog) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE deliveries SET document = $1 WHERE delivery_id = $2",
                log.model_dump_json(),
                log.delivery_id,
            )
        finally:
            await conn.close()

    async def get_delivery(self, delivery_id: str) -> DeliveryLog | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM deliveries WHERE delivery_id = $1", delivery_id
            )
        finally:
            await conn.close()
        return DeliveryLog.model_validate_json(row["document"]) if row else None

    async def find_delivery(
        self, enrollment_id: str, step_id: str
    ) -> DeliveryLog | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM deliveries WHERE enrollment_id = $1 AND step_id = $2",
                enrollment_id,
                step_id,
            )
        finally:
            await conn.close()
        return DeliveryLog.model_validate_json(row["document"]) if row else None

    async def list_deliveries(self, enrollment_id: str) -> list[DeliveryLog]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM deliveries WHERE enrollment_id = $1 ORDER BY sent_at",
                enrollment_id,
            )
        finally:
            await conn.close()
        return [DeliveryLog.model_validate_json(r["document"]) for r in rows]
