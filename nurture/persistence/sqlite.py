"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import (
    EnrollmentStatus,
    StepStats,
    WorkflowDefinition,
    WorkflowStats,
    WorkflowStatus,
)
from ..errors import DuplicateEnrollmentError, SchedulerClaimConflict
from ..utils.time import ensure_utc
from .models import DeliveryLog, Enrollment
from .repository import WorkflowRepository

_CLAIM_FIELDS = {"claimed_by", "claimed_until"}


def _ts(value: Optional[datetime]) -> Optional[str]:
    # fixed-width so that text comparison matches time order
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist automation state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._guard = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                definition TEXT NOT NULL,
                stats TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                next_action_at TEXT,
                enrolled_at TEXT NOT NULL,
                claimed_by TEXT,
                claimed_until TEXT,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS enrollments_one_open
            ON enrollments (workflow_id, contact_id)
            WHERE status IN ('active', 'paused')
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS enrollments_due ON enrollments (status, next_action_at)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS deliveries (
                delivery_id TEXT PRIMARY KEY,
                enrollment_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                sent_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_enrollment(self, enrollment: Enrollment) -> None:
        try:
            self._execute(
                """
                INSERT INTO enrollments
                (id, workflow_id, contact_id, status, next_action_at, enrolled_at, document)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                enrollment.id,
                enrollment.workflow_id,
                enrollment.contact_id,
                enrollment.status.value,
                _ts(enrollment.next_action_at),
                _ts(enrollment.enrolled_at),
                enrollment.model_dump_json(exclude=_CLAIM_FIELDS),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEnrollmentError(
                f"Contact {enrollment.contact_id} already enrolled in "
                f"workflow {enrollment.workflow_id}"
            ) from exc

    def _increment(
        self,
        workflow_id: str,
        deltas: dict[str, float],
        step_id: Optional[str],
        last_entry_at: Optional[datetime],
    ) -> None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute("SELECT stats FROM workflows WHERE id = ?", (workflow_id,))
            row = cur.fetchone()
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
            cur.execute(
                "UPDATE workflows SET stats = ? WHERE id = ?",
                (stats.model_dump_json(), workflow_id),
            )
            self._conn.commit()

    @staticmethod
    def _definition_from_row(row: sqlite3.Row) -> WorkflowDefinition:
        definition = WorkflowDefinition.model_validate_json(row["definition"])
        definition.stats = WorkflowStats.model_validate_json(row["stats"])
        return definition

    @staticmethod
    def _enrollment_from_row(row: sqlite3.Row) -> Enrollment:
        enrollment = Enrollment.model_validate_json(row["document"])
        enrollment.claimed_by = row["claimed_by"]
        enrollment.claimed_until = _parse_ts(row["claimed_until"])
        return enrollment

    # ------------------------------------------------------------------
    # Repository API: workflow definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, status, trigger_type, definition, stats)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                trigger_type = excluded.trigger_type,
                definition = excluded.definition
            """,
            definition.id,
            definition.status.value,
            definition.trigger.type,
            definition.model_dump_json(exclude={"stats"}),
            definition.stats.model_dump_json(),
        )

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT definition, stats FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._definition_from_row(row) if row else None

    async def list_definitions(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        query = "SELECT definition, stats FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if trigger_type is not None:
            query += " AND trigger_type = ?"
            params.append(trigger_type)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._definition_from_row(r) for r in rows]

    async def increment_stats(
        self,
        workflow_id: str,
        deltas: dict[str, float],
        step_id: Optional[str] = None,
        last_entry_at: Optional[datetime] = None,
    ) -> None:
        await asyncio.to_thread(
            self._increment, workflow_id, deltas, step_id, last_entry_at
        )

    # ------------------------------------------------------------------
    # Repository API: enrollments
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        await asyncio.to_thread(self._insert_enrollment, enrollment)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document, claimed_by, claimed_until FROM enrollments WHERE id = ?",
            enrollment_id,
        )
        return self._enrollment_from_row(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        query = "SELECT document, claimed_by, claimed_until FROM enrollments WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if contact_id is not None:
            query += " AND contact_id = ?"
            params.append(contact_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY enrolled_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._enrollment_from_row(r) for r in rows]

    async def find_due(self, now: datetime, limit: int) -> list[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT document, claimed_by, claimed_until FROM enrollments
            WHERE status IN ('active', 'paused')
              AND next_action_at IS NOT NULL AND next_action_at <= ?
              AND (claimed_until IS NULL OR claimed_until <= ?)
            ORDER BY next_action_at
            LIMIT ?
            """,
            _ts(now),
            _ts(now),
            limit,
        )
        return [self._enrollment_from_row(r) for r in rows]

    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, until: datetime
    ) -> Enrollment | None:
        claimed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET claimed_by = ?, claimed_until = ?
            WHERE id = ? AND status IN ('active', 'paused')
              AND next_action_at IS NOT NULL AND next_action_at <= ?
              AND (claimed_until IS NULL OR claimed_until <= ?)
            """,
            worker_id,
            _ts(until),
            enrollment_id,
            _ts(now),
            _ts(now),
        )
        if not claimed:
            return None
        return await self.get_enrollment(enrollment_id)

    async def save_enrollment(self, enrollment: Enrollment, worker_id: str) -> None:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET status = ?, next_action_at = ?, document = ?
            WHERE id = ? AND claimed_by = ?
            """,
            enrollment.status.value,
            _ts(enrollment.next_action_at),
            enrollment.model_dump_json(exclude=_CLAIM_FIELDS),
            enrollment.id,
            worker_id,
        )
        if not updated:
            raise SchedulerClaimConflict(
                f"Worker {worker_id} does not hold enrollment {enrollment.id}"
            )

    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET claimed_by = NULL, claimed_until = NULL
            WHERE id = ? AND claimed_by = ?
            """,
            enrollment_id,
            worker_id,
        )

    # ------------------------------------------------------------------
    # Repository API: delivery logs
    async def create_delivery(self, log: DeliveryLog) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO deliveries (delivery_id, enrollment_id, step_id, sent_at, document)
            VALUES (?, ?, ?, ?, ?)
            """,
            log.delivery_id,
            log.enrollment_id,
            log.step_id,
            _ts(log.sent_at),
            log.model_dump_json(),
        )

    async def save_delivery(self, log: DeliveryLog) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE deliveries SET document = ? WHERE delivery_id = ?",
            log.model_dump_json(),
            log.delivery_id,
        )

    async def get_delivery(self, delivery_id: str) -> DeliveryLog | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM deliveries WHERE delivery_id = ?",
            delivery_id,
        )
        return DeliveryLog.model_validate_json(row["document"]) if row else None

    async def find_delivery(
        self, enrollment_id: str, step_id: str
    ) -> DeliveryLog | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM deliveries WHERE enrollment_id = ? AND step_id = ?",
            enrollment_id,
            step_id,
        )
        return DeliveryLog.model_validate_json(row["document"]) if row else None

    async def list_deliveries(self, enrollment_id: str) -> list[DeliveryLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM deliveries WHERE enrollment_id = ? ORDER BY sent_at",
            enrollment_id,
        )
        return [DeliveryLog.model_validate_json(r["document"]) for r in rows]
