"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..contracts import (
    ScheduledTask,
    StepOutcome,
    UsageEvent,
    Workflow,
    WorkflowRun,
    utcnow,
)
from ..errors import InvalidRunTransition, PersistenceFailure
from .repository import WorkflowRepository


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows, runs and scheduled tasks using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_workflows (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                enabled INTEGER NOT NULL,
                schedule_cron TEXT,
                steps TEXT NOT NULL,
                last_run_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error_message TEXT,
                partial_steps TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                task_type TEXT NOT NULL,
                parameters TEXT,
                schedule_cron TEXT NOT NULL,
                enabled INTEGER NOT NULL,
                last_run_at TEXT,
                next_run_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_analytics (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(str(e)) from e
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(str(e)) from e

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        try:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(str(e)) from e

    @staticmethod
    def _workflow_from_row(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            enabled=bool(row["enabled"]),
            schedule_cron=row["schedule_cron"],
            steps=json.loads(row["steps"]),
            last_run_at=_parse_ts(row["last_run_at"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _run_from_row(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_id=row["workflow_id"],
            user_id=row["user_id"],
            status=row["status"],
            result=json.loads(row["result"]) if row["result"] else None,
            error_message=row["error_message"],
            partial_steps=json.loads(row["partial_steps"]) if row["partial_steps"] else [],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            task_type=row["task_type"],
            parameters=json.loads(row["parameters"]) if row["parameters"] else {},
            schedule_cron=row["schedule_cron"],
            enabled=bool(row["enabled"]),
            last_run_at=_parse_ts(row["last_run_at"]),
            next_run_at=_parse_ts(row["next_run_at"]),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        existing = await self.get_workflow(workflow.id)
        if existing is not None:
            workflow = workflow.model_copy(update={"updated_at": utcnow()})
        steps = json.dumps([s.model_dump(mode="json") for s in workflow.steps])
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO ai_workflows
            (id, user_id, name, description, enabled, schedule_cron, steps,
             last_run_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            workflow.id,
            workflow.user_id,
            workflow.name,
            workflow.description,
            int(workflow.enabled),
            workflow.schedule_cron,
            steps,
            _ts(workflow.last_run_at),
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM ai_workflows WHERE id = ?", workflow_id
        )
        return self._workflow_from_row(row) if row else None

    async def list_workflows(self, user_id: Optional[str] = None) -> list[Workflow]:
        if user_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM ai_workflows ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM ai_workflows WHERE user_id = ? ORDER BY created_at",
                user_id,
            )
        return [self._workflow_from_row(r) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM ai_workflows WHERE id = ?", workflow_id
        )
        return count > 0

    async def touch_workflow_run(self, workflow_id: str, at: datetime) -> None:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE ai_workflows SET last_run_at = ? WHERE id = ?",
            _ts(at),
            workflow_id,
        )
        if count == 0:
            raise PersistenceFailure(f"Workflow {workflow_id} vanished before update")

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, workflow_id: str, user_id: str) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow_id, user_id=user_id)
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_runs (id, workflow_id, user_id, status, started_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            run.id,
            run.workflow_id,
            run.user_id,
            run.status.value,
            _ts(run.started_at),
        )
        return run

    async def _finish_run(self, run_id: str, query: str, *params: Any) -> WorkflowRun:
        count = await asyncio.to_thread(self._execute, query, *params)
        run = await self.get_run(run_id)
        if run is None:
            raise PersistenceFailure(f"Run {run_id} not found")
        if count == 0:
            raise InvalidRunTransition(run_id, run.status.value)
        return run

    async def complete_run(self, run_id: str, steps: list[StepOutcome]) -> WorkflowRun:
        result = {"steps": [s.model_dump(mode="json") for s in steps]}
        return await self._finish_run(
            run_id,
            """
            UPDATE workflow_runs SET status = 'completed', result = ?, completed_at = ?
            WHERE id = ? AND status = 'running'
            """,
            json.dumps(result),
            _ts(utcnow()),
            run_id,
        )

    async def fail_run(
        self, run_id: str, error_message: str, partial_steps: list[StepOutcome]
    ) -> WorkflowRun:
        return await self._finish_run(
            run_id,
            """
            UPDATE workflow_runs
            SET status = 'failed', error_message = ?, partial_steps = ?, completed_at = ?
            WHERE id = ? AND status = 'running'
            """,
            error_message,
            json.dumps([s.model_dump(mode="json") for s in partial_steps]),
            _ts(utcnow()),
            run_id,
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_runs WHERE id = ?", run_id
        )
        return self._run_from_row(row) if row else None

    async def list_runs(self, workflow_id: str) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_runs WHERE workflow_id = ? ORDER BY started_at, rowid",
            workflow_id,
        )
        return [self._run_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Scheduled tasks
    async def save_task(self, task: ScheduledTask) -> ScheduledTask:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO scheduled_tasks
            (id, user_id, name, description, task_type, parameters, schedule_cron,
             enabled, last_run_at, next_run_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            task.id,
            task.user_id,
            task.name,
            task.description,
            task.task_type.value,
            json.dumps(task.parameters),
            task.schedule_cron,
            int(task.enabled),
            _ts(task.last_run_at),
            _ts(task.next_run_at),
        )
        return task

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM scheduled_tasks WHERE id = ?", task_id
        )
        return self._task_from_row(row) if row else None

    async def list_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM scheduled_tasks WHERE enabled = 1 ORDER BY rowid"
        )
        tasks = [self._task_from_row(r) for r in rows]
        return [t for t in tasks if t.is_due(now)]

    async def update_task_schedule(
        self, task_id: str, last_run_at: datetime, next_run_at: datetime
    ) -> None:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE scheduled_tasks SET last_run_at = ?, next_run_at = ? WHERE id = ?",
            _ts(last_run_at),
            _ts(next_run_at),
            task_id,
        )
        if count == 0:
            raise PersistenceFailure(f"Scheduled task {task_id} not found")

    # ------------------------------------------------------------------
    # Usage analytics
    async def record_usage(
        self, user_id: str, action_type: str, metadata: dict[str, Any] | None = None
    ) -> UsageEvent:
        event = UsageEvent(user_id=user_id, action_type=action_type, metadata=metadata or {})
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO usage_analytics (id, user_id, action_type, metadata, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            event.id,
            event.user_id,
            event.action_type,
            json.dumps(event.metadata, default=str),
            _ts(event.created_at),
        )
        return event

    async def list_usage(self, user_id: str) -> list[UsageEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM usage_analytics WHERE user_id = ? ORDER BY rowid",
            user_id,
        )
        return [
            UsageEvent(
                id=r["id"],
                user_id=r["user_id"],
                action_type=r["action_type"],
                metadata=json.loads(r["metadata"]) if r["metadata"] else {},
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]
