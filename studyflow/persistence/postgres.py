"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

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


def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows, runs and scheduled tasks using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except (OSError, asyncpg.PostgresError) as e:
            raise PersistenceFailure(str(e)) from e
        try:
            yield conn
        except asyncpg.PostgresError as e:
            raise PersistenceFailure(str(e)) from e
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_workflows (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                enabled BOOLEAN NOT NULL,
                schedule_cron TEXT,
                steps JSONB NOT NULL,
                last_run_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                result JSONB,
                error_message TEXT,
                partial_steps JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                task_type TEXT NOT NULL,
                parameters JSONB,
                schedule_cron TEXT NOT NULL,
                enabled BOOLEAN NOT NULL,
                last_run_at TIMESTAMPTZ,
                next_run_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_analytics (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @staticmethod
    def _workflow_from_row(row: asyncpg.Record) -> Workflow:
        data = dict(row)
        data["steps"] = _loads(data["steps"])
        return Workflow(**data)

    @staticmethod
    def _run_from_row(row: asyncpg.Record) -> WorkflowRun:
        data = dict(row)
        data["result"] = _loads(data["result"])
        data["partial_steps"] = _loads(data["partial_steps"]) or []
        return WorkflowRun(**data)

    @staticmethod
    def _task_from_row(row: asyncpg.Record) -> ScheduledTask:
        data = dict(row)
        data["parameters"] = _loads(data["parameters"]) or {}
        return ScheduledTask(**data)

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with self._connection() as conn:
            exists = await conn.fetchval(
                "SELECT 1 FROM ai_workflows WHERE id = $1", workflow.id
            )
            if exists:
                workflow = workflow.model_copy(update={"updated_at": utcnow()})
            await conn.execute(
                """
                INSERT INTO ai_workflows
                (id, user_id, name, description, enabled, schedule_cron, steps,
                 last_run_at, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    enabled = EXCLUDED.enabled,
                    schedule_cron = EXCLUDED.schedule_cron,
                    steps = EXCLUDED.steps,
                    last_run_at = EXCLUDED.last_run_at,
                    updated_at = EXCLUDED.updated_at
                """,
                workflow.id,
                workflow.user_id,
                workflow.name,
                workflow.description,
                workflow.enabled,
                workflow.schedule_cron,
                json.dumps([s.model_dump(mode="json") for s in workflow.steps]),
                workflow.last_run_at,
                workflow.created_at,
                workflow.updated_at,
            )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM ai_workflows WHERE id = $1", workflow_id)
        return self._workflow_from_row(row) if row else None

    async def list_workflows(self, user_id: Optional[str] = None) -> list[Workflow]:
        async with self._connection() as conn:
            if user_id is None:
                rows = await conn.fetch("SELECT * FROM ai_workflows ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM ai_workflows WHERE user_id = $1 ORDER BY created_at",
                    user_id,
                )
        return [self._workflow_from_row(r) for r in rows]

    async def delete_workflow(self, workflow_id: str) -> bool:
        async with self._connection() as conn:
            status = await conn.execute("DELETE FROM ai_workflows WHERE id = $1", workflow_id)
        return status != "DELETE 0"

    async def touch_workflow_run(self, workflow_id: str, at: datetime) -> None:
        async with self._connection() as conn:
            status = await conn.execute(
                "UPDATE ai_workflows SET last_run_at = $1 WHERE id = $2", at, workflow_id
            )
        if status == "UPDATE 0":
            raise PersistenceFailure(f"Workflow {workflow_id} vanished before update")

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, workflow_id: str, user_id: str) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow_id, user_id=user_id)
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO workflow_runs (id, workflow_id, user_id, status, started_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                run.id,
                run.workflow_id,
                run.user_id,
                run.status.value,
                run.started_at,
            )
        return run

    async def _finish_run(self, run_id: str, query: str, *params: Any) -> WorkflowRun:
        async with self._connection() as conn:
            row = await conn.fetchrow(query, *params)
            if row is None:
                current = await conn.fetchrow(
                    "SELECT status FROM workflow_runs WHERE id = $1", run_id
                )
                if current is None:
                    raise PersistenceFailure(f"Run {run_id} not found")
                raise InvalidRunTransition(run_id, current["status"])
        return self._run_from_row(row)

    async def complete_run(self, run_id: str, steps: list[StepOutcome]) -> WorkflowRun:
        result = {"steps": [s.model_dump(mode="json") for s in steps]}
        return await self._finish_run(
            run_id,
            """
            UPDATE workflow_runs SET status = 'completed', result = $1, completed_at = $2
            WHERE id = $3 AND status = 'running'
            RETURNING *
            """,
            json.dumps(result),
            utcnow(),
            run_id,
        )

    async def fail_run(
        self, run_id: str, error_message: str, partial_steps: list[StepOutcome]
    ) -> WorkflowRun:
        return await self._finish_run(
            run_id,
            """
            UPDATE workflow_runs
            SET status = 'failed', error_message = $1, partial_steps = $2, completed_at = $3
            WHERE id = $4 AND status = 'running'
            RETURNING *
            """,
            error_message,
            json.dumps([s.model_dump(mode="json") for s in partial_steps]),
            utcnow(),
            run_id,
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM workflow_runs WHERE id = $1", run_id)
        return self._run_from_row(row) if row else None

    async def list_runs(self, workflow_id: str) -> list[WorkflowRun]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM workflow_runs WHERE workflow_id = $1 ORDER BY started_at",
                workflow_id,
            )
        return [self._run_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Scheduled tasks
    async def save_task(self, task: ScheduledTask) -> ScheduledTask:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO scheduled_tasks
                (id, user_id, name, description, task_type, parameters, schedule_cron,
                 enabled, last_run_at, next_run_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    task_type = EXCLUDED.task_type,
                    parameters = EXCLUDED.parameters,
                    schedule_cron = EXCLUDED.schedule_cron,
                    enabled = EXCLUDED.enabled,
                    last_run_at = EXCLUDED.last_run_at,
                    next_run_at = EXCLUDED.next_run_at
                """,
                task.id,
                task.user_id,
                task.name,
                task.description,
                task.task_type.value,
                json.dumps(task.parameters),
                task.schedule_cron,
                task.enabled,
                task.last_run_at,
                task.next_run_at,
            )
        return task

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM scheduled_tasks WHERE id = $1", task_id)
        return self._task_from_row(row) if row else None

    async def list_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM scheduled_tasks
                WHERE enabled AND (next_run_at IS NULL OR next_run_at <= $1)
                """,
                now,
            )
        return [self._task_from_row(r) for r in rows]

    async def update_task_schedule(
        self, task_id: str, last_run_at: datetime, next_run_at: datetime
    ) -> None:
        async with self._connection() as conn:
            status = await conn.execute(
                "UPDATE scheduled_tasks SET last_run_at = $1, next_run_at = $2 WHERE id = $3",
                last_run_at,
                next_run_at,
                task_id,
            )
        if status == "UPDATE 0":
            raise PersistenceFailure(f"Scheduled task {task_id} not found")

    # ------------------------------------------------------------------
    # Usage analytics
    async def record_usage(
        self, user_id: str, action_type: str, metadata: dict[str, Any] | None = None
    ) -> UsageEvent:
        event = UsageEvent(user_id=user_id, action_type=action_type, metadata=metadata or {})
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO usage_analytics (id, user_id, action_type, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                event.id,
                event.user_id,
                event.action_type,
                json.dumps(event.metadata, default=str),
                event.created_at,
            )
        return event

    async def list_usage(self, user_id: str) -> list[UsageEvent]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM usage_analytics WHERE user_id = $1 ORDER BY created_at",
                user_id,
            )
        events = []
        for r in rows:
            data = dict(r)
            data["metadata"] = _loads(data["metadata"]) or {}
            events.append(UsageEvent(**data))
        return events
