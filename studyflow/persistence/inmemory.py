"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from ..contracts import (
    RunStatus,
    ScheduledTask,
    StepOutcome,
    UsageEvent,
    Workflow,
    WorkflowRun,
    utcnow,
)
from ..errors import InvalidRunTransition, PersistenceFailure
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflows and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._tasks: Dict[str, ScheduledTask] = {}
        self._usage: list[UsageEvent] = []

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        stored = workflow.model_copy(deep=True)
        if workflow.id in self._workflows:
            stored.updated_at = utcnow()
        self._workflows[workflow.id] = stored
        return stored.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self, user_id: Optional[str] = None) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if user_id is None or wf.user_id == user_id
        ]

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    async def touch_workflow_run(self, workflow_id: str, at: datetime) -> None:
        wf = self._workflows.get(workflow_id)
        if wf is None:
            raise PersistenceFailure(f"Workflow {workflow_id} vanished before update")
        wf.last_run_at = at

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, workflow_id: str, user_id: str) -> WorkflowRun:
        run = WorkflowRun(workflow_id=workflow_id, user_id=user_id)
        self._runs[run.id] = run
        return run.model_copy(deep=True)

    def _running(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise PersistenceFailure(f"Run {run_id} not found")
        if run.is_terminal:
            raise InvalidRunTransition(run_id, run.status.value)
        return run

    async def complete_run(self, run_id: str, steps: list[StepOutcome]) -> WorkflowRun:
        run = self._running(run_id)
        run.status = RunStatus.COMPLETED
        run.result = {"steps": [s.model_dump(mode="json") for s in steps]}
        run.completed_at = utcnow()
        return run.model_copy(deep=True)

    async def fail_run(
        self, run_id: str, error_message: str, partial_steps: list[StepOutcome]
    ) -> WorkflowRun:
        run = self._running(run_id)
        run.status = RunStatus.FAILED
        run.error_message = error_message
        run.partial_steps = list(partial_steps)
        run.completed_at = utcnow()
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, workflow_id: str) -> list[WorkflowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if run.workflow_id == workflow_id
        ]

    # ------------------------------------------------------------------
    # Scheduled tasks
    async def save_task(self, task: ScheduledTask) -> ScheduledTask:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        return [t.model_copy(deep=True) for t in self._tasks.values() if t.is_due(now)]

    async def update_task_schedule(
        self, task_id: str, last_run_at: datetime, next_run_at: datetime
    ) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            raise PersistenceFailure(f"Scheduled task {task_id} not found")
        task.last_run_at = last_run_at
        task.next_run_at = next_run_at

    # ------------------------------------------------------------------
    # Usage analytics
    async def record_usage(
        self, user_id: str, action_type: str, metadata: dict[str, Any] | None = None
    ) -> UsageEvent:
        event = UsageEvent(user_id=user_id, action_type=action_type, metadata=metadata or {})
        self._usage.append(event)
        return event

    async def list_usage(self, user_id: str) -> list[UsageEvent]:
        return [e for e in self._usage if e.user_id == user_id]
