"""Repository abstraction for workflow persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from ..contracts import ScheduledTask, StepOutcome, UsageEvent, Workflow, WorkflowRun


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends."""

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Insert or fully replace a workflow."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self, user_id: Optional[str] = None) -> list[Workflow]:
        """Return all workflows, optionally filtered by owner."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow. Run history is retained."""

    async def touch_workflow_run(self, workflow_id: str, at: datetime) -> None:
        """Set the workflow's last-run timestamp."""

    async def create_run(self, workflow_id: str, user_id: str) -> WorkflowRun:
        """Persist a new run record in ``running`` state."""

    async def complete_run(self, run_id: str, steps: list[StepOutcome]) -> WorkflowRun:
        """Move a running record to ``completed``."""

    async def fail_run(
        self, run_id: str, error_message: str, partial_steps: list[StepOutcome]
    ) -> WorkflowRun:
        """Move a running record to ``failed``."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run record by id."""

    async def list_runs(self, workflow_id: str) -> list[WorkflowRun]:
        """Return the run history of a workflow, oldest first."""

    async def save_task(self, task: ScheduledTask) -> ScheduledTask:
        """Insert or replace a scheduled task."""

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        """Retrieve a scheduled task by id."""

    async def list_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        """Return enabled tasks whose next run is unset or has passed."""

    async def update_task_schedule(
        self, task_id: str, last_run_at: datetime, next_run_at: datetime
    ) -> None:
        """Persist the outcome of a scheduler pass for one task."""

    async def record_usage(
        self, user_id: str, action_type: str, metadata: dict[str, Any] | None = None
    ) -> UsageEvent:
        """Append a usage analytics event."""

    async def list_usage(self, user_id: str) -> list[UsageEvent]:
        """Return usage events of a user, oldest first."""
