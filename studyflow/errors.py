"""Exception types raised by studyflow."""

from __future__ import annotations

from typing import Optional


class StudyflowError(Exception):
    """Base class for all studyflow errors."""


class WorkflowNotFound(StudyflowError):
    """Workflow does not exist or is not owned by the invoking user."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowDisabled(StudyflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow is disabled: {workflow_id}")
        self.workflow_id = workflow_id


class StepFailure(StudyflowError):
    """A step handler raised; ``str(exc)`` is the underlying message."""

    def __init__(
        self, message: str, step_name: Optional[str] = None, step_index: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.step_name = step_name
        self.step_index = step_index


class RunTimeout(StepFailure):
    """The overall run budget was exceeded."""


class PersistenceFailure(StudyflowError):
    """A run record or workflow metadata could not be written."""


class InvalidRunTransition(StudyflowError):
    """Attempt to move a run that is already in a terminal state."""

    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"Run {run_id} is already {status}")
        self.run_id = run_id
        self.status = status
