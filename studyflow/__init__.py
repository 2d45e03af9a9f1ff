"""studyflow: Workflow automation for study tools."""

from .completion import AgentCompletionClient, CompletionClient
from .config import StudyflowConfig, load_config
from .contracts import (
    AiTaskStep,
    ApiCallStep,
    DelayStep,
    RunStatus,
    ScheduledTask,
    StepOutcome,
    TaskType,
    WebScrapeStep,
    Workflow,
    WorkflowRun,
)
from .errors import (
    PersistenceFailure,
    StepFailure,
    WorkflowDisabled,
    WorkflowNotFound,
)
from .execute import WorkflowExecutor
from .persistence import get_repository
from .scheduler import SchedulerTrigger

__version__ = "0.1.0"
__all__ = [
    "AgentCompletionClient",
    "AiTaskStep",
    "ApiCallStep",
    "CompletionClient",
    "DelayStep",
    "PersistenceFailure",
    "RunStatus",
    "ScheduledTask",
    "SchedulerTrigger",
    "StepFailure",
    "StepOutcome",
    "StudyflowConfig",
    "TaskType",
    "WebScrapeStep",
    "Workflow",
    "WorkflowDisabled",
    "WorkflowExecutor",
    "WorkflowNotFound",
    "WorkflowRun",
    "get_repository",
    "load_config",
]
