"""Core data contracts for studyflow workflows."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RetryPolicy(BaseModel):
    """Bounded retry applied to transient network errors of a step."""

    max_attempts: int = Field(default=1, ge=1)
    backoff_base: float = Field(default=1.5, ge=0)
    jitter: float = Field(default=0.5, ge=0)


class _StepBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = "Step"
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")


class AiTaskStep(_StepBase):
    """Single non-streaming completion call."""

    type: Literal["ai_task"] = "ai_task"
    prompt: str
    system_prompt: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("system_prompt", "systemPrompt")
    )
    model: Optional[str] = None


class ApiCallStep(_StepBase):
    """Single HTTP request whose JSON body becomes the step result."""

    type: Literal["api_call"] = "api_call"
    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    duration: int = Field(default=1000, ge=0, description="Milliseconds")


class WebScrapeStep(_StepBase):
    type: Literal["web_scrape"] = "web_scrape"
    url: Optional[str] = None


StepDefinition = Annotated[
    Union[AiTaskStep, ApiCallStep, DelayStep, WebScrapeStep],
    Field(discriminator="type"),
]


class Workflow(BaseModel):
    """A named, owned, ordered list of steps."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    description: Optional[str] = None
    enabled: bool = True
    schedule_cron: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    last_run_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepOutcome(BaseModel):
    """Output of one executed step, labelled by the step name."""

    step: str
    result: Any = None


class WorkflowRun(BaseModel):
    """Persisted outcome of one execution of a workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    user_id: str
    status: RunStatus = RunStatus.RUNNING
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    partial_steps: List[StepOutcome] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not RunStatus.RUNNING

    @property
    def steps(self) -> List[StepOutcome]:
        """Step outcomes of a completed run (empty otherwise)."""
        if not self.result:
            return []
        return [StepOutcome.model_validate(s) for s in self.result.get("steps", [])]


class TaskType(str, Enum):
    WORKFLOW = "workflow"
    REMINDER = "reminder"
    DATA_SYNC = "data_sync"


class ScheduledTask(BaseModel):
    """Periodic task picked up by the scheduler when due."""

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    description: Optional[str] = None
    task_type: TaskType
    parameters: Dict[str, Any] = Field(default_factory=dict)
    schedule_cron: str = "0 0 * * *"
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return self.enabled and (self.next_run_at is None or self.next_run_at <= now)


class UsageEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    action_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
