"""Step interpreter for studyflow workflows."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .completion import AgentCompletionClient, CompletionClient
from .config import StudyflowConfig, load_config
from .contracts import StepDefinition, StepOutcome, Workflow, WorkflowRun, utcnow
from .errors import RunTimeout, StepFailure, WorkflowDisabled, WorkflowNotFound
from .handlers import StepContext, dispatch_step
from .persistence import WorkflowRepository, get_repository
from .utils.retry import is_transient, schedule_retry

logger = logging.getLogger(__name__)


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class WorkflowExecutor:
    """Executes a workflow's steps in order and records one run per call.

    Steps run strictly in sequence; the first failing step aborts the rest.
    Runs of the same workflow are serialized within one executor.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        completion: CompletionClient | None = None,
        http_client: httpx.AsyncClient | None = None,
        config: StudyflowConfig | None = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository()
        self._context = StepContext(
            completion=completion or AgentCompletionClient(self._config.ai),
            http_client=http_client,
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = defaultdict(int)

    async def load_workflow(self, workflow_id: str, user_id: str) -> Workflow:
        """Return the workflow if ``user_id`` may run it."""
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None or workflow.user_id != user_id:
            raise WorkflowNotFound(workflow_id)
        if not workflow.enabled:
            raise WorkflowDisabled(workflow_id)
        return workflow

    @asynccontextmanager
    async def _workflow_lock(self, workflow_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(workflow_id, asyncio.Lock())
        self._lock_users[workflow_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[workflow_id] -= 1
            if not self._lock_users[workflow_id]:
                del self._lock_users[workflow_id]
                del self._locks[workflow_id]

    async def run(self, workflow_id: str, user_id: str) -> WorkflowRun:
        """Run a workflow on behalf of ``user_id``.

        Raises:
            WorkflowNotFound: missing or owned by another user. No run is created.
            WorkflowDisabled: the workflow is switched off. No run is created.
            StepFailure: a step failed; the run is recorded as ``failed``.
            PersistenceFailure: the final run or workflow update failed.
        """
        async with self._workflow_lock(workflow_id):
            workflow = await self.load_workflow(workflow_id, user_id)
            run = await self._repository.create_run(workflow_id, user_id)
            logger.info(
                f"Executing workflow {workflow.name} ({workflow_id}) run={run.id} "
                f"user={user_id} steps={len(workflow.steps)}"
            )

            outcomes: List[StepOutcome] = []
            try:
                await self._execute_with_budget(workflow.steps, outcomes)
            except StepFailure as e:
                logger.error(f"Workflow {workflow_id} run={run.id} failed: {e}")
                await self._repository.fail_run(run.id, str(e), outcomes)
                raise

            finished_at = utcnow()
            run = await self._repository.complete_run(run.id, outcomes)
            await self._repository.touch_workflow_run(workflow_id, finished_at)
            await self._repository.record_usage(
                user_id,
                "workflow_execution",
                {"workflow_id": workflow_id, "steps": len(outcomes)},
            )

        logger.info(f"Workflow {workflow_id} run={run.id} completed")
        return run

    async def _execute_with_budget(
        self, steps: List[StepDefinition], outcomes: List[StepOutcome]
    ) -> None:
        budget = self._config.execution.run_timeout
        if budget is None:
            await self._execute_steps(steps, outcomes)
            return
        try:
            await asyncio.wait_for(self._execute_steps(steps, outcomes), budget)
        except asyncio.TimeoutError as e:
            raise RunTimeout(
                f"Workflow run exceeded its {budget}s budget", step_index=len(outcomes)
            ) from e

    async def _execute_steps(
        self, steps: List[StepDefinition], outcomes: List[StepOutcome]
    ) -> None:
        for index, step in enumerate(steps):
            logger.info(f"Executing step {index + 1}/{len(steps)}: {step.name} ({step.type})")
            result = await self._run_step(index, step)
            outcomes.append(StepOutcome(step=step.name, result=result))

    async def _run_step(self, index: int, step: StepDefinition) -> Any:
        policy = step.retry or self._config.execution.retry
        timeout: Optional[float] = step.timeout or self._config.execution.step_timeout

        attempt = 0
        while True:
            attempt += 1
            try:
                if timeout is None:
                    return await dispatch_step(step, self._context)
                return await asyncio.wait_for(dispatch_step(step, self._context), timeout)
            except Exception as e:
                error = e
                if timeout is not None and isinstance(e, asyncio.TimeoutError):
                    message = f"Step '{step.name}' timed out after {timeout}s"
                else:
                    message = _error_message(e)

            if is_transient(error) and attempt < policy.max_attempts:
                logger.warning(
                    f"Step {step.name} failed ({message}); retrying "
                    f"(attempt {attempt + 1}/{policy.max_attempts})"
                )
                await schedule_retry(attempt, policy)
                continue
            raise StepFailure(message, step_name=step.name, step_index=index) from error
