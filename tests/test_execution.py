"""Step interpreter tests."""

import asyncio

import httpx
import pytest

from studyflow import handlers
from studyflow.config import ExecutionConfig, StudyflowConfig
from studyflow.contracts import (
    AiTaskStep,
    ApiCallStep,
    DelayStep,
    RetryPolicy,
    RunStatus,
    WebScrapeStep,
    Workflow,
)
from studyflow.errors import RunTimeout, StepFailure, WorkflowDisabled, WorkflowNotFound
from studyflow.execute import WorkflowExecutor
from studyflow.persistence import InMemoryWorkflowRepository
from studyflow.utils.retry import compute_backoff


class FakeCompletion:
    """Deterministic completion client that records its prompts."""

    def __init__(self, reply="Y", fail_on=None):
        self.reply = reply
        self.fail_on = fail_on
        self.prompts = []

    async def complete(self, prompt, *, system_prompt=None, model=None):
        self.prompts.append(prompt)
        if self.fail_on and self.fail_on in prompt:
            raise RuntimeError(f"completion failed for {prompt}")
        return self.reply


def _executor(repo, completion=None, http_client=None, **execution):
    return WorkflowExecutor(
        repository=repo,
        completion=completion or FakeCompletion(),
        http_client=http_client,
        config=StudyflowConfig(execution=ExecutionConfig(**execution)),
    )


async def _save(repo, steps, user_id="user-a", enabled=True):
    workflow = Workflow(user_id=user_id, name="Study helper", steps=steps, enabled=enabled)
    return await repo.save_workflow(workflow)


@pytest.mark.asyncio
async def test_single_ai_task_completes():
    repo = InMemoryWorkflowRepository()
    completion = FakeCompletion(reply="Y")
    workflow = await _save(repo, [AiTaskStep(name="Summarize", prompt="Summarize: X")])

    run = await _executor(repo, completion).run(workflow.id, "user-a")

    assert run.status == RunStatus.COMPLETED
    assert run.result == {"steps": [{"step": "Summarize", "result": "Y"}]}
    assert run.error_message is None
    assert run.completed_at is not None
    assert completion.prompts == ["Summarize: X"]

    stored = await repo.get_workflow(workflow.id)
    assert stored.last_run_at is not None

    usage = await repo.list_usage("user-a")
    assert len(usage) == 1
    assert usage[0].action_type == "workflow_execution"
    assert usage[0].metadata == {"workflow_id": workflow.id, "steps": 1}


@pytest.mark.asyncio
async def test_all_steps_recorded_in_order():
    repo = InMemoryWorkflowRepository()
    steps = [
        AiTaskStep(name=f"step-{i}", prompt=f"prompt {i}") for i in range(4)
    ] + [WebScrapeStep(name="scrape", url="https://example.com")]
    workflow = await _save(repo, steps)

    run = await _executor(repo).run(workflow.id, "user-a")

    assert run.status == RunStatus.COMPLETED
    assert [s.step for s in run.steps] == ["step-0", "step-1", "step-2", "step-3", "scrape"]
    assert run.steps[-1].result == {
        "message": "Web scraping not yet implemented",
        "url": "https://example.com",
    }


@pytest.mark.asyncio
async def test_failing_step_aborts_remaining_steps():
    repo = InMemoryWorkflowRepository()
    completion = FakeCompletion(fail_on="second")
    workflow = await _save(
        repo,
        [
            AiTaskStep(name="one", prompt="first"),
            AiTaskStep(name="two", prompt="second"),
            AiTaskStep(name="three", prompt="third"),
        ],
    )
    executor = _executor(repo, completion)

    with pytest.raises(StepFailure) as exc_info:
        await executor.run(workflow.id, "user-a")

    assert str(exc_info.value) == "completion failed for second"
    assert exc_info.value.step_name == "two"
    assert exc_info.value.step_index == 1
    assert completion.prompts == ["first", "second"]

    runs = await repo.list_runs(workflow.id)
    assert len(runs) == 1
    run = runs[0]
    assert run.status == RunStatus.FAILED
    assert run.error_message == "completion failed for second"
    assert run.result is None
    assert [s.step for s in run.partial_steps] == ["one"]

    stored = await repo.get_workflow(workflow.id)
    assert stored.last_run_at is None
    assert await repo.list_usage("user-a") == []


@pytest.mark.asyncio
async def test_network_error_skips_following_delay(monkeypatch):
    delay_calls = []

    async def spy_delay(step, context):
        delay_calls.append(step)
        return {"delayed": step.duration}

    monkeypatch.setattr(handlers, "handle_delay", spy_delay)

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    repo = InMemoryWorkflowRepository()
    workflow = await _save(
        repo,
        [
            ApiCallStep(name="fetch", url="https://lms.example.com/api/courses"),
            DelayStep(name="wait", duration=500),
        ],
    )

    with pytest.raises(StepFailure, match="connection refused"):
        await _executor(repo, http_client=client).run(workflow.id, "user-a")

    (run,) = await repo.list_runs(workflow.id)
    assert run.status == RunStatus.FAILED
    assert run.error_message == "connection refused"
    assert delay_calls == []
    await client.aclose()


@pytest.mark.asyncio
async def test_other_users_workflow_is_not_found():
    repo = InMemoryWorkflowRepository()
    completion = FakeCompletion()
    workflow = await _save(repo, [AiTaskStep(name="s", prompt="p")], user_id="user-a")

    with pytest.raises(WorkflowNotFound):
        await _executor(repo, completion).run(workflow.id, "user-b")

    assert await repo.list_runs(workflow.id) == []
    assert completion.prompts == []


@pytest.mark.asyncio
async def test_missing_and_deleted_workflows_are_not_found():
    repo = InMemoryWorkflowRepository()
    executor = _executor(repo)

    with pytest.raises(WorkflowNotFound):
        await executor.run("does-not-exist", "user-a")

    workflow = await _save(repo, [DelayStep(name="wait", duration=0)])
    await executor.run(workflow.id, "user-a")
    assert await repo.delete_workflow(workflow.id)

    with pytest.raises(WorkflowNotFound):
        await executor.run(workflow.id, "user-a")
    # history survives deletion
    assert len(await repo.list_runs(workflow.id)) == 1


@pytest.mark.asyncio
async def test_disabled_workflow_creates_no_run():
    repo = InMemoryWorkflowRepository()
    completion = FakeCompletion()
    workflow = await _save(repo, [AiTaskStep(name="s", prompt="p")], enabled=False)

    with pytest.raises(WorkflowDisabled):
        await _executor(repo, completion).run(workflow.id, "user-a")

    assert await repo.list_runs(workflow.id) == []
    assert completion.prompts == []


@pytest.mark.asyncio
async def test_rerun_produces_identical_results_with_new_ids():
    def respond(request):
        return httpx.Response(200, json={"assignments": [1, 2]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(respond))
    repo = InMemoryWorkflowRepository()
    workflow = await _save(
        repo,
        [
            ApiCallStep(name="fetch", url="https://lms.example.com/assignments"),
            AiTaskStep(name="plan", prompt="Make a plan"),
        ],
    )
    executor = _executor(repo, FakeCompletion(reply="plan"), http_client=client)

    first = await executor.run(workflow.id, "user-a")
    second = await executor.run(workflow.id, "user-a")

    assert first.result == second.result
    assert first.id != second.id
    assert len(await repo.list_runs(workflow.id)) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_delay_step_waits_at_least_duration():
    repo = InMemoryWorkflowRepository()
    workflow = await _save(repo, [DelayStep(name="pause", duration=50)])
    loop = asyncio.get_running_loop()

    started = loop.time()
    run = await _executor(repo).run(workflow.id, "user-a")
    elapsed = loop.time() - started

    assert run.steps[0].result == {"delayed": 50}
    assert elapsed >= 0.05 - 0.001


@pytest.mark.asyncio
async def test_transient_error_is_retried():
    calls = []

    def flaky(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("reset", request=request)
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(flaky))
    repo = InMemoryWorkflowRepository()
    step = ApiCallStep(
        name="fetch",
        url="https://example.com",
        retry=RetryPolicy(max_attempts=2, backoff_base=0, jitter=0),
    )
    workflow = await _save(repo, [step])

    run = await _executor(repo, http_client=client).run(workflow.id, "user-a")

    assert run.steps[0].result == {"ok": True}
    assert len(calls) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_http_error_status_is_not_retried():
    calls = []

    def broken(request):
        calls.append(request)
        return httpx.Response(500, json={"error": "boom"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(broken))
    repo = InMemoryWorkflowRepository()
    step = ApiCallStep(
        name="fetch",
        url="https://example.com",
        retry=RetryPolicy(max_attempts=3, backoff_base=0, jitter=0),
    )
    workflow = await _save(repo, [step])

    with pytest.raises(StepFailure):
        await _executor(repo, http_client=client).run(workflow.id, "user-a")

    assert len(calls) == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_step_timeout_fails_run():
    class SlowCompletion:
        async def complete(self, prompt, *, system_prompt=None, model=None):
            await asyncio.sleep(1)
            return "late"

    repo = InMemoryWorkflowRepository()
    workflow = await _save(repo, [AiTaskStep(name="slow", prompt="p", timeout=0.01)])

    with pytest.raises(StepFailure, match="timed out"):
        await _executor(repo, SlowCompletion()).run(workflow.id, "user-a")

    (run,) = await repo.list_runs(workflow.id)
    assert run.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_run_budget_exceeded():
    repo = InMemoryWorkflowRepository()
    workflow = await _save(
        repo,
        [DelayStep(name="quick", duration=0), DelayStep(name="long", duration=1000)],
    )

    with pytest.raises(RunTimeout):
        await _executor(repo, run_timeout=0.05).run(workflow.id, "user-a")

    (run,) = await repo.list_runs(workflow.id)
    assert run.status == RunStatus.FAILED
    assert "budget" in run.error_message
    assert [s.step for s in run.partial_steps] == ["quick"]


@pytest.mark.asyncio
async def test_concurrent_runs_of_one_workflow_are_serialized():
    class TrackingCompletion:
        def __init__(self):
            self.active = 0
            self.peak = 0

        async def complete(self, prompt, *, system_prompt=None, model=None):
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return "done"

    repo = InMemoryWorkflowRepository()
    completion = TrackingCompletion()
    workflow = await _save(repo, [AiTaskStep(name="s", prompt="p")])
    executor = _executor(repo, completion)

    runs = await asyncio.gather(
        executor.run(workflow.id, "user-a"), executor.run(workflow.id, "user-a")
    )

    assert completion.peak == 1
    assert all(r.status == RunStatus.COMPLETED for r in runs)
    assert executor._locks == {}

@pytest.mark.asyncio
async def test_run_waiting_on_lock_sees_workflow_disabled_meanwhile():
    class GatedCompletion:
        def __init__(self):
            self.started = asyncio.Event()
            self.release = asyncio.Event()

        async def complete(self, prompt, *, system_prompt=None, model=None):
            self.started.set()
            await self.release.wait()
            return "done"

    repo = InMemoryWorkflowRepository()
    completion = GatedCompletion()
    workflow = await _save(repo, [AiTaskStep(name="s", prompt="p")])
    executor = _executor(repo, completion)

    first = asyncio.create_task(executor.run(workflow.id, "user-a"))
    await completion.started.wait()
    second = asyncio.create_task(executor.run(workflow.id, "user-a"))
    await asyncio.sleep(0)

    await repo.save_workflow(workflow.model_copy(update={"enabled": False}))
    completion.release.set()

    assert (await first).status == RunStatus.COMPLETED
    with pytest.raises(WorkflowDisabled):
        await second
    assert len(await repo.list_runs(workflow.id)) == 1
    assert executor._locks == {}


@pytest.mark.asyncio
async def test_handler_timeout_error_without_step_timeout_keeps_its_message():
    class UpstreamTimeout:
        async def complete(self, prompt, *, system_prompt=None, model=None):
            raise TimeoutError("upstream model timed out")

    repo = InMemoryWorkflowRepository()
    workflow = await _save(repo, [AiTaskStep(name="s", prompt="p")])

    with pytest.raises(StepFailure) as exc_info:
        await _executor(repo, UpstreamTimeout()).run(workflow.id, "user-a")

    assert str(exc_info.value) == "upstream model timed out"
    (run,) = await repo.list_runs(workflow.id)
    assert run.error_message == "upstream model timed out"


def test_compute_backoff_growth():
    first = compute_backoff(1, base=2, jitter=0)
    second = compute_backoff(2, base=2, jitter=0)
    assert second > first
