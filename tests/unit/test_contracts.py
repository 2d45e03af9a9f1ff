"""Workflow and step model tests."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from studyflow.contracts import (
    AiTaskStep,
    ApiCallStep,
    DelayStep,
    RunStatus,
    ScheduledTask,
    TaskType,
    WebScrapeStep,
    Workflow,
    WorkflowRun,
)


def test_steps_parse_by_type_and_keep_order():
    workflow = Workflow.model_validate(
        {
            "user_id": "u1",
            "name": "Weekly digest",
            "steps": [
                {"type": "delay", "name": "wait"},
                {"type": "ai_task", "name": "sum", "prompt": "Summarize", "systemPrompt": "Be brief"},
                {"type": "api_call", "name": "post", "url": "https://example.com", "body": {"a": 1}},
                {"type": "web_scrape", "name": "scrape", "url": "https://example.com"},
            ],
        }
    )

    assert [type(s) for s in workflow.steps] == [
        DelayStep,
        AiTaskStep,
        ApiCallStep,
        WebScrapeStep,
    ]
    assert [s.name for s in workflow.steps] == ["wait", "sum", "post", "scrape"]
    assert workflow.steps[0].duration == 1000
    assert workflow.steps[1].system_prompt == "Be brief"
    assert workflow.steps[1].model is None
    assert workflow.steps[2].method == "GET"
    assert workflow.steps[2].headers == {}


def test_unknown_step_type_is_rejected():
    with pytest.raises(ValidationError):
        Workflow.model_validate(
            {"user_id": "u1", "name": "bad", "steps": [{"type": "email", "name": "x"}]}
        )


def test_required_step_fields():
    with pytest.raises(ValidationError):
        AiTaskStep(name="no prompt")
    with pytest.raises(ValidationError):
        ApiCallStep(name="no url")
    with pytest.raises(ValidationError):
        DelayStep(name="negative", duration=-5)


def test_run_defaults_and_steps_view():
    run = WorkflowRun(workflow_id="w", user_id="u")
    assert run.status == RunStatus.RUNNING
    assert not run.is_terminal
    assert run.steps == []

    done = run.model_copy(
        update={
            "status": RunStatus.COMPLETED,
            "result": {"steps": [{"step": "a", "result": 1}]},
        }
    )
    assert done.is_terminal
    assert done.steps[0].step == "a"
    assert done.steps[0].result == 1


def test_scheduled_task_due():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    task = ScheduledTask(user_id="u", name="t", task_type=TaskType.REMINDER)
    assert task.is_due(now)
    assert not task.model_copy(update={"next_run_at": now + timedelta(seconds=1)}).is_due(now)
    assert task.model_copy(update={"next_run_at": now}).is_due(now)
    assert not task.model_copy(update={"enabled": False}).is_due(now)
