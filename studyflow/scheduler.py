"""Periodic trigger that runs due scheduled tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from apscheduler.triggers.cron import CronTrigger

from .config import StudyflowConfig, load_config
from .contracts import ScheduledTask, TaskType, utcnow
from .errors import PersistenceFailure
from .execute import WorkflowExecutor
from .persistence import WorkflowRepository, get_repository

logger = logging.getLogger(__name__)

# crontab numbering: 0 and 7 are Sunday
_CRONTAB_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _weekday_number(token: str) -> int:
    if token.isdigit() and int(token) <= 7:
        return int(token)
    if token in _CRONTAB_WEEKDAYS:
        return _CRONTAB_WEEKDAYS.index(token)
    raise ValueError(f"Invalid weekday: {token!r}")


def crontab_day_of_week(field: str) -> str:
    """Rewrite a crontab weekday field as APScheduler weekday names.

    APScheduler counts Monday as 0, crontab counts Sunday as 0 (and 7).
    Lists, ranges and steps are expanded into an explicit list of names.
    """
    if field == "*":
        return field
    days: set[int] = set()
    for part in field.lower().split(","):
        span, _, step = part.partition("/")
        if span == "*":
            first, last = 0, 6
        else:
            start, _, end = span.partition("-")
            first = _weekday_number(start)
            if end:
                last = _weekday_number(end)
            else:
                last = 7 if step else first
        if first > last:
            raise ValueError(f"Invalid weekday range: {span!r}")
        days.update(day % 7 for day in range(first, last + 1, int(step) if step else 1))
    return ",".join(_CRONTAB_WEEKDAYS[day] for day in sorted(days))


def next_run_time(
    schedule_cron: Optional[str], now: datetime, fallback: timedelta
) -> datetime:
    """Next fire time of ``schedule_cron`` after ``now``.

    Expressions that do not parse as a five-field crontab fall back to
    ``now + fallback``.
    """
    fields = schedule_cron.split() if schedule_cron else []
    trigger: Optional[CronTrigger] = None
    if len(fields) == 5:
        minute, hour, day, month, day_of_week = fields
        try:
            # start_date pinned to ``now``; CronTrigger defaults it to the wall clock
            trigger = CronTrigger(
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=crontab_day_of_week(day_of_week),
                start_date=now,
                timezone=timezone.utc,
            )
        except ValueError:
            trigger = None

    if trigger is None:
        if schedule_cron:
            logger.warning(f"Invalid cron expression {schedule_cron!r}, using fixed interval")
        return now + fallback

    fire_time = trigger.get_next_fire_time(None, now + timedelta(seconds=1))
    return fire_time if fire_time is not None else now + fallback


class SchedulerTrigger:
    """Finds due scheduled tasks and runs each once per pass."""

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        executor: WorkflowExecutor | None = None,
        config: StudyflowConfig | None = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository()
        self._executor = executor or WorkflowExecutor(
            repository=self._repository, config=self._config
        )

    async def _run_task(self, task: ScheduledTask) -> dict[str, Any]:
        match task.task_type:
            case TaskType.WORKFLOW:
                workflow_id = task.parameters.get("workflow_id") or task.parameters.get(
                    "workflowId"
                )
                if not workflow_id:
                    raise ValueError(f"Task {task.name} has no workflow_id parameter")
                run = await self._executor.run(workflow_id, task.user_id)
                return {"run_id": run.id, "status": run.status.value}
            case TaskType.REMINDER:
                return {"message": "Reminder sent", **task.parameters}
            case TaskType.DATA_SYNC:
                return {"message": "Data synced", **task.parameters}
        raise ValueError(f"Unknown task type: {task.task_type}")

    async def run_pass(self, now: Optional[datetime] = None) -> int:
        """Run every due task once and return how many were attempted."""
        now = now or utcnow()
        tasks = await self._repository.list_due_tasks(now)
        logger.info(f"Found {len(tasks)} tasks to run")

        fallback = timedelta(seconds=self._config.scheduler.next_run_interval)
        for task in tasks:
            metadata: dict[str, Any] = {"task_id": task.id, "task_type": task.task_type.value}
            try:
                logger.info(f"Running task: {task.name}")
                metadata["result"] = await self._run_task(task)
                logger.info(f"Task completed: {task.name}")
            except Exception as e:
                logger.error(f"Error running task {task.name}: {e}")
                metadata["error"] = str(e) or type(e).__name__

            # the schedule advances for failed tasks too
            try:
                await self._repository.update_task_schedule(
                    task.id, now, next_run_time(task.schedule_cron, now, fallback)
                )
                await self._repository.record_usage(task.user_id, "scheduled_task", metadata)
            except PersistenceFailure as e:
                logger.error(f"Error updating schedule of task {task.name}: {e}")

        return len(tasks)

    async def serve(
        self, interval: Optional[float] = None, lifespan: Optional[float] = None
    ) -> None:
        """Run passes every ``interval`` seconds.

        Args:
            interval: Seconds between passes. Defaults to the configured value.
            lifespan: Stop after this many seconds. If None, runs indefinitely.
        """
        interval = interval or self._config.scheduler.interval
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            await self.run_pass()
            if lifespan is not None and loop.time() - start_time + interval > lifespan:
                break
            await asyncio.sleep(interval)
