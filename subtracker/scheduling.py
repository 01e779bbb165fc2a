"""
Scheduling

The reconciliation core never decides when it runs. The host process
injects a Scheduler and registers the periodic passes on it:

    email scan      SCHEDULER_EMAIL_SCAN_CRON     (default twice a day)
    bank sync       SCHEDULER_BANK_SYNC_CRON      (default nightly)
    renewal alerts  SCHEDULER_RENEWAL_ALERT_CRON  (default every morning)

CeleryBeatScheduler runs them under celery beat; ManualScheduler keeps
them in memory and runs them on demand (tests, one-off CLI runs).
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import structlog
from celery import Celery
from celery.schedules import crontab

from subtracker.config import SchedulerSettings, get_settings
from subtracker.models.subscription import BatchSummary
from subtracker.orchestrator import AppComponents, run_for_users


logger = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[Any]]

CRON_FIELDS = ("minute", "hour", "day_of_month", "month_of_year", "day_of_week")


def parse_cron(spec: str) -> dict[str, str]:
    """
    Split a 5-field cron spec into crontab keyword arguments.

    Raises:
        ValueError: If the spec doesn't have exactly five fields
    """
    parts = spec.split()
    if len(parts) != len(CRON_FIELDS):
        raise ValueError(f"Expected a 5-field cron spec, got {spec!r}")
    return dict(zip(CRON_FIELDS, parts))


class Scheduler(ABC):

    @abstractmethod
    def schedule(self, spec: str, task: Job, name: Optional[str] = None) -> str:
        """
        Run task on a 5-field cron spec.

        Returns:
            The job name
        """
        pass


class CeleryBeatScheduler(Scheduler):
    """Registers each job as a celery task with a beat entry."""

    def __init__(self, app: Celery, timezone: str = "UTC"):
        self._app = app
        self._app.conf.timezone = timezone

    @property
    def app(self) -> Celery:
        return self._app

    def schedule(self, spec: str, task: Job, name: Optional[str] = None) -> str:
        fields = parse_cron(spec)
        name = name or f"subtracker.{getattr(task, '__name__', 'job')}"

        def run_job():
            return asyncio.run(task())

        self._app.task(name=name)(run_job)
        beat_schedule = dict(self._app.conf.beat_schedule or {})
        beat_schedule[name] = {
            "task": name,
            "schedule": crontab(**fields),
        }
        self._app.conf.beat_schedule = beat_schedule

        logger.info("job_scheduled", name=name, spec=spec)
        return name


class ManualScheduler(Scheduler):
    """Keeps jobs in memory; nothing runs until asked."""

    def __init__(self):
        self.jobs: dict[str, tuple[str, Job]] = {}

    def schedule(self, spec: str, task: Job, name: Optional[str] = None) -> str:
        parse_cron(spec)
        name = name or f"job-{len(self.jobs) + 1}"
        self.jobs[name] = (spec, task)
        return name

    async def run(self, name: str) -> Any:
        _, task = self.jobs[name]
        return await task()

    async def run_all(self) -> dict[str, Any]:
        return {name: await task() for name, (_, task) in self.jobs.items()}


def create_celery_app(settings: Optional[SchedulerSettings] = None) -> Celery:
    settings = settings or get_settings().scheduler
    app = Celery("subtracker", broker=settings.broker_url)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=settings.timezone,
        enable_utc=True,
        worker_prefetch_multiplier=1,
    )
    return app


def _batch_job(
    process: Callable[[str], Awaitable[BatchSummary]],
    user_ids: Callable[[], Awaitable[list[str]]],
) -> Job:
    async def run_batch() -> list[dict]:
        summaries = await run_for_users(await user_ids(), process)
        return [summary.model_dump(mode="json") for summary in summaries]
    return run_batch


def register_reconciliation_jobs(
    scheduler: Scheduler,
    components: AppComponents,
    user_ids: Callable[[], Awaitable[list[str]]],
    settings: Optional[SchedulerSettings] = None,
) -> list[str]:
    """
    Register the periodic passes for every flow that was built.

    Args:
        user_ids: Every user with a linked mailbox or bank account. The
            scans are what create a user's first subscription, so this
            comes from the host's account registry, not the subscription store.

    Returns:
        Names of the registered jobs
    """
    settings = settings or get_settings().scheduler
    # Only users with a subscription can have a renewal coming up
    subscribers = components.tracker.subscriptions.list_user_ids

    jobs = [
        ("subtracker.email_scan", settings.email_scan_cron, components.email_scan, user_ids),
        ("subtracker.bank_sync", settings.bank_sync_cron, components.bank_sync, user_ids),
        ("subtracker.renewal_alert", settings.renewal_alert_cron, components.renewal_alert, subscribers),
    ]

    names = []
    for name, spec, flow, users in jobs:
        if flow is None:
            continue
        names.append(scheduler.schedule(spec, _batch_job(flow.process_user, users), name))
    return names
