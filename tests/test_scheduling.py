"""
Tests for periodic job registration.
"""

import asyncio
from datetime import datetime

import pytest
from celery import Celery
from celery.schedules import crontab

from subtracker.config import SchedulerSettings
from subtracker.models.sources import EmailMessage
from subtracker.models.subscription import CandidateEvidence, EventType
from subtracker.orchestrator import create_app_components
from subtracker.scheduling import (
    CeleryBeatScheduler,
    ManualScheduler,
    parse_cron,
    register_reconciliation_jobs,
)


class TestParseCron:

    def test_fields_map_to_crontab_arguments(self):
        """Test the five cron fields in order."""
        assert parse_cron("0 9,21 * * 1-5") == {
            "minute": "0",
            "hour": "9,21",
            "day_of_month": "*",
            "month_of_year": "*",
            "day_of_week": "1-5",
        }

    def test_wrong_field_count_rejected(self):
        """Test that 6-field (seconds) specs are not accepted."""
        with pytest.raises(ValueError):
            parse_cron("0 0 9 * * *")


class TestManualScheduler:

    def test_jobs_run_on_demand(self):
        """Test that nothing runs until asked."""
        calls = []

        async def job():
            calls.append("ran")
            return len(calls)

        scheduler = ManualScheduler()
        name = scheduler.schedule("*/5 * * * *", job)

        assert name == "job-1"
        assert calls == []
        assert asyncio.run(scheduler.run(name)) == 1
        assert asyncio.run(scheduler.run_all()) == {"job-1": 2}

    def test_invalid_spec_rejected_at_registration(self):
        async def job():
            return None

        with pytest.raises(ValueError):
            ManualScheduler().schedule("daily", job)


class TestCeleryBeatScheduler:

    def test_job_becomes_task_with_beat_entry(self):
        """Test the beat schedule entry and crontab fields."""
        app = Celery("test")
        scheduler = CeleryBeatScheduler(app, timezone="Europe/Berlin")

        async def job():
            return "done"

        name = scheduler.schedule("30 2 * * *", job, "subtracker.bank_sync")

        entry = app.conf.beat_schedule[name]
        assert entry["task"] == "subtracker.bank_sync"
        assert isinstance(entry["schedule"], crontab)
        assert entry["schedule"].minute == {30}
        assert entry["schedule"].hour == {2}
        assert app.conf.timezone == "Europe/Berlin"
        assert app.tasks["subtracker.bank_sync"]() == "done"


class TestRegisterReconciliationJobs:
    """Tests for wiring the flows onto a scheduler."""

    def _components(self, fakes, source=None):
        email = EmailMessage(
            id="m1",
            subject="Welcome to Netflix",
            date=datetime(2024, 1, 10, 10, 0),
        )
        classifier = fakes.Classifier({
            "Welcome to Netflix": CandidateEvidence(event_type=EventType.START, service_name="Netflix"),
        })
        return create_app_components(
            use_storage=False,
            email_source=source or fakes.EmailSource([email]),
            credentials=fakes.Credentials(),
            notifier=fakes.Notifier(),
            classifier=classifier,
        )

    @staticmethod
    def _users(*user_ids):
        async def users():
            return list(user_ids)
        return users

    def test_only_built_flows_are_registered(self, fakes):
        """Test that missing collaborators mean no job."""
        scheduler = ManualScheduler()

        names = register_reconciliation_jobs(
            scheduler, self._components(fakes), self._users("user-1"), SchedulerSettings()
        )

        assert names == ["subtracker.email_scan", "subtracker.renewal_alert"]
        assert scheduler.jobs["subtracker.email_scan"][0] == "0 9,21 * * *"

    def test_user_without_subscriptions_is_scanned(self, fakes):
        """Test that a brand-new user's mailbox is queried."""
        source = fakes.EmailSource([])
        scheduler = ManualScheduler()
        register_reconciliation_jobs(
            scheduler, self._components(fakes, source), self._users("user-new"), SchedulerSettings()
        )

        [summary] = asyncio.run(scheduler.run("subtracker.email_scan"))

        assert summary["user_id"] == "user-new"
        assert len(source.queries) == 1

    def test_job_runs_pass_for_each_user(self, fakes):
        """Test a registered job returns one summary per user."""
        scheduler = ManualScheduler()

        register_reconciliation_jobs(
            scheduler, self._components(fakes), self._users("user-1", "user-2"), SchedulerSettings()
        )
        summaries = asyncio.run(scheduler.run("subtracker.email_scan"))

        assert [s["user_id"] for s in summaries] == ["user-1", "user-2"]
        assert all(s["created"] == 1 for s in summaries)
        assert all(s["error"] is None for s in summaries)

    def test_renewal_alerts_run_for_subscribers_only(self, fakes):
        """Test that alerts skip users who have nothing to renew."""
        scheduler = ManualScheduler()
        register_reconciliation_jobs(
            scheduler, self._components(fakes), self._users("user-1", "user-2"), SchedulerSettings()
        )

        assert asyncio.run(scheduler.run("subtracker.renewal_alert")) == []
        asyncio.run(scheduler.run("subtracker.email_scan"))
        summaries = asyncio.run(scheduler.run("subtracker.renewal_alert"))

        assert sorted(s["user_id"] for s in summaries) == ["user-1", "user-2"]
