"""Tests for the work queue and the scheduled job handlers."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from app.connectors.ads.provider import RetrievedReport
from app.core.errors import ValidationError
from app.core.timezones import to_utc_naive
from app.models.report_models import (
    AdvertiserAccount,
    Aggregation,
    DatasetKey,
    DatasetStatus,
    EntityType,
    EventType,
    ReportStatus,
)
from app.orchestrator.backfill import BackfillEnumerator
from app.orchestrator.lifecycle import CycleOutcome, ReportLifecycle
from app.scheduler import jobs as job_names
from app.scheduler.jobs import ReportJobs
from app.scheduler.queue import SchedulerWorkQueue, WorkQueue

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
MIDNIGHT = datetime(2024, 6, 15, 0, 0, tzinfo=timezone.utc)


class RecordingQueue(WorkQueue):
    def __init__(self):
        self.handlers: Dict[str, Any] = {}
        self.emitted: List[Tuple[str, Dict[str, Any]]] = []
        self.scheduled: List[Tuple[str, str]] = []

    def register(self, job_name, handler):
        self.handlers[job_name] = handler

    def emit(self, job_name, payload):
        self.emitted.append((job_name, payload))
        return f"job-{len(self.emitted)}"

    def schedule(self, job_name, cron_expr, payload):
        self.scheduled.append((job_name, cron_expr))

    def start(self):
        pass

    def stop(self):
        pass


def _key(hours_ago: int) -> DatasetKey:
    return DatasetKey(
        account_id="A1",
        country_code="US",
        window_start=to_utc_naive(NOW) - timedelta(hours=hours_ago),
        aggregation=Aggregation.HOURLY,
        entity_type=EntityType.TARGET,
    )


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def make_jobs(store, provider, publisher, queue, test_settings, make_data_source, account):
    def _make(settings=None, now=NOW):
        settings = settings or test_settings
        lifecycle = ReportLifecycle(store, provider, publisher, timeout_seconds=1.0)
        backfill = BackfillEnumerator(store, make_data_source())
        return ReportJobs(settings, store, lifecycle, backfill, publisher, queue, clock=lambda: now)

    return _make


class TestSchedulerWorkQueue:
    def test_cron_definitions_are_single_flight(self):
        queue = SchedulerWorkQueue(AsyncIOScheduler(timezone=timezone.utc))
        queue.register("tick", lambda payload: asyncio.sleep(0))

        queue.schedule("tick", "*/5 * * * *", {})

        job = queue.scheduler.get_job("cron:tick")
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_emit_requires_registered_handler(self):
        queue = SchedulerWorkQueue()
        with pytest.raises(KeyError):
            queue.emit("unknown", {})

    @pytest.mark.asyncio
    async def test_emitted_job_runs_with_payload(self):
        queue = SchedulerWorkQueue()
        received = asyncio.Event()
        payloads = []

        async def handler(payload):
            payloads.append(payload)
            received.set()

        queue.register("work", handler)
        queue.start()
        try:
            queue.emit("work", {"accountId": "A1"})
            await asyncio.wait_for(received.wait(), timeout=5)
        finally:
            queue.stop()

        assert payloads == [{"accountId": "A1"}]


class TestRegistration:
    def test_scheduler_disabled_registers_handlers_only(self, make_jobs, queue):
        make_jobs().register()

        assert set(queue.handlers) == {
            job_names.UPDATE_REPORT_DATASETS,
            job_names.UPDATE_REPORT_DATASET_FOR_ACCOUNT,
            job_names.BACKFILL_REPORT_DATASETS,
            job_names.BACKFILL_REPORT_DATASET_FOR_ACCOUNT,
            job_names.REPROCESS_REPORT_DATASET,
            job_names.RELEASE_STALE_REFRESHING,
        }
        assert queue.scheduled == []

    def test_stale_sweep_is_opt_in(self, make_jobs, queue, test_settings):
        settings = test_settings.model_copy(update={"scheduler_enabled": True})
        make_jobs(settings).register()
        assert [name for name, _ in queue.scheduled] == [
            job_names.UPDATE_REPORT_DATASETS,
            job_names.BACKFILL_REPORT_DATASETS,
        ]

        queue.scheduled.clear()
        settings = settings.model_copy(update={"stale_refresh_sweep_enabled": True})
        make_jobs(settings).register()
        assert (job_names.RELEASE_STALE_REFRESHING, "*/15 * * * *") in queue.scheduled


class TestFanOut:
    @pytest.mark.asyncio
    async def test_update_tick_emits_per_enabled_account(self, make_jobs, queue, engine):
        with Session(engine) as session:
            session.add(AdvertiserAccount(ads_account_id="A2", country_code="JP", enabled=True))
            session.add(AdvertiserAccount(ads_account_id="A3", country_code="DE", enabled=False))
            session.commit()

        await make_jobs().update_report_datasets({})

        assert sorted(payload["accountId"] for _, payload in queue.emitted) == ["A1", "A2"]
        assert {name for name, _ in queue.emitted} == {job_names.UPDATE_REPORT_DATASET_FOR_ACCOUNT}

    @pytest.mark.asyncio
    async def test_backfill_tick_adds_daily_at_midnight(self, make_jobs, queue):
        await make_jobs(now=NOW).backfill_report_datasets({})
        await make_jobs(now=MIDNIGHT).backfill_report_datasets({})

        assert [payload["aggregations"] for _, payload in queue.emitted] == [
            ["hourly"],
            ["hourly", "daily"],
        ]


class TestAccountDispatch:
    @pytest.mark.asyncio
    async def test_invalid_payload_is_rejected_before_any_work(self, make_jobs, provider, publisher):
        with pytest.raises(ValidationError):
            await make_jobs().update_report_dataset_for_account({"accountId": "A1"})
        assert provider.create_calls == []
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_due_rows_are_polled_and_created_within_cap(self, make_jobs, store, provider, publisher, test_settings):
        due = to_utc_naive(NOW)
        store.upsert(_key(26), {"status": DatasetStatus.FETCHING, "report_id": "rep-old", "next_refresh_at": due})
        for hours_ago in (23, 24, 25):
            store.upsert(_key(hours_ago), {"status": DatasetStatus.MISSING, "next_refresh_at": due})
        provider.statuses = [RetrievedReport(status=ReportStatus.PENDING)]
        settings = test_settings.model_copy(update={"max_concurrent_reports": 2})

        counts = await make_jobs(settings).update_report_dataset_for_account(
            {"accountId": "A1", "countryCode": "US"}
        )

        assert provider.retrieve_calls == ["rep-old"]
        assert len(provider.create_calls) == 1
        assert counts == {CycleOutcome.PENDING.value: 1, CycleOutcome.CREATED.value: 1}
        assert publisher.events[-1].type == EventType.REPORTS_REFRESHED

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_absorbed(self, make_jobs, provider):
        """The same per-account job delivered twice at once creates one report."""
        jobs = make_jobs()
        jobs.store.upsert(_key(24), {"status": DatasetStatus.MISSING, "next_refresh_at": to_utc_naive(NOW)})
        provider.delay = 0.05
        payload = {"accountId": "A1", "countryCode": "US"}

        await asyncio.gather(
            jobs.update_report_dataset_for_account(payload),
            jobs.update_report_dataset_for_account(payload),
        )

        assert len(provider.create_calls) == 1


class TestMaintenanceJobs:
    @pytest.mark.asyncio
    async def test_backfill_job_walks_requested_aggregations(self, make_jobs, store):
        created = await make_jobs().backfill_report_dataset_for_account(
            {"accountId": "A1", "countryCode": "US", "aggregations": ["hourly"]}
        )

        assert created == 14 * 24
        assert store.list_rows(account_id="A1", aggregation=Aggregation.DAILY) == []

    @pytest.mark.asyncio
    async def test_reprocess_job(self, make_jobs, store, provider):
        window = to_utc_naive(NOW) - timedelta(hours=50)

        outcome = await make_jobs().reprocess_report_dataset(
            {
                "accountId": "A1",
                "countryCode": "US",
                "windowStart": window.isoformat(),
                "aggregation": "hourly",
                "entityType": "target",
            }
        )

        assert outcome == CycleOutcome.CREATED
        assert len(provider.create_calls) == 1

    @pytest.mark.asyncio
    async def test_reprocess_job_rejects_misaligned_window(self, make_jobs, provider):
        with pytest.raises(ValidationError):
            await make_jobs().reprocess_report_dataset(
                {
                    "accountId": "A1",
                    "countryCode": "US",
                    "windowStart": "2024-06-15T10:30:00",
                    "aggregation": "hourly",
                }
            )
        assert provider.create_calls == []

    @pytest.mark.asyncio
    async def test_release_stale_refreshing(self, make_jobs, store):
        key = _key(30)
        store.upsert(key, {"status": DatasetStatus.FETCHING})
        store.try_acquire(key)

        released = await make_jobs(now=datetime.now(timezone.utc) + timedelta(hours=1)).release_stale_refreshing({})

        assert released == 1
        assert store.get(key).refreshing is False
