"""HARVEST — Scheduler Jobs.

Periodic ticks fan work out per enabled advertiser account:

- ``update-report-datasets`` (every 5 min) → ``update-report-dataset-for-account``
  runs poll cycles for in-flight reports and create cycles for due windows.
- ``backfill-report-datasets`` (hourly) → ``backfill-report-dataset-for-account``
  seeds missing rows; daily windows are only walked at 00:00 UTC.
- ``release-stale-refreshing`` (every 15 min, opt-in) reclaims rows left
  ``refreshing`` by a crashed worker.

Jobs do not deduplicate overlapping deliveries. The queue keeps each cron
definition single-flight, and a duplicated per-account delivery is absorbed by
``try_acquire`` on every row it touches.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.config import Settings
from app.core.errors import PersistenceError, ValidationError
from app.core.logging import get_logger
from app.core.timezones import utc_now
from app.events.publisher import EventPublisher
from app.models.report_models import (
    AccountEvent,
    Aggregation,
    DatasetKey,
    DatasetStatus,
    EntityType,
    EventType,
)
from app.orchestrator.backfill import BackfillEnumerator
from app.orchestrator.lifecycle import CycleOutcome, ReportLifecycle
from app.orchestrator.store import MetadataStore
from app.scheduler.queue import WorkQueue

logger = get_logger("scheduler")

UPDATE_REPORT_DATASETS = "update-report-datasets"
UPDATE_REPORT_DATASET_FOR_ACCOUNT = "update-report-dataset-for-account"
BACKFILL_REPORT_DATASETS = "backfill-report-datasets"
BACKFILL_REPORT_DATASET_FOR_ACCOUNT = "backfill-report-dataset-for-account"
REPROCESS_REPORT_DATASET = "reprocess-report-dataset"
RELEASE_STALE_REFRESHING = "release-stale-refreshing"


# ── Job Payloads ──


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class AccountJobInput(_Payload):
    account_id: str
    country_code: str


class BackfillJobInput(AccountJobInput):
    aggregations: List[Aggregation] = [Aggregation.HOURLY]


class ReprocessJobInput(_Payload):
    account_id: str
    country_code: str
    window_start: datetime
    aggregation: Aggregation
    entity_type: EntityType = EntityType.TARGET


P = TypeVar("P", bound=BaseModel)


def parse_payload(model: Type[P], payload: Dict[str, Any]) -> P:
    """Validate a job payload before any state is touched."""
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


# ── Jobs ──


class ReportJobs:
    """Job handlers bound to one orchestration context."""

    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        lifecycle: ReportLifecycle,
        backfill: BackfillEnumerator,
        publisher: EventPublisher,
        queue: WorkQueue,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.store = store
        self.lifecycle = lifecycle
        self.backfill = backfill
        self.publisher = publisher
        self.queue = queue
        self.clock = clock

    @property
    def entity_types(self) -> List[EntityType]:
        return [EntityType(value) for value in self.settings.report_entity_types]

    def register(self) -> None:
        """Register handlers and cron schedules on the queue."""
        self.queue.register(UPDATE_REPORT_DATASETS, self.update_report_datasets)
        self.queue.register(UPDATE_REPORT_DATASET_FOR_ACCOUNT, self.update_report_dataset_for_account)
        self.queue.register(BACKFILL_REPORT_DATASETS, self.backfill_report_datasets)
        self.queue.register(BACKFILL_REPORT_DATASET_FOR_ACCOUNT, self.backfill_report_dataset_for_account)
        self.queue.register(REPROCESS_REPORT_DATASET, self.reprocess_report_dataset)
        self.queue.register(RELEASE_STALE_REFRESHING, self.release_stale_refreshing)

        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled via config")
            return
        self.queue.schedule(UPDATE_REPORT_DATASETS, self.settings.dispatch_cron, {})
        self.queue.schedule(BACKFILL_REPORT_DATASETS, self.settings.backfill_cron, {})
        if self.settings.stale_refresh_sweep_enabled:
            self.queue.schedule(RELEASE_STALE_REFRESHING, self.settings.stale_sweep_cron, {})

    # ── Fan-out ticks ──

    async def update_report_datasets(self, payload: Dict[str, Any]) -> List[str]:
        """Enqueue a dispatch job for every enabled account."""
        job_ids = [
            self.queue.emit(
                UPDATE_REPORT_DATASET_FOR_ACCOUNT,
                {"accountId": account.ads_account_id, "countryCode": account.country_code},
            )
            for account in self.store.enabled_accounts()
        ]
        logger.info(f"Enqueued dataset updates for {len(job_ids)} accounts", extra={"job": UPDATE_REPORT_DATASETS})
        return job_ids

    async def backfill_report_datasets(self, payload: Dict[str, Any]) -> List[str]:
        """Enqueue backfill for every enabled account; daily only at midnight UTC."""
        now = self.clock()
        aggregations = [Aggregation.HOURLY]
        if now.hour == 0:
            aggregations.append(Aggregation.DAILY)
        job_ids = [
            self.queue.emit(
                BACKFILL_REPORT_DATASET_FOR_ACCOUNT,
                {
                    "accountId": account.ads_account_id,
                    "countryCode": account.country_code,
                    "aggregations": [a.value for a in aggregations],
                },
            )
            for account in self.store.enabled_accounts()
        ]
        logger.info(f"Enqueued backfill for {len(job_ids)} accounts", extra={"job": BACKFILL_REPORT_DATASETS})
        return job_ids

    # ── Per-account work ──

    async def update_report_dataset_for_account(self, payload: Dict[str, Any]) -> Dict[str, int]:
        job = parse_payload(AccountJobInput, payload)
        now = self.clock()
        counts: Dict[str, int] = {}
        for aggregation in (Aggregation.DAILY, Aggregation.HOURLY):
            for entity_type in self.entity_types:
                outcomes = await self.dispatch_due(
                    job.account_id, job.country_code, aggregation, entity_type, now
                )
                for outcome in outcomes:
                    counts[outcome.value] = counts.get(outcome.value, 0) + 1

        self.publisher.publish(
            AccountEvent(
                type=EventType.REPORTS_REFRESHED,
                account_id=job.account_id,
                country_code=job.country_code,
            )
        )
        logger.info(
            f"Dataset update finished: {counts}",
            extra={"job": UPDATE_REPORT_DATASET_FOR_ACCOUNT, "account_id": job.account_id},
        )
        return counts

    async def dispatch_due(
        self,
        account_id: str,
        country_code: str,
        aggregation: Aggregation,
        entity_type: EntityType,
        now: Optional[datetime] = None,
    ) -> List[CycleOutcome]:
        """Poll in-flight reports and start new ones for due windows.

        New creations are capped so that in-flight plus new stays within
        ``max_concurrent_reports``; polls are never capped.
        """
        now = now or self.clock()
        due = self.store.find_due(
            now,
            window_floor=self.backfill.retention_floor(now, aggregation),
            account_id=account_id,
            country_code=country_code,
            aggregation=aggregation,
            entity_type=entity_type,
        )
        polls = [r for r in due if r.status == DatasetStatus.FETCHING and r.report_id]
        creates = [r for r in due if r.status != DatasetStatus.FETCHING]
        capacity = max(0, self.settings.max_concurrent_reports - len(polls))
        creates = creates[:capacity]

        results = await asyncio.gather(
            *(self.lifecycle.run_poll_cycle(r.key(), now) for r in polls),
            *(self.lifecycle.run_create_cycle(r.key(), now) for r in creates),
            return_exceptions=True,
        )
        return self._collect(results)

    @staticmethod
    def _collect(results: Sequence[Any]) -> List[CycleOutcome]:
        outcomes: List[CycleOutcome] = []
        persistence_error: Optional[PersistenceError] = None
        for result in results:
            if isinstance(result, CycleOutcome):
                outcomes.append(result)
            elif isinstance(result, PersistenceError):
                persistence_error = persistence_error or result
            elif isinstance(result, BaseException):
                logger.error(f"Cycle failed: {result}")
                outcomes.append(CycleOutcome.FAILED)
        if persistence_error is not None:
            raise persistence_error
        return outcomes

    async def backfill_report_dataset_for_account(self, payload: Dict[str, Any]) -> int:
        job = parse_payload(BackfillJobInput, payload)
        now = self.clock()
        created = 0
        for aggregation in job.aggregations:
            for entity_type in self.entity_types:
                result = self.backfill.backfill(
                    job.account_id, job.country_code, now, aggregation, entity_type
                )
                created += result.created
        return created

    async def reprocess_report_dataset(self, payload: Dict[str, Any]) -> CycleOutcome:
        job = parse_payload(ReprocessJobInput, payload)
        key = DatasetKey.build(
            account_id=job.account_id,
            country_code=job.country_code,
            window_start=job.window_start,
            aggregation=job.aggregation,
            entity_type=job.entity_type,
        )
        return await self.lifecycle.reprocess(key, now=self.clock())

    async def release_stale_refreshing(self, payload: Dict[str, Any]) -> int:
        released = self.store.release_stale(
            timedelta(minutes=self.settings.stale_refresh_minutes), now=self.clock()
        )
        if released:
            logger.warning(f"Released {released} rows stuck in refreshing", extra={"job": RELEASE_STALE_REFRESHING})
        return released
