"""HARVEST — Orchestration Context.

Explicitly constructed holder for everything the scheduler and API need.
Nothing starts on import: ``start()`` registers jobs and starts the queue
and the publisher sweep, ``stop()`` reverses it.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy.engine import Engine

from app.config import Settings, settings as default_settings
from app.connectors.ads.client import AdsReportClient
from app.connectors.ads.performance import PerformanceDataSource, SqlPerformanceDataSource
from app.connectors.ads.provider import ReportProvider
from app.core.logging import get_logger
from app.database import build_engine
from app.events.publisher import EventPublisher
from app.ingest.router import StreamRouter
from app.models.report_models import Aggregation
from app.orchestrator.backfill import BackfillEnumerator
from app.orchestrator.lifecycle import ReportLifecycle
from app.orchestrator.store import MetadataStore
from app.scheduler.jobs import ReportJobs
from app.scheduler.queue import SchedulerWorkQueue, WorkQueue

logger = get_logger("scheduler.context")


class OrchestrationContext:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        provider: Optional[ReportProvider] = None,
        data_source: Optional[PerformanceDataSource] = None,
        queue: Optional[WorkQueue] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.settings = settings or default_settings
        self.engine = engine or build_engine(self.settings.effective_database_url)
        self.provider = provider or AdsReportClient(
            access_token=self.settings.ads_access_token,
            client_id=self.settings.ads_client_id,
            base_url=self.settings.ads_base_url,
        )
        self.data_source = data_source or SqlPerformanceDataSource(self.engine)
        self.queue = queue or SchedulerWorkQueue()
        self.publisher = publisher or EventPublisher(sweep_seconds=self.settings.event_sweep_seconds)

        self.store = MetadataStore(self.engine)
        self.lifecycle = ReportLifecycle(
            self.store,
            self.provider,
            self.publisher,
            timeout_seconds=self.settings.provider_timeout_seconds,
            poll_interval=timedelta(minutes=self.settings.poll_interval_minutes),
        )
        self.backfill = BackfillEnumerator(
            self.store,
            self.data_source,
            retention={
                Aggregation.HOURLY: timedelta(days=self.settings.hourly_retention_days),
                Aggregation.DAILY: timedelta(days=self.settings.daily_retention_days),
            },
        )
        self.stream_router = StreamRouter(self.engine)
        self.jobs = ReportJobs(
            self.settings,
            self.store,
            self.lifecycle,
            self.backfill,
            self.publisher,
            self.queue,
        )
        self.started = False

    def start(self) -> None:
        """Register jobs, start the work queue and the publisher sweep."""
        if self.started:
            return
        self.jobs.register()
        self.queue.start()
        self.publisher.start()
        self.started = True
        logger.info("Orchestration context started")

    async def stop(self) -> None:
        if not self.started:
            return
        self.queue.stop()
        await self.publisher.stop()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        self.started = False
        logger.info("Orchestration context stopped")
