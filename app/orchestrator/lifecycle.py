"""HARVEST — Report Lifecycle Orchestrator.

State machine per dataset window:

    missing ──create──▶ fetching ──poll──▶ completed
                           │
                           └──────poll──▶ failed

``completed`` and ``failed`` only go back to ``fetching`` through a new
create cycle (next eligible checkpoint or an explicit reprocess).

Every cycle starts by winning ``try_acquire`` on the row and ends with a
single ``release`` that writes the outcome; the provider call runs in
between under a hard timeout. Each release that changes state is followed
by exactly one event carrying the post-write row.
"""

import asyncio
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from app.connectors.ads.provider import (
    AccountRef,
    ProviderError,
    ReportProvider,
    ReportWindow,
)
from app.core.logging import get_logger
from app.core.report_registry import get_report_definition
from app.core.timezones import to_local_naive, to_utc_naive, utc_now
from app.events.publisher import EventPublisher
from app.models.report_models import (
    DatasetKey,
    DatasetStatus,
    LifecycleEvent,
    ReportDatasetMetadata,
    ReportStatus,
)
from app.orchestrator.eligibility import is_eligible, next_refresh_time
from app.orchestrator.store import MetadataStore

logger = get_logger("orchestrator.lifecycle")


class CycleOutcome(str, Enum):
    """What a single create/poll cycle did."""

    SKIPPED = "skipped"  # another cycle owns the key
    INELIGIBLE = "ineligible"
    NOT_APPLICABLE = "not_applicable"  # poll on a row with nothing in flight
    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportLifecycle:
    """Drives dataset windows through creation, polling and terminal status."""

    def __init__(
        self,
        store: MetadataStore,
        provider: ReportProvider,
        publisher: EventPublisher,
        timeout_seconds: float = 30.0,
        poll_interval: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.provider = provider
        self.publisher = publisher
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.clock = clock

    # ── Helpers ──

    def _emit(self, row: ReportDatasetMetadata) -> None:
        try:
            self.publisher.publish(LifecycleEvent.from_row(row))
        except Exception as e:
            logger.error(f"Failed to publish lifecycle event: {e}")

    def _next_check(self, row: ReportDatasetMetadata, now: datetime) -> Optional[datetime]:
        return next_refresh_time(
            row.window_start,
            row.aggregation,
            row.last_report_created_at,
            row.country_code,
            now,
        )

    def _release_on_error(self, key: DatasetKey, error: Exception) -> None:
        """Best-effort release after an unexpected failure inside a cycle."""
        try:
            row = self.store.release(key, {"error": str(error) or type(error).__name__})
            self._emit(row)
        except Exception as release_error:
            logger.error(
                f"Could not release row after failure: {release_error}",
                extra=key.log_context(),
            )

    async def _call_provider(self, coro, action: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{action} timed out after {self.timeout_seconds:g}s", code="timeout"
            ) from e

    # ── Create ──

    async def run_create_cycle(
        self,
        key: DatasetKey,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> CycleOutcome:
        """Request a new report for ``key`` if its window is eligible.

        ``force`` skips the eligibility check; it is how an explicit reprocess
        moves a ``completed`` or ``failed`` window back to ``fetching``.
        """
        now = now or self.clock()
        ctx = key.log_context()
        account = self.store.get_account(key.account_id)

        if not self.store.exists(key):
            self.store.insert_if_absent(key, {"status": DatasetStatus.MISSING})

        if not self.store.try_acquire(key):
            logger.debug("Cycle already in progress, skipping", extra={**ctx, "outcome": "skipped"})
            return CycleOutcome.SKIPPED

        started = time.monotonic()
        try:
            row = self.store.get(key)
            eligible = force or is_eligible(
                row.window_start,
                row.aggregation,
                row.last_report_created_at,
                row.country_code,
                now,
            )
            if not eligible:
                self.store.release(key, {"next_refresh_at": self._next_check(row, now)})
                logger.debug("Window not eligible", extra={**ctx, "outcome": "ineligible"})
                return CycleOutcome.INELIGIBLE

            definition = get_report_definition(key.aggregation, key.entity_type)
            fields: Dict[str, Any]
            try:
                created = await self._call_provider(
                    self.provider.create_report(
                        AccountRef(
                            ads_account_id=account.ads_account_id,
                            profile_id=account.profile_id,
                            country_code=key.country_code,
                        ),
                        ReportWindow(start=key.window_start, aggregation=key.aggregation),
                        definition.fields,
                    ),
                    "createReport",
                )
            except ProviderError as e:
                fields = {"error": str(e), "next_refresh_at": self._next_check(row, now)}
                # A completed window keeps its data; only the error is recorded.
                if row.status != DatasetStatus.COMPLETED:
                    fields["status"] = DatasetStatus.FAILED
                outcome = CycleOutcome.FAILED
                logger.warning(
                    f"Report creation failed: {e}",
                    extra={**ctx, "outcome": outcome.value, "status_code": e.status_code},
                )
            else:
                created_at = to_local_naive(now, key.country_code)
                if (
                    not force
                    and row.last_report_created_at is not None
                    and created_at < row.last_report_created_at
                ):
                    created_at = row.last_report_created_at
                fields = {
                    "status": DatasetStatus.FETCHING,
                    "report_id": created.report_id,
                    "last_report_created_at": created_at,
                    "error": None,
                    "next_refresh_at": to_utc_naive(now) + self.poll_interval,
                }
                outcome = CycleOutcome.CREATED

            row = self.store.release(key, fields)
        except Exception as e:
            self._release_on_error(key, e)
            raise

        logger.info(
            f"Create cycle finished: {outcome.value}",
            extra={
                **ctx,
                "outcome": outcome.value,
                "report_id": row.report_id,
                "duration_ms": round((time.monotonic() - started) * 1000),
            },
        )
        self._emit(row)
        return outcome

    # ── Poll ──

    async def run_poll_cycle(
        self, key: DatasetKey, now: Optional[datetime] = None
    ) -> CycleOutcome:
        """Check the in-flight report for ``key`` and record its status."""
        now = now or self.clock()
        ctx = key.log_context()
        row = self.store.get(key)
        if row is None or row.status != DatasetStatus.FETCHING or not row.report_id:
            return CycleOutcome.NOT_APPLICABLE

        if not self.store.try_acquire(key):
            logger.debug("Cycle already in progress, skipping", extra={**ctx, "outcome": "skipped"})
            return CycleOutcome.SKIPPED

        started = time.monotonic()
        try:
            row = self.store.get(key)
            if row.status != DatasetStatus.FETCHING or not row.report_id:
                self.store.release(key)
                return CycleOutcome.NOT_APPLICABLE

            try:
                report = await self._call_provider(
                    self.provider.retrieve_report(row.report_id), "retrieveReport"
                )
            except ProviderError as e:
                fields = {
                    "status": DatasetStatus.FAILED,
                    "error": str(e),
                    "next_refresh_at": self._next_check(row, now),
                }
                outcome = CycleOutcome.FAILED
            else:
                if report.status == ReportStatus.COMPLETED:
                    fields = {
                        "status": DatasetStatus.COMPLETED,
                        "error": None,
                        "next_refresh_at": self._next_check(row, now),
                    }
                    outcome = CycleOutcome.COMPLETED
                elif report.status == ReportStatus.FAILED:
                    fields = {
                        "status": DatasetStatus.FAILED,
                        "error": report.error or "Report failed",
                        "next_refresh_at": self._next_check(row, now),
                    }
                    outcome = CycleOutcome.FAILED
                else:
                    fields = {
                        "status": DatasetStatus.FETCHING,
                        "next_refresh_at": to_utc_naive(now) + self.poll_interval,
                    }
                    outcome = CycleOutcome.PENDING

            row = self.store.release(key, fields)
        except Exception as e:
            self._release_on_error(key, e)
            raise

        logger.info(
            f"Poll cycle finished: {outcome.value}",
            extra={
                **ctx,
                "outcome": outcome.value,
                "report_id": row.report_id,
                "duration_ms": round((time.monotonic() - started) * 1000),
            },
        )
        self._emit(row)
        return outcome

    # ── Reprocess ──

    async def reprocess(self, key: DatasetKey, now: Optional[datetime] = None) -> CycleOutcome:
        """Explicitly request a fresh report regardless of checkpoints."""
        logger.info("Reprocess requested", extra=key.log_context())
        return await self.run_create_cycle(key, now=now, force=True)
