"""HARVEST — Backfill Enumerator.

Walks the provider's retention horizon and seeds a metadata row for every
window boundary that has none yet. Re-running is a no-op for existing rows.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict

from app.connectors.ads.performance import PerformanceDataSource
from app.core.logging import get_logger
from app.core.timezones import enumerate_windows, period_start
from app.models.report_models import Aggregation, DatasetKey, DatasetStatus, EntityType
from app.orchestrator.eligibility import next_refresh_time
from app.orchestrator.store import MetadataStore

logger = get_logger("orchestrator.backfill")

# Amazon Ads API data retention
DEFAULT_RETENTION = {
    Aggregation.HOURLY: timedelta(days=14),
    Aggregation.DAILY: timedelta(days=450),  # ~15 months
}


def placeholder_report_id(window_start: datetime, aggregation: Aggregation) -> str:
    """Deterministic report id for rows seeded by backfill."""
    return f"{Aggregation(aggregation).value}-{window_start.isoformat()}"


@dataclass
class BackfillResult:
    created: int = 0
    existing: int = 0
    failed: int = 0


class BackfillEnumerator:
    """Materializes missing ``report_dataset_metadata`` rows."""

    def __init__(
        self,
        store: MetadataStore,
        data_source: PerformanceDataSource,
        retention: Dict[Aggregation, timedelta] | None = None,
    ):
        self.store = store
        self.data_source = data_source
        self.retention = {**DEFAULT_RETENTION, **(retention or {})}

    def retention_floor(self, now: datetime, aggregation: Aggregation) -> datetime:
        """Earliest window start kept for ``aggregation`` as of ``now``."""
        return period_start(now, aggregation) - self.retention[aggregation]

    def backfill(
        self,
        account_id: str,
        country_code: str,
        now: datetime,
        aggregation: Aggregation,
        entity_type: EntityType = EntityType.TARGET,
    ) -> BackfillResult:
        aggregation = Aggregation(aggregation)
        current = period_start(now, aggregation)
        earliest = self.retention_floor(now, aggregation)
        result = BackfillResult()

        for window_start in enumerate_windows(earliest, current, aggregation):
            key = DatasetKey(
                account_id=account_id,
                country_code=country_code,
                window_start=window_start,
                aggregation=aggregation,
                entity_type=entity_type,
            )
            try:
                if self.store.exists(key):
                    result.existing += 1
                    continue
                has_data = self.data_source.has_data(account_id, window_start, aggregation)
                created = self.store.insert_if_absent(
                    key,
                    {
                        "status": DatasetStatus.COMPLETED if has_data else DatasetStatus.MISSING,
                        "report_id": placeholder_report_id(window_start, aggregation),
                        "error": None,
                        "next_refresh_at": next_refresh_time(
                            window_start, aggregation, None, country_code, now
                        ),
                    },
                )
                if created:
                    result.created += 1
                else:
                    # Lost a race with another backfill; the row is there now.
                    result.existing += 1
            except Exception as e:
                result.failed += 1
                logger.error(
                    f"Backfill failed for window: {e}",
                    extra=key.log_context(),
                )

        logger.info(
            f"Backfill {aggregation.value}/{EntityType(entity_type).value} for {account_id}: "
            f"{result.created} created, {result.existing} existing, {result.failed} failed",
            extra={"account_id": account_id, "country_code": country_code},
        )
        return result
