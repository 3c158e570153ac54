"""HARVEST — Stream Ingestion Router.

Routes each Marketing Stream record by its ``dataset_id`` prefix through a
dispatch table of ``StreamHandler`` entries (validator + upsert). A bad
record never aborts the batch: it lands in ``stream_dead_letter`` with the
reason ``invalid`` or ``unknown_dataset``.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import PersistenceError
from app.core.logging import get_logger
from app.core.timezones import utc_now, to_utc_naive
from app.ingest.schemas import BudgetUsagePayload, SpConversionPayload, SpTrafficPayload
from app.models.report_models import Aggregation
from app.models.stream_models import BudgetUsage, PerformanceRecord, StreamDeadLetter

logger = get_logger("ingest.router")


class StreamDataset(str, Enum):
    SP_TRAFFIC = "sp-traffic"
    SP_CONVERSION = "sp-conversion"
    BUDGET_USAGE = "budget-usage"

    @classmethod
    def resolve(cls, dataset_id: str) -> Optional["StreamDataset"]:
        """Map a concrete dataset id (e.g. ``sp-traffic-v1``) to its tag."""
        for member in cls:
            if dataset_id.startswith(member.value):
                return member
        return None


class IngestOutcome(str, Enum):
    ACCEPTED = "accepted"
    INVALID = "invalid"
    UNROUTABLE = "unroutable"


@dataclass(frozen=True)
class StreamHandler:
    validator: Type[BaseModel]
    upsert: Callable[[Connection, Any], None]


@dataclass
class IngestResult:
    accepted: int = 0
    invalid: int = 0
    unroutable: int = 0
    outcomes: List[IngestOutcome] = field(default_factory=list)

    def add(self, outcome: IngestOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome == IngestOutcome.ACCEPTED:
            self.accepted += 1
        elif outcome == IngestOutcome.INVALID:
            self.invalid += 1
        else:
            self.unroutable += 1


# ── Upserts ──


def _insert(conn: Connection, table):
    if conn.dialect.name == "postgresql":
        return pg_insert(table)
    return sqlite_insert(table)


def _upsert_performance(conn: Connection, values: Dict[str, Any]) -> None:
    stmt = _insert(conn, PerformanceRecord).values(**values)
    merge = {k: v for k, v in values.items() if k != "idempotency_id"}
    conn.execute(stmt.on_conflict_do_update(index_elements=["idempotency_id"], set_=merge))


def upsert_sp_traffic(conn: Connection, record: SpTrafficPayload) -> None:
    _upsert_performance(
        conn,
        {
            "idempotency_id": record.idempotency_id,
            "account_id": record.advertiser_id,
            "marketplace_id": record.marketplace_id,
            "date": record.time_window_start,
            "aggregation": Aggregation.HOURLY.value,
            "campaign_id": record.campaign_id,
            "ad_group_id": record.ad_group_id,
            "ad_id": record.ad_id,
            "keyword_id": record.keyword_id,
            "placement": record.placement,
            "currency": record.currency,
            "impressions": record.impressions,
            "clicks": record.clicks,
            "cost": record.cost,
            "updated_at": to_utc_naive(utc_now()),
        },
    )


def upsert_sp_conversion(conn: Connection, record: SpConversionPayload) -> None:
    _upsert_performance(
        conn,
        {
            "idempotency_id": record.idempotency_id,
            "account_id": record.advertiser_id,
            "marketplace_id": record.marketplace_id,
            "date": record.time_window_start,
            "aggregation": Aggregation.HOURLY.value,
            "campaign_id": record.campaign_id,
            "ad_group_id": record.ad_group_id,
            "ad_id": record.ad_id,
            "keyword_id": record.keyword_id,
            "placement": record.placement,
            "currency": record.currency,
            "conversions": record.attributed_conversions_7d or 0,
            "sales": record.attributed_sales_7d or 0.0,
            "updated_at": to_utc_naive(utc_now()),
        },
    )


def upsert_budget_usage(conn: Connection, record: BudgetUsagePayload) -> None:
    values = {
        "advertiser_id": record.advertiser_id,
        "marketplace_id": record.marketplace_id,
        "dataset_id": record.dataset_id,
        "budget_scope_id": record.budget_scope_id,
        "budget_scope_type": record.budget_scope_type,
        "advertising_product_type": record.advertising_product_type,
        "budget": record.budget,
        "budget_usage_percentage": record.budget_usage_percentage,
        "usage_updated_at": record.usage_updated_timestamp,
    }
    stmt = _insert(conn, BudgetUsage).values(**values)
    conn.execute(
        stmt.on_conflict_do_update(
            index_elements=["advertiser_id", "marketplace_id", "budget_scope_id", "usage_updated_at"],
            set_={
                "dataset_id": record.dataset_id,
                "budget_scope_type": record.budget_scope_type,
                "advertising_product_type": record.advertising_product_type,
                "budget": record.budget,
                "budget_usage_percentage": record.budget_usage_percentage,
            },
        )
    )


DEFAULT_HANDLERS: Dict[StreamDataset, StreamHandler] = {
    StreamDataset.SP_TRAFFIC: StreamHandler(SpTrafficPayload, upsert_sp_traffic),
    StreamDataset.SP_CONVERSION: StreamHandler(SpConversionPayload, upsert_sp_conversion),
    StreamDataset.BUDGET_USAGE: StreamHandler(BudgetUsagePayload, upsert_budget_usage),
}


# ── Router ──


class StreamRouter:
    """Validates and persists stream records; bad records are dead-lettered."""

    def __init__(self, engine: Engine, handlers: Optional[Dict[StreamDataset, StreamHandler]] = None):
        self.engine = engine
        self.handlers = dict(handlers or DEFAULT_HANDLERS)

    def route(self, payload: Union[Dict[str, Any], List[Any]]) -> IngestResult:
        records = payload if isinstance(payload, list) else [payload]
        result = IngestResult()
        for record in records:
            result.add(self.route_one(record))
        logger.info(
            f"Stream batch: {result.accepted} accepted, {result.invalid} invalid, "
            f"{result.unroutable} unroutable"
        )
        return result

    def route_one(self, record: Any) -> IngestOutcome:
        dataset_id = record.get("dataset_id") if isinstance(record, dict) else None
        dataset = StreamDataset.resolve(dataset_id) if isinstance(dataset_id, str) else None
        handler = self.handlers.get(dataset) if dataset else None
        if handler is None:
            self._dead_letter(record, "unknown_dataset", f"Unknown dataset_id: {dataset_id}")
            return IngestOutcome.UNROUTABLE

        try:
            parsed = handler.validator.model_validate(record)
        except PydanticValidationError as e:
            logger.warning(f"Invalid {dataset.value} record: {e.error_count()} errors")
            self._dead_letter(record, "invalid", str(e))
            return IngestOutcome.INVALID

        try:
            with self.engine.begin() as conn:
                handler.upsert(conn, parsed)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store {dataset.value} record: {e}") from e
        return IngestOutcome.ACCEPTED

    def _dead_letter(self, record: Any, reason: str, error: str) -> None:
        dataset_id = record.get("dataset_id") if isinstance(record, dict) else None
        row = {
            "dataset_id": str(dataset_id or ""),
            "reason": reason,
            "error": error,
            "payload_json": json.dumps(record, default=str),
            "received_at": to_utc_naive(utc_now()),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(StreamDeadLetter.__table__.insert().values(**row))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to dead-letter stream record: {e}") from e
