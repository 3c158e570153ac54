"""HARVEST — Stream Ingestion Models.

``performance`` doubles as the data source backfill consults to decide
whether a window already has data.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, UniqueConstraint


def _utc_naive_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PerformanceRecord(SQLModel, table=True):
    """Hourly or daily performance fact, keyed by the upstream idempotency id."""

    __tablename__ = "performance"

    id: Optional[int] = Field(default=None, primary_key=True)
    idempotency_id: str = Field(unique=True, index=True)
    account_id: str = Field(index=True)
    marketplace_id: str = Field(default="")
    date: NaiveDatetime = Field(sa_type=DateTime, index=True, description="UTC window start")
    aggregation: str = Field(index=True, description="hourly | daily")
    campaign_id: str = Field(default="")
    ad_group_id: str = Field(default="")
    ad_id: str = Field(default="")
    keyword_id: str = Field(default="")
    placement: str = Field(default="")
    currency: str = Field(default="")
    impressions: int = Field(default=0)
    clicks: int = Field(default=0)
    cost: float = Field(default=0.0)
    conversions: int = Field(default=0)
    sales: float = Field(default=0.0)
    updated_at: NaiveDatetime = Field(default_factory=_utc_naive_now, sa_type=DateTime)


class BudgetUsage(SQLModel, table=True):
    """Budget consumption snapshot pushed by the stream."""

    __tablename__ = "ams_budget_usage"
    __table_args__ = (
        UniqueConstraint(
            "advertiser_id",
            "marketplace_id",
            "budget_scope_id",
            "usage_updated_at",
            name="uq_ams_budget_usage",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    advertiser_id: str = Field(index=True)
    marketplace_id: str
    dataset_id: str
    budget_scope_id: str
    budget_scope_type: str
    advertising_product_type: str
    budget: float
    budget_usage_percentage: float
    usage_updated_at: NaiveDatetime = Field(sa_type=DateTime)


class StreamDeadLetter(SQLModel, table=True):
    """Stream records that could not be routed or validated."""

    __tablename__ = "stream_dead_letter"

    id: Optional[int] = Field(default=None, primary_key=True)
    dataset_id: str = Field(default="", index=True)
    reason: str = Field(index=True, description="unknown_dataset | invalid")
    error: str = Field(default="")
    payload_json: str = Field(description="Raw record as received")
    received_at: NaiveDatetime = Field(default_factory=_utc_naive_now, sa_type=DateTime)
