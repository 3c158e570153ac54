"""HARVEST — Stream Payload Schemas.

Marketing Stream (AMS) records arrive snake_case. Unknown keys are kept so
the dead-letter copy of a record is complete.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class StreamPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    dataset_id: str


class SpTrafficPayload(StreamPayload):
    """Sponsored Products traffic (impressions, clicks, cost) for one hour."""

    idempotency_id: str
    marketplace_id: str
    currency: str
    advertiser_id: str
    campaign_id: str
    ad_group_id: str
    ad_id: str
    keyword_id: str
    keyword_text: str = ""
    match_type: str = ""
    placement: str
    time_window_start: datetime
    clicks: int = Field(ge=0)
    impressions: int = Field(ge=0)
    cost: float = Field(ge=0)

    _window = field_validator("time_window_start")(_naive_utc)


class SpConversionPayload(StreamPayload):
    """Sponsored Products attributed conversions for one hour."""

    idempotency_id: str
    marketplace_id: str
    currency: str
    advertiser_id: str
    campaign_id: str
    ad_group_id: str
    ad_id: str
    keyword_id: str
    placement: str
    time_window_start: datetime
    attributed_conversions_7d: Optional[int] = Field(default=None, ge=0)
    attributed_sales_7d: Optional[float] = Field(default=None, ge=0)

    _window = field_validator("time_window_start")(_naive_utc)


class BudgetUsagePayload(StreamPayload):
    advertiser_id: str
    marketplace_id: str
    budget_scope_id: str
    budget_scope_type: str
    advertising_product_type: str
    budget: float = Field(ge=0)
    budget_usage_percentage: float = Field(ge=0, le=100)
    usage_updated_timestamp: datetime

    _usage = field_validator("usage_updated_timestamp")(_naive_utc)
