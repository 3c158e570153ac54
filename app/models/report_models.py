"""HARVEST — Report Dataset Models.

One ``report_dataset_metadata`` row per
(account, country, window, aggregation, entity type). Window boundaries are
naive UTC; ``last_report_created_at`` is the country's local wall clock.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, NaiveDatetime, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, DateTime, Enum as SAEnum
from sqlmodel import SQLModel, Field, UniqueConstraint

from app.core.errors import ValidationError


# ─────────────────────────────────────────────
# CLOSED VARIANTS
# ─────────────────────────────────────────────


class Aggregation(str, Enum):
    """Window granularity."""

    HOURLY = "hourly"
    DAILY = "daily"


class EntityType(str, Enum):
    """Report content dimension."""

    TARGET = "target"
    PRODUCT = "product"


class DatasetStatus(str, Enum):
    """Lifecycle status of a dataset window."""

    MISSING = "missing"
    FETCHING = "fetching"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportStatus(str, Enum):
    """Provider-side report status."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EventType(str, Enum):
    METADATA_UPDATED = "report-dataset-metadata:updated"
    REPORTS_REFRESHED = "reports:refreshed"


def _enum_column(enum_cls: type[Enum], **kwargs) -> Column:
    """Store enum values (not names) in a portable VARCHAR column."""
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=16,
        ),
        nullable=False,
        **kwargs,
    )


# ─────────────────────────────────────────────
# DATABASE MODELS
# ─────────────────────────────────────────────


class AdvertiserAccount(SQLModel, table=True):
    """Advertiser account mapping. Read-only for the orchestrator."""

    __tablename__ = "advertiser_account"

    id: Optional[int] = Field(default=None, primary_key=True)
    ads_account_id: str = Field(unique=True, index=True)
    profile_id: str = Field(default="", description="Ads API profile scope")
    country_code: str = Field(default="US", description="Marketplace country")
    account_name: str = Field(default="")
    enabled: bool = Field(default=False, index=True)


class ReportDatasetMetadata(SQLModel, table=True):
    """Lifecycle state of one dataset window.

    The unique constraint on the composite key makes every upsert idempotent.
    ``refreshing`` is the only mutual-exclusion primitive.
    """

    __tablename__ = "report_dataset_metadata"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "country_code",
            "window_start",
            "aggregation",
            "entity_type",
            name="uq_report_dataset_metadata",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True)
    country_code: str = Field(index=True)
    window_start: NaiveDatetime = Field(
        sa_type=DateTime, index=True, description="UTC, boundary aligned"
    )
    aggregation: Aggregation = Field(sa_column=_enum_column(Aggregation))
    entity_type: EntityType = Field(sa_column=_enum_column(EntityType))
    status: DatasetStatus = Field(sa_column=_enum_column(DatasetStatus, index=True))
    refreshing: bool = Field(default=False)
    acquired_at: Optional[NaiveDatetime] = Field(
        default=None, sa_type=DateTime, description="UTC, set while refreshing"
    )
    report_id: Optional[str] = Field(default=None)
    last_refreshed: Optional[NaiveDatetime] = Field(
        default=None, sa_type=DateTime, description="UTC"
    )
    last_report_created_at: Optional[NaiveDatetime] = Field(
        default=None, sa_type=DateTime, description="Country-local wall clock, naive"
    )
    next_refresh_at: Optional[NaiveDatetime] = Field(
        default=None, sa_type=DateTime, index=True
    )
    error: Optional[str] = Field(default=None)

    def key(self) -> "DatasetKey":
        return DatasetKey(
            account_id=self.account_id,
            country_code=self.country_code,
            window_start=self.window_start,
            aggregation=self.aggregation,
            entity_type=self.entity_type,
        )


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS
# ─────────────────────────────────────────────


class DatasetKey(BaseModel):
    """Composite key of a dataset window."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    country_code: str
    window_start: datetime
    aggregation: Aggregation
    entity_type: EntityType

    @field_validator("window_start")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _aligned(self) -> "DatasetKey":
        ws = self.window_start
        misaligned = ws.minute or ws.second or ws.microsecond
        if self.aggregation == Aggregation.DAILY and ws.hour:
            misaligned = True
        if misaligned:
            raise ValueError(
                f"window_start {ws.isoformat()} is not aligned to a "
                f"{self.aggregation.value} boundary"
            )
        return self

    @classmethod
    def build(cls, **fields) -> "DatasetKey":
        """Construct a key, raising the orchestrator's ValidationError."""
        try:
            return cls(**fields)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    def log_context(self) -> dict:
        return {
            "account_id": self.account_id,
            "country_code": self.country_code,
            "aggregation": self.aggregation.value,
            "entity_type": self.entity_type.value,
            "window_start": self.window_start.isoformat(),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class LifecycleEvent(BaseModel):
    """Broadcast after every metadata transition, carrying the post-write row."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: EventType = EventType.METADATA_UPDATED
    account_id: str
    country_code: str
    window_start: str
    aggregation: Aggregation
    entity_type: EntityType
    status: DatasetStatus
    refreshing: bool = False
    report_id: Optional[str] = None
    last_refreshed: Optional[str] = None
    last_report_created_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: ReportDatasetMetadata) -> "LifecycleEvent":
        return cls(
            account_id=row.account_id,
            country_code=row.country_code,
            window_start=row.window_start.isoformat(),
            aggregation=row.aggregation,
            entity_type=row.entity_type,
            status=row.status,
            refreshing=row.refreshing,
            report_id=row.report_id,
            last_refreshed=_iso(row.last_refreshed),
            last_report_created_at=_iso(row.last_report_created_at),
            error=row.error,
        )


class AccountEvent(BaseModel):
    """Account-scoped notification, sent when a dispatch run finishes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: EventType
    account_id: str
    country_code: Optional[str] = None
