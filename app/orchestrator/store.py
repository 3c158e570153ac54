"""HARVEST — Metadata Store.

Durable keyed state per dataset window on top of SQLModel. ``try_acquire``
is the sole concurrency primitive: a conditional UPDATE that flips
``refreshing`` false→true and reports success only when it touched the row.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.core.errors import NotFoundError, PersistenceError
from app.core.logging import get_logger
from app.core.timezones import to_utc_naive, utc_now
from app.models.report_models import (
    AdvertiserAccount,
    Aggregation,
    DatasetKey,
    DatasetStatus,
    EntityType,
    ReportDatasetMetadata,
)

logger = get_logger("orchestrator.store")

KEY_COLUMNS = ["account_id", "country_code", "window_start", "aggregation", "entity_type"]

# Fields the state machine may write; anything else in ``fields`` is a bug.
MUTABLE_FIELDS = {
    "status",
    "report_id",
    "last_report_created_at",
    "next_refresh_at",
    "error",
}


def _key_clause(key: DatasetKey):
    model = ReportDatasetMetadata
    return (
        model.account_id == key.account_id,
        model.country_code == key.country_code,
        model.window_start == key.window_start,
        model.aggregation == key.aggregation,
        model.entity_type == key.entity_type,
    )


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown metadata fields: {sorted(unknown)}")


class MetadataStore:
    """Keyed access to ``report_dataset_metadata`` and account lookups."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _insert(self):
        if self.engine.dialect.name == "postgresql":
            return pg_insert(ReportDatasetMetadata)
        return sqlite_insert(ReportDatasetMetadata)

    # ── Reads ──

    def get(self, key: DatasetKey) -> Optional[ReportDatasetMetadata]:
        try:
            with Session(self.engine) as session:
                return session.exec(
                    select(ReportDatasetMetadata).where(*_key_clause(key))
                ).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read metadata: {e}") from e

    def exists(self, key: DatasetKey) -> bool:
        return self.get(key) is not None

    def find_due(
        self,
        now: datetime,
        *,
        window_floor: datetime,
        account_id: Optional[str] = None,
        country_code: Optional[str] = None,
        aggregation: Optional[Aggregation] = None,
        entity_type: Optional[EntityType] = None,
        status: Optional[DatasetStatus] = None,
        limit: Optional[int] = None,
    ) -> List[ReportDatasetMetadata]:
        """Idle rows whose next check has passed, newest windows first."""
        model = ReportDatasetMetadata
        query = select(model).where(
            model.next_refresh_at.is_not(None),
            model.next_refresh_at <= to_utc_naive(now),
            model.refreshing.is_(False),
            model.window_start >= to_utc_naive(window_floor),
        )
        if account_id is not None:
            query = query.where(model.account_id == account_id)
        if country_code is not None:
            query = query.where(model.country_code == country_code)
        if aggregation is not None:
            query = query.where(model.aggregation == aggregation)
        if entity_type is not None:
            query = query.where(model.entity_type == entity_type)
        if status is not None:
            query = query.where(model.status == status)
        query = query.order_by(model.window_start.desc())
        if limit is not None:
            query = query.limit(limit)
        try:
            with Session(self.engine) as session:
                return list(session.exec(query).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to query due metadata: {e}") from e

    def list_rows(
        self,
        *,
        account_id: str,
        country_code: Optional[str] = None,
        aggregation: Optional[Aggregation] = None,
        entity_type: Optional[EntityType] = None,
        status: Optional[DatasetStatus] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> List[ReportDatasetMetadata]:
        model = ReportDatasetMetadata
        query = select(model).where(model.account_id == account_id)
        if country_code is not None:
            query = query.where(model.country_code == country_code)
        if aggregation is not None:
            query = query.where(model.aggregation == aggregation)
        if entity_type is not None:
            query = query.where(model.entity_type == entity_type)
        if status is not None:
            query = query.where(model.status == status)
        query = query.order_by(model.window_start.desc()).offset(offset).limit(limit)
        try:
            with Session(self.engine) as session:
                return list(session.exec(query).all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list metadata: {e}") from e

    def get_account(self, account_id: str) -> AdvertiserAccount:
        try:
            with Session(self.engine) as session:
                account = session.exec(
                    select(AdvertiserAccount).where(
                        AdvertiserAccount.ads_account_id == account_id
                    )
                ).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read account: {e}") from e
        if account is None:
            raise NotFoundError(f"Advertiser account not found: {account_id}")
        return account

    def enabled_accounts(self) -> List[AdvertiserAccount]:
        try:
            with Session(self.engine) as session:
                return list(
                    session.exec(
                        select(AdvertiserAccount).where(AdvertiserAccount.enabled.is_(True))
                    ).all()
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list accounts: {e}") from e

    # ── Writes ──

    def upsert(self, key: DatasetKey, fields: Dict[str, Any]) -> ReportDatasetMetadata:
        """Insert-or-merge by composite key; returns the post-merge row."""
        _check_fields(fields)
        now = to_utc_naive(utc_now())
        values = {**key.model_dump(), "status": DatasetStatus.MISSING, "refreshing": False, **fields}
        values["last_refreshed"] = now
        merge = {**fields, "last_refreshed": now}
        stmt = (
            self._insert()
            .values(**values)
            .on_conflict_do_update(index_elements=KEY_COLUMNS, set_=merge)
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to upsert metadata: {e}") from e
        return self._require(key)

    def insert_if_absent(self, key: DatasetKey, fields: Dict[str, Any]) -> bool:
        """Create the row unless the key already exists. True if created."""
        _check_fields(fields)
        values = {
            **key.model_dump(),
            "refreshing": False,
            "last_refreshed": to_utc_naive(utc_now()),
            **fields,
        }
        stmt = self._insert().values(**values).on_conflict_do_nothing(
            index_elements=KEY_COLUMNS
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to insert metadata: {e}") from e

    def try_acquire(self, key: DatasetKey, now: Optional[datetime] = None) -> bool:
        """Atomically flip ``refreshing`` false→true. True iff this caller won.

        The same UPDATE stamps ``acquired_at``, which is what
        ``release_stale`` ages the lock by.
        """
        stmt = (
            update(ReportDatasetMetadata)
            .where(*_key_clause(key), ReportDatasetMetadata.refreshing.is_(False))
            .values(refreshing=True, acquired_at=to_utc_naive(now or utc_now()))
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to acquire metadata row: {e}") from e

    def release(
        self, key: DatasetKey, fields: Optional[Dict[str, Any]] = None
    ) -> ReportDatasetMetadata:
        """Clear ``refreshing`` and write ``fields`` in a single UPDATE."""
        fields = fields or {}
        _check_fields(fields)
        stmt = (
            update(ReportDatasetMetadata)
            .where(*_key_clause(key))
            .values(
                refreshing=False,
                acquired_at=None,
                last_refreshed=to_utc_naive(utc_now()),
                **fields,
            )
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to release metadata row: {e}") from e
        return self._require(key)

    def release_stale(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Reclaim rows whose lock was acquired more than ``older_than`` ago."""
        cutoff = to_utc_naive(now or utc_now()) - older_than
        model = ReportDatasetMetadata
        stmt = (
            update(model)
            .where(model.refreshing.is_(True), model.acquired_at < cutoff)
            .values(refreshing=False, acquired_at=None)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                return result.rowcount
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to release stale rows: {e}") from e

    def _require(self, key: DatasetKey) -> ReportDatasetMetadata:
        row = self.get(key)
        if row is None:
            raise NotFoundError(f"Metadata row not found: {key.log_context()}")
        return row
