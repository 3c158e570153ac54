"""Shared fixtures: in-memory database, fake provider and data source."""

import asyncio
from datetime import datetime
from typing import List, Optional, Sequence, Set, Tuple

import pytest
from sqlmodel import Session

from app.config import Settings
from app.connectors.ads.performance import PerformanceDataSource
from app.connectors.ads.provider import (
    AccountRef,
    CreatedReport,
    ReportProvider,
    ReportWindow,
    RetrievedReport,
)
from app.database import build_engine, init_db
from app.events.publisher import EventPublisher
from app.models.report_models import AdvertiserAccount, Aggregation, ReportStatus
from app.orchestrator.store import MetadataStore


class FakeProvider(ReportProvider):
    """Scriptable report provider that records every call."""

    def __init__(self):
        self.create_calls: List[Tuple[AccountRef, ReportWindow, Sequence[str]]] = []
        self.retrieve_calls: List[str] = []
        self.report_ids: List[str] = []
        self.statuses: List[RetrievedReport] = []
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None
        self.delay = 0.0

    async def create_report(self, account, window, fields) -> CreatedReport:
        self.create_calls.append((account, window, fields))
        await asyncio.sleep(self.delay)
        if self.create_error is not None:
            raise self.create_error
        report_id = self.report_ids.pop(0) if self.report_ids else f"rep-{len(self.create_calls)}"
        return CreatedReport(report_id=report_id)

    async def retrieve_report(self, report_id: str) -> RetrievedReport:
        self.retrieve_calls.append(report_id)
        await asyncio.sleep(self.delay)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        if self.statuses:
            return self.statuses.pop(0)
        return RetrievedReport(status=ReportStatus.PENDING)


class FakeDataSource(PerformanceDataSource):
    def __init__(self, windows: Optional[Set[datetime]] = None, failing: Optional[Set[datetime]] = None):
        self.windows = windows or set()
        self.failing = failing or set()

    def has_data(self, account_id: str, window_start: datetime, aggregation: Aggregation) -> bool:
        if window_start in self.failing:
            raise RuntimeError(f"data source unavailable for {window_start}")
        return window_start in self.windows


class RecordingPublisher(EventPublisher):
    """Real publisher that also keeps every published event."""

    def __init__(self):
        super().__init__(sweep_seconds=0.05)
        self.events = []

    def publish(self, event) -> int:
        self.events.append(event)
        return super().publish(event)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return MetadataStore(engine)


@pytest.fixture
def account(engine):
    account = AdvertiserAccount(
        ads_account_id="A1",
        profile_id="P1",
        country_code="US",
        account_name="Acme US",
        enabled=True,
    )
    with Session(engine) as session:
        session.add(account)
        session.commit()
        session.refresh(account)
    return account


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        scheduler_enabled=False,
        max_concurrent_reports=5,
    )


@pytest.fixture
def make_data_source():
    return FakeDataSource
