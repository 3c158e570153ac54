"""Tests for Marketing Stream record routing and dead-lettering."""

from datetime import datetime

import pytest
from sqlmodel import Session, select

from app.connectors.ads.performance import SqlPerformanceDataSource
from app.ingest.router import IngestOutcome, StreamDataset, StreamRouter
from app.models.report_models import Aggregation
from app.models.stream_models import BudgetUsage, PerformanceRecord, StreamDeadLetter


def _traffic(**overrides):
    record = {
        "dataset_id": "sp-traffic-v1",
        "idempotency_id": "idem-1",
        "marketplace_id": "ATVPDKIKX0DER",
        "currency": "USD",
        "advertiser_id": "A1",
        "campaign_id": "c1",
        "ad_group_id": "g1",
        "ad_id": "ad1",
        "keyword_id": "k1",
        "keyword_text": "running shoes",
        "match_type": "EXACT",
        "placement": "Top of Search",
        "time_window_start": "2024-06-09T12:00:00Z",
        "clicks": 3,
        "impressions": 120,
        "cost": 1.75,
    }
    record.update(overrides)
    return record


def _budget():
    return {
        "dataset_id": "budget-usage",
        "advertiser_id": "A1",
        "marketplace_id": "ATVPDKIKX0DER",
        "budget_scope_id": "c1",
        "budget_scope_type": "CAMPAIGN",
        "advertising_product_type": "SPONSORED_PRODUCTS",
        "budget": 50.0,
        "budget_usage_percentage": 42.5,
        "usage_updated_timestamp": "2024-06-09T12:15:00Z",
    }


@pytest.fixture
def router(engine):
    return StreamRouter(engine)


def _rows(engine, model):
    with Session(engine) as session:
        return list(session.exec(select(model)).all())


class TestResolve:
    @pytest.mark.parametrize(
        "dataset_id, expected",
        [
            ("sp-traffic", StreamDataset.SP_TRAFFIC),
            ("sp-traffic-v1", StreamDataset.SP_TRAFFIC),
            ("sp-conversion-v2", StreamDataset.SP_CONVERSION),
            ("budget-usage", StreamDataset.BUDGET_USAGE),
            ("ads-campaign-management-campaigns", None),
            ("", None),
        ],
    )
    def test_prefix_resolution(self, dataset_id, expected):
        assert StreamDataset.resolve(dataset_id) == expected


class TestRouting:
    def test_traffic_lands_in_performance(self, router, engine):
        assert router.route_one(_traffic()) == IngestOutcome.ACCEPTED

        [row] = _rows(engine, PerformanceRecord)
        assert row.account_id == "A1"
        assert row.aggregation == "hourly"
        assert row.date == datetime(2024, 6, 9, 12, 0)
        assert row.impressions == 120
        assert row.clicks == 3

    def test_redelivered_record_updates_in_place(self, router, engine):
        router.route_one(_traffic())
        router.route_one(_traffic(clicks=5))

        [row] = _rows(engine, PerformanceRecord)
        assert row.clicks == 5

    def test_conversion_record(self, router, engine):
        record = _traffic(
            dataset_id="sp-conversion",
            idempotency_id="idem-2",
            attributed_conversions_7d=2,
            attributed_sales_7d=39.98,
        )
        for field in ("keyword_text", "match_type", "clicks", "impressions", "cost"):
            record.pop(field)

        assert router.route_one(record) == IngestOutcome.ACCEPTED
        [row] = _rows(engine, PerformanceRecord)
        assert row.conversions == 2
        assert row.sales == pytest.approx(39.98)

    def test_budget_usage_record(self, router, engine):
        assert router.route_one(_budget()) == IngestOutcome.ACCEPTED
        [row] = _rows(engine, BudgetUsage)
        assert row.budget_usage_percentage == pytest.approx(42.5)
        assert row.usage_updated_at == datetime(2024, 6, 9, 12, 15)

    def test_traffic_feeds_has_data(self, router, engine):
        router.route_one(_traffic())
        data_source = SqlPerformanceDataSource(engine)

        assert data_source.has_data("A1", datetime(2024, 6, 9, 12, 0), Aggregation.HOURLY)
        assert not data_source.has_data("A1", datetime(2024, 6, 9, 13, 0), Aggregation.HOURLY)

    def test_hourly_traffic_covers_its_day(self, router, engine):
        router.route_one(_traffic(time_window_start="2024-06-10T05:00:00Z"))
        data_source = SqlPerformanceDataSource(engine)

        assert data_source.has_data("A1", datetime(2024, 6, 10), Aggregation.DAILY) is True
        assert data_source.has_data("A1", datetime(2024, 6, 9), Aggregation.DAILY) is False
        assert data_source.has_data("A2", datetime(2024, 6, 10), Aggregation.DAILY) is False


class TestDeadLetters:
    def test_bad_records_do_not_abort_the_batch(self, router, engine):
        batch = [
            _traffic(),
            _traffic(idempotency_id="idem-9", clicks=-1),
            {"dataset_id": "ads-campaign-management-targets", "target_id": "t1"},
            _budget(),
        ]

        result = router.route(batch)

        assert result.outcomes == [
            IngestOutcome.ACCEPTED,
            IngestOutcome.INVALID,
            IngestOutcome.UNROUTABLE,
            IngestOutcome.ACCEPTED,
        ]
        letters = sorted(_rows(engine, StreamDeadLetter), key=lambda r: r.reason)
        assert [(r.reason, r.dataset_id) for r in letters] == [
            ("invalid", "sp-traffic-v1"),
            ("unknown_dataset", "ads-campaign-management-targets"),
        ]
        assert '"target_id": "t1"' in letters[1].payload_json

    def test_record_without_dataset_id_is_unroutable(self, router):
        assert router.route_one({"foo": "bar"}) == IngestOutcome.UNROUTABLE
        assert router.route_one("not a record") == IngestOutcome.UNROUTABLE

    def test_single_record_payload(self, router):
        result = router.route(_traffic())
        assert result.accepted == 1
