"""Tests for fire-and-forget event broadcasting."""

import asyncio
import json
from datetime import datetime

import pytest

from app.events.publisher import EventPublisher, Subscriber
from app.models.report_models import (
    AccountEvent,
    Aggregation,
    DatasetStatus,
    EntityType,
    EventType,
    LifecycleEvent,
    ReportDatasetMetadata,
)


class ListSubscriber(Subscriber):
    def __init__(self, outbox_size: int = 8, fail: bool = False):
        super().__init__(outbox_size)
        self.sent = []
        self.fail = fail

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(message))


def _event(status=DatasetStatus.FETCHING) -> LifecycleEvent:
    row = ReportDatasetMetadata(
        account_id="A1",
        country_code="US",
        window_start=datetime(2024, 6, 9, 12, 0),
        aggregation=Aggregation.HOURLY,
        entity_type=EntityType.TARGET,
        status=status,
        report_id="rep-1",
        error=None,
    )
    return LifecycleEvent.from_row(row)


class TestPublish:
    def test_no_subscribers_is_fine(self):
        assert EventPublisher().publish(_event()) == 0

    def test_message_is_camel_case_json_with_timestamp(self):
        publisher = EventPublisher()
        subscriber = ListSubscriber()
        publisher.subscribe(subscriber)

        assert publisher.publish(_event()) == 1

        message = json.loads(subscriber.outbox.get_nowait())
        assert message["type"] == EventType.METADATA_UPDATED.value
        assert message["accountId"] == "A1"
        assert message["countryCode"] == "US"
        assert message["windowStart"] == "2024-06-09T12:00:00"
        assert message["aggregation"] == "hourly"
        assert message["entityType"] == "target"
        assert message["status"] == "fetching"
        assert "timestamp" in message

    def test_account_event(self):
        publisher = EventPublisher()
        subscriber = ListSubscriber()
        publisher.subscribe(subscriber)

        publisher.publish(AccountEvent(type=EventType.REPORTS_REFRESHED, account_id="A1", country_code="US"))

        message = json.loads(subscriber.outbox.get_nowait())
        assert message["type"] == "reports:refreshed"
        assert message["accountId"] == "A1"

    def test_full_outbox_drops_only_that_subscriber(self):
        publisher = EventPublisher()
        slow, healthy = ListSubscriber(outbox_size=1), ListSubscriber(outbox_size=8)
        publisher.subscribe(slow)
        publisher.subscribe(healthy)

        publisher.publish(_event())
        delivered = publisher.publish(_event(DatasetStatus.COMPLETED))

        assert delivered == 1
        assert slow.closed is True
        assert publisher.subscriber_count == 1
        assert healthy.outbox.qsize() == 2

    def test_closed_subscriber_is_not_added(self):
        publisher = EventPublisher()
        subscriber = ListSubscriber()
        subscriber.close()
        publisher.subscribe(subscriber)
        assert publisher.subscriber_count == 0


class TestDelivery:
    @pytest.mark.asyncio
    async def test_pump_sends_in_order(self):
        publisher = EventPublisher()
        subscriber = ListSubscriber()
        publisher.subscribe(subscriber)
        pump = asyncio.create_task(subscriber.pump())

        publisher.publish(_event(DatasetStatus.FETCHING))
        publisher.publish(_event(DatasetStatus.COMPLETED))
        await asyncio.sleep(0.01)
        pump.cancel()

        assert [m["status"] for m in subscriber.sent] == ["fetching", "completed"]

    @pytest.mark.asyncio
    async def test_failed_send_closes_and_sweep_prunes(self):
        publisher = EventPublisher()
        subscriber = ListSubscriber(fail=True)
        publisher.subscribe(subscriber)
        pump = asyncio.create_task(subscriber.pump())

        publisher.publish(_event())
        await asyncio.sleep(0.01)

        assert subscriber.closed is True
        assert publisher.sweep() == 1
        assert publisher.subscriber_count == 0
        pump.cancel()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        publisher = EventPublisher(sweep_seconds=0.01)
        subscriber = ListSubscriber()
        publisher.subscribe(subscriber)

        publisher.start()
        subscriber.close()
        await asyncio.sleep(0.05)
        assert publisher.subscriber_count == 0

        await publisher.stop()
        assert publisher._sweeper is None
