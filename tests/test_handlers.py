from datetime import datetime, timezone

import pytest

from batch_engine.domain.errors import MalformedPayloadError, UnknownOperationError
from batch_engine.domain.models import BatchPayload
from batch_engine.processing.batch import BatchProcessor
from batch_engine.processing.collaborators import InMemoryRecordStore, LoggingNotificationChannel, TimeWindow
from batch_engine.processing.handlers import (
    AggregateHandler,
    EntityCreateHandler,
    EntityDeleteHandler,
    EntityUpdateHandler,
    NotificationHandler,
    summarize_ticks,
)

def payload(**kwargs) -> BatchPayload:
    return BatchPayload.model_validate(kwargs)

class CountingStore(InMemoryRecordStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.bulk_calls = []

    async def bulk_create(self, collection, records):
        self.bulk_calls.append((collection, len(records)))
        return await super().bulk_create(collection, records)

class RejectingChannel(LoggingNotificationChannel):
    async def dispatch(self, user_id, channel, payload):
        if channel == "sms":
            return False
        return await super().dispatch(user_id, channel, payload)

async def test_create_assigns_ids_once_and_is_idempotent():
    store = InMemoryRecordStore()
    handler = EntityCreateHandler(store)
    prepared = handler.prepare(payload(operation="create", entity="cards", items=[{"name": "a"}, {"name": "b"}]))

    ids = [item["id"] for item in prepared.items]
    assert all(ids)

    first = await handler.process(prepared, BatchProcessor(chunk_size=1))
    second = await handler.process(prepared, BatchProcessor(chunk_size=1))

    assert first.success == ids == second.success
    assert store.count("cards") == 2

async def test_create_keeps_given_ids():
    handler = EntityCreateHandler(InMemoryRecordStore())
    prepared = handler.prepare(payload(operation="create", entity="users", items=[{"id": "u1"}]))
    assert prepared.items == [{"id": "u1"}]

async def test_update_reports_missing_records():
    store = InMemoryRecordStore(seed={"cards": [{"id": "c1", "name": "old"}]})
    handler = EntityUpdateHandler(store)

    outcome = await handler.process(
        payload(operation="update", entity="cards", items=[
            {"id": "c1", "data": {"name": "new"}},
            {"id": "c404", "data": {"name": "x"}},
        ]),
        BatchProcessor(),
    )

    assert outcome.success == ["c1"]
    assert outcome.failed[0].item_id == "c404"
    assert "not found" in outcome.failed[0].reason
    assert store.get("cards", "c1")["name"] == "new"

async def test_activate_and_deactivate():
    store = InMemoryRecordStore(seed={"cards": [{"id": "c1", "is_active": True}]})
    handler = EntityUpdateHandler(store)

    await handler.process(payload(operation="deactivate", entity="cards", items=[{"id": "c1"}]), BatchProcessor())
    assert store.get("cards", "c1")["is_active"] is False
    assert store.get("cards", "c1")["deactivated_at"]

    await handler.process(payload(operation="activate", entity="cards", items=[{"id": "c1"}]), BatchProcessor())
    assert store.get("cards", "c1")["is_active"] is True

async def test_update_without_patch_fails_item():
    store = InMemoryRecordStore(seed={"cards": [{"id": "c1"}]})
    outcome = await EntityUpdateHandler(store).process(
        payload(operation="update", entity="cards", items=[{"id": "c1"}]), BatchProcessor()
    )
    assert outcome.failed[0].reason == "item has no data patch"

async def test_delete_by_chunk():
    store = InMemoryRecordStore(seed={"investments": [{"id": "i1"}, {"id": "i2"}]})
    outcome = await EntityDeleteHandler(store).process(
        payload(operation="delete", entity="investments", items=["i1", {"id": "i2"}, "i3"]),
        BatchProcessor(chunk_size=2),
    )

    assert outcome.success == ["i1", "i2"]
    assert [f.item_id for f in outcome.failed] == ["i3"]
    assert store.count("investments") == 0

async def test_unknown_operation_is_malformed():
    with pytest.raises(UnknownOperationError):
        await EntityUpdateHandler(InMemoryRecordStore()).process(
            payload(operation="explode", entity="cards", items=[{"id": "c1"}]), BatchProcessor()
        )

async def test_missing_entity_is_malformed():
    with pytest.raises(MalformedPayloadError):
        await EntityCreateHandler(InMemoryRecordStore()).process(
            payload(operation="create", items=[{"name": "x"}]), BatchProcessor()
        )

def test_summarize_ticks():
    window = TimeWindow.day("2024-03-01")
    ticks = [
        {"price": 10.0, "volume": 5},
        {"price": 12.0, "volume": 1},
        {"price": 8.0, "volume": 2},
        {"price": 11.0, "volume": 2},
    ]

    summary = summarize_ticks("card-1", window, ticks)

    assert summary["id"] == "card-1:2024-03-01"
    assert summary["open_price"] == 10.0
    assert summary["close_price"] == 11.0
    assert summary["high_price"] == 12.0
    assert summary["low_price"] == 8.0
    assert summary["average_price"] == pytest.approx(10.25)
    assert summary["total_volume"] == 10.0
    assert summary["price_change"] == 1.0
    assert summary["price_change_percent"] == pytest.approx(10.0)
    assert summary["data_points"] == 4

async def test_aggregate_writes_one_output_per_chunk():
    ticks = [
        {"id": f"t{i}", "card_id": card, "timestamp": datetime(2024, 3, 1, 9 + i, tzinfo=timezone.utc), "price": 10 + i}
        for i, card in enumerate(["c1", "c1", "c2"])
    ]
    store = CountingStore(seed={"market_data": ticks})
    handler = AggregateHandler(store, store)

    outcome = await handler.process(
        payload(operation="daily-summary", items=[
            {"card_id": "c1", "date": "2024-03-01"},
            {"card_id": "c2", "date": "2024-03-01"},
            {"card_id": "c3", "date": "2024-03-01"},
        ]),
        BatchProcessor(chunk_size=2),
    )

    assert outcome.success == ["c1@2024-03-01", "c2@2024-03-01"]
    assert outcome.failed[0].item_id == "c3@2024-03-01"
    assert "no market data" in outcome.failed[0].reason
    assert store.bulk_calls == [("daily_summaries", 2)]
    assert store.get("daily_summaries", "c1:2024-03-01")["data_points"] == 2

async def test_notification_channel_rejection_fails_item():
    channel = RejectingChannel()
    handler = NotificationHandler(channel)
    prepared = handler.prepare(payload(operation="send", items=[
        {"user_id": "u1", "channels": ["websocket", "email"], "payload": {"title": "hi"}},
        {"user_id": "u2", "channels": ["sms"]},
        {"payload": {"title": "nobody"}},
    ]))

    outcome = await handler.process(prepared, BatchProcessor())

    assert len(outcome.success) == 1
    reasons = sorted(f.reason for f in outcome.failed)
    assert reasons == ["dispatch rejected on sms", "notification has no user_id"]
    assert [(u, c) for u, c, _ in channel.sent] == [("u1", "websocket"), ("u1", "email")]

async def test_calculate_returns_revalues_investments():
    store = InMemoryRecordStore(seed={
        "cards": [{"id": "c1", "current_price": 15.0}],
        "investments": [
            {"id": "i1", "card_id": "c1", "quantity": 4, "purchase_price": 10.0},
            {"id": "i2", "card_id": "gone", "quantity": 1, "purchase_price": 10.0},
        ],
    })

    outcome = await EntityUpdateHandler(store).process(
        payload(operation="calculate-returns", entity="investments", items=[{"id": "i1"}, {"id": "i2"}, {"id": "i3"}]),
        BatchProcessor(),
    )

    assert outcome.success == ["i1"]
    assert [f.item_id for f in outcome.failed] == ["i2", "i3"]
    assert all("or its card not found" in f.reason for f in outcome.failed)

    revalued = store.get("investments", "i1")
    assert revalued["current_value"] == 60.0
    assert revalued["return_amount"] == 20.0
    assert revalued["return_percentage"] == pytest.approx(50.0)
    assert revalued["last_calculated"]

async def test_calculate_returns_only_for_investments():
    with pytest.raises(MalformedPayloadError):
        await EntityUpdateHandler(InMemoryRecordStore()).process(
            payload(operation="calculate-returns", entity="cards", items=[{"id": "c1"}]), BatchProcessor()
        )

async def test_schedule_then_cancel_notifications():
    channel = LoggingNotificationChannel()
    handler = NotificationHandler(channel)

    scheduled = handler.prepare(payload(operation="schedule", items=[
        {"user_id": "u1", "type": "price_alert", "schedule_time": "2024-03-01T09:00:00", "channels": ["email"]},
        {"user_id": "u2"},
    ]))
    outcome = await handler.process(scheduled, BatchProcessor())

    notification_id = scheduled.items[0]["id"]
    assert outcome.success == [notification_id]
    assert outcome.failed[0].reason == "notification has no valid schedule_time"
    entry = channel.scheduled[notification_id]
    assert entry["at"] == datetime(2024, 3, 1, 9, tzinfo=timezone.utc)
    assert entry["payload"] == {"type": "price_alert"}
    assert channel.sent == []

    cancel = handler.prepare(payload(operation="cancel", items=[
        {"notification_id": notification_id},
        {"notification_id": "unknown"},
    ]))
    outcome = await handler.process(cancel, BatchProcessor())

    assert outcome.success == [notification_id]
    assert outcome.failed[0].item_id == "unknown"
    assert channel.scheduled == {}
