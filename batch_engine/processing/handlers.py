import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from batch_engine.domain.errors import FatalJobError, MalformedPayloadError, UnknownOperationError
from batch_engine.domain.models import BatchPayload, Outcome
from batch_engine.domain.states import JobType
from batch_engine.processing.batch import BatchProcessor
from batch_engine.processing.collaborators import (
    MarketDataSource,
    NotificationChannel,
    RecordStore,
    TimeWindow,
)
from batch_engine.processing.registry import HandlerRegistry, JobHandler

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("cards", "investments", "market_data", "users")
SUMMARY_COLLECTION = "daily_summaries"
DEFAULT_CHANNEL = "websocket"

def _item_id(item: Any) -> Any:
    if isinstance(item, dict):
        if item.get("id") is None:
            raise ValueError("item has no id")
        return item["id"]
    return item

def _with_ids(payload: BatchPayload) -> BatchPayload:
    # Ids fixed at submission keep retried chunks idempotent (upsert by id)
    items = [
        {**item, "id": str(uuid4())} if isinstance(item, dict) and item.get("id") is None else item
        for item in payload.items
    ]
    return payload.model_copy(update={"items": items})

class _OperationHandler(JobHandler):
    operations: tuple[str, ...] = ()
    needs_entity = False
    dict_items = True

    def check(self, payload: BatchPayload) -> None:
        if payload.operation not in self.operations:
            raise UnknownOperationError(self.job_type, payload.operation, self.operations)
        if self.needs_entity and payload.entity not in ENTITY_KINDS:
            raise MalformedPayloadError(
                f"'{self.job_type}' needs an entity out of {', '.join(ENTITY_KINDS)}, got {payload.entity!r}"
            )
        if self.dict_items and any(not isinstance(item, dict) for item in payload.items):
            raise MalformedPayloadError(f"'{self.job_type}' items must be objects")

# --- Entity handlers ---

class EntityCreateHandler(_OperationHandler):
    job_type = JobType.ENTITY_CREATE
    operations = ("create",)
    needs_entity = True

    def __init__(self, store: RecordStore):
        self.store = store

    def prepare(self, payload: BatchPayload) -> BatchPayload:
        return _with_ids(payload)

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        self.check(payload)
        entity = payload.entity

        async def create_chunk(chunk: list[dict[str, Any]]) -> Outcome:
            written = set(await self.store.bulk_create(entity, chunk))
            outcome = Outcome()
            for item in chunk:
                if item.get("id") in written:
                    outcome.record_success(item["id"])
                else:
                    outcome.record_failure(item.get("id"), "record not created")
            return outcome

        return await batcher.process_chunks(payload.items, create_chunk)

class EntityUpdateHandler(_OperationHandler):
    """
    Per item: each item addresses a different record.

    `calculate-returns` only applies to investments: it revalues each
    holding (`quantity`, `purchase_price`, `card_id`) at the current price
    of its card.
    """
    job_type = JobType.ENTITY_UPDATE
    operations = ("update", "activate", "deactivate", "calculate-returns")
    needs_entity = True

    def __init__(self, store: RecordStore):
        self.store = store

    def _patch(self, operation: str, item: dict[str, Any]) -> dict[str, Any]:
        if operation == "activate":
            return {"is_active": True, "deactivated_at": None}
        if operation == "deactivate":
            return {"is_active": False, "deactivated_at": datetime.now(timezone.utc).isoformat()}
        patch = item.get("data")
        if not isinstance(patch, dict):
            raise ValueError("item has no data patch")
        return patch

    async def _returns(self, record_id: Any) -> dict[str, Any]:
        investment = await self.store.find_by_id("investments", record_id)
        card = None
        if investment is not None and investment.get("card_id") is not None:
            card = await self.store.find_by_id("cards", investment["card_id"])
        if card is None:
            raise LookupError(f"investment {record_id} or its card not found")

        quantity = float(investment.get("quantity") or 0)
        current_value = quantity * float(card.get("current_price") or 0)
        total_cost = quantity * float(investment.get("purchase_price") or 0)
        return_amount = current_value - total_cost
        return {
            "current_value": current_value,
            "return_amount": return_amount,
            "return_percentage": (return_amount / total_cost) * 100 if total_cost else None,
            "last_calculated": datetime.now(timezone.utc).isoformat(),
        }

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        self.check(payload)
        entity, operation = payload.entity, payload.operation
        if operation == "calculate-returns" and entity != "investments":
            raise MalformedPayloadError(f"'calculate-returns' applies to investments, not {entity}")

        async def update_item(item: dict[str, Any]) -> None:
            record_id = _item_id(item)
            if operation == "calculate-returns":
                patch = await self._returns(record_id)
            else:
                patch = self._patch(operation, item)
            found = await self.store.update_by_id(entity, record_id, patch)
            if not found:
                raise LookupError(f"{entity} record {record_id} not found")

        return await batcher.process_in_chunks(payload.items, update_item)

class EntityDeleteHandler(_OperationHandler):
    """Per chunk: one delete-many call addresses the whole chunk."""
    job_type = JobType.ENTITY_DELETE
    operations = ("delete",)
    needs_entity = True
    dict_items = False

    def __init__(self, store: RecordStore):
        self.store = store

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        self.check(payload)
        entity = payload.entity

        async def delete_chunk(chunk: list[Any]) -> Outcome:
            ids = []
            outcome = Outcome()
            for item in chunk:
                try:
                    ids.append(_item_id(item))
                except ValueError:
                    continue  # reported by the processor as unaccounted
            deleted = set(await self.store.delete_by_ids(entity, ids))
            for record_id in ids:
                if record_id in deleted:
                    outcome.record_success(record_id)
                else:
                    outcome.record_failure(record_id, f"{entity} record {record_id} not found")
            return outcome

        return await batcher.process_chunks(payload.items, delete_chunk)

# --- Aggregation ---

def summarize_ticks(scope_key: str, window: TimeWindow, ticks: list[dict[str, Any]]) -> dict[str, Any]:
    """Daily summary (OHLC, average, volume, change) from raw ticks, oldest first."""
    prices = [float(t["price"]) for t in ticks]
    volumes = [float(t.get("volume") or 0) for t in ticks]
    open_price, close_price = prices[0], prices[-1]
    change = close_price - open_price
    day = window.start.date().isoformat()
    return {
        "id": f"{scope_key}:{day}",
        "card_id": scope_key,
        "date": day,
        "open_price": open_price,
        "close_price": close_price,
        "high_price": max(prices),
        "low_price": min(prices),
        "average_price": sum(prices) / len(prices),
        "total_volume": sum(volumes),
        "price_change": change,
        "price_change_percent": (change / open_price) * 100 if open_price else None,
        "data_points": len(ticks),
        "last_updated": datetime.now(timezone.utc).isoformat(),
    }

class AggregateHandler(_OperationHandler):
    """
    Turns per-tick market data into one daily summary per (scope, day) item
    and persists the summaries of a chunk with a single write.
    """
    job_type = JobType.AGGREGATE
    operations = ("daily-summary",)

    def __init__(self, source: MarketDataSource, store: RecordStore):
        self.source = source
        self.store = store

    @staticmethod
    def scope_of(item: dict[str, Any]) -> Any:
        return item.get("scope_key", item.get("card_id"))

    @classmethod
    def key(cls, item: dict[str, Any]) -> Any:
        if item.get("id") is not None:
            return item["id"]
        return f"{cls.scope_of(item)}@{item.get('date')}"

    async def _summarize(self, item: dict[str, Any]) -> dict[str, Any]:
        scope = self.scope_of(item)
        if scope is None or item.get("date") is None:
            raise ValueError("item needs scope_key (or card_id) and date")
        window = TimeWindow.day(item["date"])
        ticks = await self.source.aggregate(str(scope), window)
        if not ticks:
            raise LookupError(f"no market data for {scope} on {window.start.date().isoformat()}")
        return summarize_ticks(str(scope), window, ticks)

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        self.check(payload)

        async def aggregate_chunk(chunk: list[dict[str, Any]]) -> Outcome:
            settled = await asyncio.gather(*(self._summarize(item) for item in chunk), return_exceptions=True)
            outcome = Outcome()
            summaries, done = [], []
            for item, res in zip(chunk, settled):
                if isinstance(res, FatalJobError):
                    raise res
                if isinstance(res, BaseException):
                    outcome.record_failure(self.key(item), str(res) or type(res).__name__)
                else:
                    summaries.append(res)
                    done.append(self.key(item))

            # One output per chunk; a failing write aborts the attempt
            if summaries:
                await self.store.bulk_create(SUMMARY_COLLECTION, summaries)
            outcome.success.extend(done)
            return outcome

        return await batcher.process_chunks(payload.items, aggregate_chunk, key=self.key)

# --- Notifications ---

class NotificationHandler(_OperationHandler):
    """
    `send` dispatches right away, `schedule` hands the notification to the
    channel for delivery at `schedule_time`, `cancel` withdraws a scheduled
    one by `notification_id`.
    """
    job_type = JobType.NOTIFICATION_SEND
    operations = ("send", "schedule", "cancel")

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    def prepare(self, payload: BatchPayload) -> BatchPayload:
        if payload.operation == "cancel":
            return payload
        return _with_ids(payload)

    @staticmethod
    def _recipient(item: dict[str, Any]) -> Any:
        user_id = item.get("user_id", item.get("userId"))
        if user_id is None:
            raise ValueError("notification has no user_id")
        return user_id

    @staticmethod
    def _body(item: dict[str, Any]) -> dict[str, Any]:
        body = dict(item.get("payload") or item.get("data") or {})
        if item.get("type"):
            body.setdefault("type", item["type"])
        return body

    @staticmethod
    def _channels(item: dict[str, Any]) -> list[str]:
        return item.get("channels") or [item.get("channel") or DEFAULT_CHANNEL]

    async def _send(self, item: dict[str, Any]) -> None:
        user_id = self._recipient(item)
        rejected = []
        for name in self._channels(item):
            if not await self.channel.dispatch(user_id, name, self._body(item)):
                rejected.append(name)
        if rejected:
            raise RuntimeError(f"dispatch rejected on {', '.join(rejected)}")

    async def _schedule(self, item: dict[str, Any]) -> None:
        user_id = self._recipient(item)
        when = item.get("schedule_time", item.get("scheduleTime"))
        try:
            at = datetime.fromisoformat(when) if isinstance(when, str) else when
        except ValueError:
            at = None
        if not isinstance(at, datetime):
            raise ValueError("notification has no valid schedule_time")
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        if not await self.channel.schedule(item["id"], user_id, self._channels(item), self._body(item), at):
            raise RuntimeError(f"scheduling rejected for {user_id}")

    @staticmethod
    def cancel_key(item: Any) -> Any:
        if isinstance(item, dict):
            return item.get("notification_id", item.get("notificationId"))
        return item

    async def _cancel(self, item: Any) -> None:
        notification_id = self.cancel_key(item)
        if notification_id is None:
            raise ValueError("item has no notification_id")
        if not await self.channel.cancel_scheduled(notification_id):
            raise LookupError(f"no scheduled notification {notification_id}")

    async def process(self, payload: BatchPayload, batcher: BatchProcessor) -> Outcome:
        self.check(payload)

        if payload.operation == "cancel":
            return await batcher.process_in_chunks(payload.items, self._cancel, key=self.cancel_key)
        if payload.operation == "schedule":
            return await batcher.process_in_chunks(payload.items, self._schedule)
        return await batcher.process_in_chunks(payload.items, self._send)

def register_builtin_handlers(
    registry: HandlerRegistry,
    store: RecordStore,
    market_data: Optional[MarketDataSource] = None,
    notifications: Optional[NotificationChannel] = None,
) -> HandlerRegistry:
    registry.register(JobType.ENTITY_CREATE, EntityCreateHandler(store))
    registry.register(JobType.ENTITY_UPDATE, EntityUpdateHandler(store))
    registry.register(JobType.ENTITY_DELETE, EntityDeleteHandler(store))

    source = market_data if market_data is not None else store
    if hasattr(source, "aggregate"):
        registry.register(JobType.AGGREGATE, AggregateHandler(source, store))
    else:
        logger.warning("No market data source; 'aggregate' jobs will be rejected")

    if notifications is not None:
        registry.register(JobType.NOTIFICATION_SEND, NotificationHandler(notifications))

    return registry
