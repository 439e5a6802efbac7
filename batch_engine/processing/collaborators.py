"""
Interfaces of the stores and channels the built-in handlers drive, plus
in-process implementations used for local runs and tests.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Protocol, Union
from uuid import uuid4

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end) in UTC."""
    start: datetime
    end: datetime

    @classmethod
    def day(cls, value: Union[date, datetime, str]) -> "TimeWindow":
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            value = value.date()
        start = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        return cls(start, start + timedelta(days=1))

    def __contains__(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

class RecordStore(Protocol):
    async def bulk_create(self, collection: str, records: list[dict[str, Any]]) -> list[Any]:
        """Upserts records by id; returns the ids written, in input order."""
        ...

    async def update_by_id(self, collection: str, record_id: Any, patch: dict[str, Any]) -> bool:
        """Returns False when no record has this id."""
        ...

    async def delete_by_ids(self, collection: str, ids: list[Any]) -> list[Any]:
        """Returns the ids that existed and were removed."""
        ...

    async def find_by_id(self, collection: str, record_id: Any) -> Optional[dict[str, Any]]:
        ...

class MarketDataSource(Protocol):
    async def aggregate(self, scope_key: str, window: TimeWindow) -> list[dict[str, Any]]:
        """Raw ticks ({timestamp, price, volume}) for one scope inside the window, oldest first."""
        ...

class NotificationChannel(Protocol):
    async def dispatch(self, user_id: Any, channel: str, payload: dict[str, Any]) -> bool:
        ...

    async def schedule(
        self, notification_id: Any, user_id: Any, channels: list[str], payload: dict[str, Any], at: datetime
    ) -> bool:
        ...

    async def cancel_scheduled(self, notification_id: Any) -> bool:
        """Returns False when nothing is scheduled under this id."""
        ...

def _as_utc(value: Any) -> Optional[datetime]:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

class InMemoryRecordStore:
    """Dict-backed RecordStore and MarketDataSource. Ticks live in `market_data`."""

    TICKS_COLLECTION = "market_data"

    def __init__(self, seed: Optional[dict[str, Iterable[dict[str, Any]]]] = None):
        self.collections: dict[str, dict[Any, dict[str, Any]]] = defaultdict(dict)
        for collection, records in (seed or {}).items():
            for record in records:
                self.collections[collection][record["id"]] = dict(record)

    async def bulk_create(self, collection: str, records: list[dict[str, Any]]) -> list[Any]:
        ids = []
        for record in records:
            record = dict(record)
            record.setdefault("id", str(uuid4()))
            self.collections[collection][record["id"]] = record
            ids.append(record["id"])
        return ids

    async def update_by_id(self, collection: str, record_id: Any, patch: dict[str, Any]) -> bool:
        record = self.collections[collection].get(record_id)
        if record is None:
            return False
        record.update(patch)
        return True

    async def delete_by_ids(self, collection: str, ids: list[Any]) -> list[Any]:
        table = self.collections[collection]
        return [record_id for record_id in ids if table.pop(record_id, None) is not None]

    async def find_by_id(self, collection: str, record_id: Any) -> Optional[dict[str, Any]]:
        record = self.collections[collection].get(record_id)
        return dict(record) if record is not None else None

    async def aggregate(self, scope_key: str, window: TimeWindow) -> list[dict[str, Any]]:
        ticks = []
        for record in self.collections[self.TICKS_COLLECTION].values():
            if str(record.get("card_id")) != str(scope_key):
                continue
            moment = _as_utc(record.get("timestamp"))
            if moment is not None and moment in window:
                ticks.append({**record, "timestamp": moment})
        ticks.sort(key=lambda t: t["timestamp"])
        return ticks

    def get(self, collection: str, record_id: Any) -> Optional[dict[str, Any]]:
        return self.collections[collection].get(record_id)

    def count(self, collection: str) -> int:
        return len(self.collections[collection])

class LoggingNotificationChannel:
    """Records and logs dispatches instead of reaching a real mail/push/SMS gateway."""

    def __init__(self):
        self.sent: list[tuple[Any, str, dict[str, Any]]] = []
        self.scheduled: dict[Any, dict[str, Any]] = {}

    async def dispatch(self, user_id: Any, channel: str, payload: dict[str, Any]) -> bool:
        logger.info(f"NOTIFY: user={user_id} channel={channel} payload={payload}")
        self.sent.append((user_id, channel, payload))
        return True

    async def schedule(
        self, notification_id: Any, user_id: Any, channels: list[str], payload: dict[str, Any], at: datetime
    ) -> bool:
        logger.info(f"SCHEDULE: id={notification_id} user={user_id} at={at.isoformat()} channels={channels}")
        self.scheduled[notification_id] = {"user_id": user_id, "channels": channels, "payload": payload, "at": at}
        return True

    async def cancel_scheduled(self, notification_id: Any) -> bool:
        return self.scheduled.pop(notification_id, None) is not None
