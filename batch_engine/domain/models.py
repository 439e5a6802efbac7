from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from batch_engine.domain.states import JobStatus, Priority

DEFAULT_CHUNK_SIZE = 100

def resolve_chunk_size(value: Any, default: int = DEFAULT_CHUNK_SIZE) -> int:
    """Positive integers pass through; anything else falls back to the default."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return default
    return value

# --- Submission payload ---

class JobOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chunk_size: Optional[Any] = Field(default=None, alias="chunkSize")
    max_attempts: Optional[int] = Field(default=None, ge=1, alias="maxAttempts")
    priority: Priority = Priority.NORMAL
    delay_seconds: Optional[float] = Field(default=None, ge=0, alias="delay")
    timeout_seconds: Optional[float] = Field(default=None, gt=0, alias="timeout")

class BatchPayload(BaseModel):
    # Handlers may read extra top-level keys (e.g. "window" for aggregates)
    model_config = ConfigDict(extra="allow")

    operation: str
    items: list[Any] = Field(default_factory=list)
    entity: Optional[str] = None
    options: JobOptions = Field(default_factory=JobOptions)

# --- Outcomes ---

@dataclass
class ItemFailure:
    item_id: Any
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"item_id": self.item_id, "reason": self.reason}

@dataclass
class Outcome:
    success: list[Any] = field(default_factory=list)
    failed: list[ItemFailure] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.success) + len(self.failed)

    def record_success(self, item_id: Any) -> None:
        self.success.append(item_id)

    def record_failure(self, item_id: Any, reason: str) -> None:
        self.failed.append(ItemFailure(item_id, reason))

    def extend(self, other: "Outcome") -> None:
        self.success.extend(other.success)
        self.failed.extend(other.failed)

    def reported_ids(self) -> set:
        return set(self.success) | {f.item_id for f in self.failed}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": list(self.success),
            "failed": [f.to_dict() for f in self.failed],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Outcome":
        if not data:
            return cls()
        return cls(
            success=list(data.get("success", [])),
            failed=[ItemFailure(f.get("item_id"), f.get("reason", "")) for f in data.get("failed", [])],
        )

# --- Views ---

@dataclass
class ClaimedJob:
    """Detached snapshot of a job handed to a worker."""
    id: UUID
    type: str
    payload: dict[str, Any]
    chunk_size: int
    attempts: int
    max_attempts: int
    lease_token: UUID
    timeout_seconds: Optional[float] = None
    started_at: Optional[datetime] = None
    available_at: Optional[datetime] = None

class JobView(BaseModel):
    id: UUID
    type: str
    status: JobStatus
    priority: int
    progress: int
    attempts: int
    max_attempts: int
    chunk_size: int
    result: Optional[dict[str, Any]] = None
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class JobEventView(BaseModel):
    event_type: str
    timestamp: datetime
    meta: dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(from_attributes=True)

class QueueStats(BaseModel):
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0

@dataclass
class CleanupReport:
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.cancelled
