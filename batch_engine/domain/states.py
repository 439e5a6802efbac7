from enum import StrEnum, auto

class JobStatus(StrEnum):
    QUEUED = auto()       # Waiting in the queue (or for its backoff to elapse)
    ACTIVE = auto()       # Claimed by a worker
    COMPLETED = auto()    # Handler returned; item failures live in result.failed
    FAILED = auto()       # Attempts exhausted or non-retryable error
    CANCELLED = auto()    # User cancelled

TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.QUEUED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]

class JobEvent(StrEnum):
    CREATED = auto()
    REJECTED = auto()
    CLAIMED = auto()
    COMPLETED = auto()
    RETRIED = auto()
    FAILED = auto()
    CANCELLED = auto()
    REAPED = auto()

class JobType(StrEnum):
    ENTITY_CREATE = "entity.create"
    ENTITY_UPDATE = "entity.update"
    ENTITY_DELETE = "entity.delete"
    AGGREGATE = "aggregate"
    NOTIFICATION_SEND = "notification.send"

class Priority(StrEnum):
    LOW = auto()
    NORMAL = auto()
    HIGH = auto()
    CRITICAL = auto()

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}
