from batch_engine.domain.errors import (
    AlreadyTerminalError,
    FatalJobError,
    JobNotFoundError,
    MalformedPayloadError,
)
from batch_engine.domain.models import Outcome
from batch_engine.domain.states import JobStatus, JobType, Priority
from batch_engine.engine import BatchEngine
from batch_engine.processing.batch import BatchProcessor
from batch_engine.processing.registry import HandlerRegistry, JobHandler
from batch_engine.settings import Settings

__all__ = [
    "AlreadyTerminalError",
    "BatchEngine",
    "BatchProcessor",
    "FatalJobError",
    "HandlerRegistry",
    "JobHandler",
    "JobNotFoundError",
    "JobStatus",
    "JobType",
    "MalformedPayloadError",
    "Outcome",
    "Priority",
    "Settings",
]
