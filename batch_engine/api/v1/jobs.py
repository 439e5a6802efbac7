from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from batch_engine.api.deps import EngineDep
from batch_engine.domain.errors import AlreadyTerminalError, JobNotFoundError, MalformedPayloadError
from batch_engine.domain.models import JobEventView, JobView, QueueStats
from batch_engine.domain.states import JobStatus

router = APIRouter()

class JobCreate(BaseModel):
    type: str
    payload: dict[str, Any]
    options: Optional[dict[str, Any]] = None

class JobCreated(BaseModel):
    id: UUID
    status: JobStatus

class JobEvents(BaseModel):
    job_id: UUID
    events: list[JobEventView] = Field(default_factory=list)

@router.post("", response_model=JobCreated, status_code=status.HTTP_201_CREATED)
async def create_job(body: JobCreate, engine: EngineDep):
    try:
        job_id = await engine.submit(body.type, body.payload, body.options)
    except MalformedPayloadError as e:
        raise HTTPException(status_code=422, detail=str(e))

    view = await engine.get_status(job_id)
    return JobCreated(id=view.id, status=view.status)

@router.get("", response_model=list[JobView])
async def list_jobs(
    engine: EngineDep,
    job_status: Optional[JobStatus] = Query(default=None, alias="status"),
    job_type: Optional[str] = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    return await engine.list_jobs(status=job_status, job_type=job_type, limit=limit, offset=offset)

@router.get("/stats", response_model=QueueStats)
async def queue_stats(engine: EngineDep):
    return await engine.get_stats()

@router.get("/{job_id}", response_model=JobView)
async def get_job(job_id: UUID, engine: EngineDep):
    try:
        return await engine.get_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

@router.get("/{job_id}/events", response_model=JobEvents)
async def get_job_events(job_id: UUID, engine: EngineDep):
    try:
        events = await engine.get_events(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobEvents(job_id=job_id, events=events)

@router.post("/{job_id}/cancel", response_model=JobView)
async def cancel_job(job_id: UUID, engine: EngineDep):
    try:
        return await engine.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except AlreadyTerminalError as e:
        raise HTTPException(status_code=409, detail=str(e))
