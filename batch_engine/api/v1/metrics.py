from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_BY_STATUS = Gauge('batch_jobs', 'Number of jobs per status', ['status'])
JOB_SUBMITTED_TOTAL = Counter('batch_jobs_submitted_total', 'Total job submissions', ['type'])
JOB_ATTEMPTS_TOTAL = Counter('batch_job_attempts_total', 'Total dispatch attempts', ['type'])
JOB_FAILURES = Counter('batch_job_failures_total', 'Total attempt-level failures', ['type', 'kind']) # kind=retryable|final
JOB_FINISHED_TOTAL = Counter('batch_job_finished_total', 'Jobs reaching a terminal state', ['type', 'result'])
JOB_START_DELAY = Histogram('batch_job_start_delay_seconds', 'Time from eligibility to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])
QUEUE_DEPTH = Gauge('batch_queue_depth', 'Queue entries waiting to be claimed, including delayed ones')

JOB_DURATION = Histogram('batch_job_duration_seconds', 'Time from claim to completion', buckets=[0.1, 1.0, 5.0, 10.0, 60.0, 120.0, 600.0])

ITEM_OUTCOMES = Counter(
    "batch_item_outcomes_total",
    "Per-item outcomes recorded by completed attempts",
    ["type", "outcome"] # success vs failed
)

REAPER_RECOVERED_JOBS = Counter(
    "batch_reaper_recovered_jobs_total",
    "Total number of jobs recovered from expired leases"
)

CLEANUP_REMOVED_JOBS = Counter(
    "batch_cleanup_removed_jobs_total",
    "Terminal jobs pruned by cleanup",
    ["status"]
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
