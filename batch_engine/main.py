import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from batch_engine.api.v1.admin import router as admin_router
from batch_engine.api.v1.jobs import router as jobs_router
from batch_engine.api.v1.metrics import router as metrics_router
from batch_engine.engine import BatchEngine
from batch_engine.processing.collaborators import InMemoryRecordStore, LoggingNotificationChannel
from batch_engine.processing.handlers import register_builtin_handlers
from batch_engine.scheduler.service import SchedulerService
from batch_engine.settings import settings

logger = logging.getLogger(__name__)

def create_app(engine: Optional[BatchEngine] = None, start_workers: bool = True) -> FastAPI:
    engine = engine or BatchEngine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await engine.init()

        if not len(engine.registry):
            logger.info("No handlers registered; using built-in handlers over in-memory stores")
            register_builtin_handlers(
                engine.registry,
                InMemoryRecordStore(),
                notifications=LoggingNotificationChannel(),
            )

        dispatcher = engine.create_dispatcher()
        scheduler = SchedulerService(engine)
        if start_workers:
            await dispatcher.start()
            await scheduler.start()

        yield

        # Shutdown
        await scheduler.stop()
        await dispatcher.stop(timeout=engine.settings.DEFAULT_LEASE_TIMEOUT_SECONDS)
        await engine.close()

    app = FastAPI(title=engine.settings.PROJECT_NAME, lifespan=lifespan)
    app.state.engine = engine

    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("batch_engine.main:create_app", factory=True, host="0.0.0.0", port=8000)

if __name__ == "__main__":
    run()
