from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from journeys.core.logging import configure_logging
from journeys.services.scheduler import start_scheduler_task
from journeys.models import automation, enrollment, execution_log, trigger_event  # noqa: F401
from journeys.routers.auth import router as auth_router
from journeys.routers.automations import router as automations_router
from journeys.routers.enrollments import router as enrollments_router
from journeys.routers.events import router as events_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    task = start_scheduler_task()
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                # scheduler crash during shutdown; already logged.
                pass


app = FastAPI(
    title="Contact Journeys",
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception("Unhandled exception")
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(auth_router)
app.include_router(automations_router)
app.include_router(enrollments_router)
app.include_router(events_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": "1.0.0",
    }
