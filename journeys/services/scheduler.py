import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import DBAPIError, OperationalError

from journeys import database
from journeys.core.clock import as_utc, utcnow
from journeys.core.config import Settings, load_settings
from journeys.database import SessionLocal
from journeys.services import enrollment_store as store
from journeys.services.collaborators import Collaborators, default_collaborators
from journeys.services.errors import ClaimConflictError
from journeys.services.step_executor import RunResult, StepExecutor
from journeys.services.trigger_dispatcher import process_trigger_inbox

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    inbox_processed: int = 0
    inbox_failed: int = 0
    candidates: int = 0
    claimed: int = 0
    conflicts: int = 0
    completed: int = 0
    failed: int = 0
    exited: int = 0
    parked: int = 0
    yielded: int = 0
    errors: int = 0
    enrollment_ids: list[str] = field(default_factory=list)

    def add(self, run: RunResult) -> None:
        if run.claim_lost:
            self.conflicts += 1
        elif run.parked:
            self.parked += 1
        elif run.yielded:
            self.yielded += 1
        elif run.status == "completed":
            self.completed += 1
        elif run.status == "failed":
            self.failed += 1
        elif run.status == "exited":
            self.exited += 1


def _run_claimed(executor: StepExecutor, enrollment_id: str, token: str) -> Optional[RunResult]:
    try:
        return executor.run(enrollment_id, token)
    except Exception:
        # The claim expires on its own and the enrollment is picked up again.
        logger.exception(
            "Enrollment processing failed",
            extra={"component": "scheduler", "enrollment_id": enrollment_id},
        )
        return None


def run_tick(
    *,
    now: Optional[datetime] = None,
    collaborators: Optional[Collaborators] = None,
    settings: Optional[Settings] = None,
    executor: Optional[StepExecutor] = None,
    max_workers: Optional[int] = None,
    batch_size: Optional[int] = None,
    drain_inbox: bool = True,
) -> TickResult:
    """One scheduler pass: drain the trigger inbox, then claim and run ready enrollments."""
    settings = settings or load_settings()
    now = as_utc(now) if now is not None else utcnow()
    if executor is None:
        executor = StepExecutor(
            collaborators or default_collaborators(webhook_timeout_seconds=settings.webhook_timeout_seconds),
            settings=settings,
            clock=lambda: now,
        )
    workers = settings.max_workers if max_workers is None else int(max_workers)
    limit = settings.batch_size if batch_size is None else int(batch_size)

    result = TickResult()

    if drain_inbox:
        inbox = process_trigger_inbox(
            now=now,
            batch_size=settings.inbox_batch_size,
            max_retries=settings.inbox_max_retries,
        )
        result.inbox_processed = inbox.processed
        result.inbox_failed = inbox.failed

    claimed: list[tuple[str, str]] = []
    db = SessionLocal()
    try:
        candidates = store.find_ready(db, now=now, limit=limit)
        result.candidates = len(candidates)
        for candidate in candidates:
            try:
                token = store.claim(db, candidate, now=now, ttl_seconds=settings.claim_ttl_seconds)
                db.commit()
            except ClaimConflictError:
                db.rollback()
                result.conflicts += 1
                continue
            claimed.append((candidate.id, token))
    finally:
        db.close()

    result.claimed = len(claimed)
    result.enrollment_ids = [enrollment_id for enrollment_id, _ in claimed]

    if workers <= 1:
        runs = [_run_claimed(executor, enrollment_id, token) for enrollment_id, token in claimed]
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="journey-step") as pool:
            runs = list(pool.map(lambda pair: _run_claimed(executor, *pair), claimed))

    for run in runs:
        if run is None:
            result.errors += 1
        else:
            result.add(run)

    if result.claimed or result.inbox_processed or result.inbox_failed:
        logger.info(
            "Scheduler tick finished",
            extra={
                "component": "scheduler",
                "claimed": result.claimed,
                "conflicts": result.conflicts,
                "completed": result.completed,
                "failed": result.failed,
                "parked": result.parked,
                "errors": result.errors,
                "inbox_processed": result.inbox_processed,
            },
        )
    return result


def scheduler_enabled(settings: Optional[Settings] = None) -> bool:
    # Disabled under pytest to keep tests deterministic.
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    settings = settings or load_settings()
    return settings.scheduler_enabled


async def scheduler_loop(*, settings: Optional[Settings] = None, collaborators: Optional[Collaborators] = None) -> None:
    """Run ticks forever. Never lets a database outage crash the server."""
    settings = settings or load_settings()
    collaborators = collaborators or default_collaborators(webhook_timeout_seconds=settings.webhook_timeout_seconds)
    executor = StepExecutor(collaborators, settings=settings)

    logger.info(
        "Scheduler started",
        extra={
            "component": "scheduler",
            "tick_seconds": float(settings.tick_seconds),
            "batch_size": int(settings.batch_size),
            "max_workers": int(settings.max_workers),
        },
    )

    while True:
        try:
            await asyncio.to_thread(run_tick, settings=settings, executor=executor)

        except asyncio.CancelledError:
            logger.info("Scheduler cancelled; shutting down")
            raise

        except (OperationalError, DBAPIError):
            logger.exception("Scheduler tick failed", extra={"component": "scheduler", "reason": "dbapi_error"})
            # Drop pooled connections so the next tick reconnects.
            try:
                if database.engine is not None:
                    database.engine.dispose()
            except Exception:
                logger.debug("Engine dispose failed", exc_info=True)

        except Exception:
            logger.exception("Scheduler tick failed", extra={"component": "scheduler", "reason": "unexpected"})

        await asyncio.sleep(settings.tick_seconds)


def start_scheduler_task(*, collaborators: Optional[Collaborators] = None) -> asyncio.Task | None:
    settings = load_settings()
    if not scheduler_enabled(settings):
        logger.info("Scheduler disabled")
        return None
    return asyncio.create_task(scheduler_loop(settings=settings, collaborators=collaborators))
