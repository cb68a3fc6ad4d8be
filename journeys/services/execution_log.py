"""Append-only ledger of step attempts.

Effect steps write ``pending`` before anything happens, move to
``executing`` right before calling the collaborator, and are finalized in
the same transaction as the enrollment transition that follows. An entry
left ``pending`` or ``executing`` therefore marks a step whose worker died;
``resolve_stale`` decides what that means on the next claim.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from journeys.models.enrollment import Enrollment
from journeys.models.execution_log import OPEN_LOG_STATUSES, ExecutionLogEntry
from journeys.services.collaborators import SupportsDeliveryLookup
from journeys.services.errors import UnknownOutcomeError

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def _clip(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = str(text)
    return text if len(text) <= MAX_ERROR_LENGTH else text[:MAX_ERROR_LENGTH]


def idempotency_key_for(enrollment: Enrollment, entry_id: int) -> str:
    return f"journey:{enrollment.id}:log:{entry_id}"


def begin(
    db: Session,
    enrollment: Enrollment,
    *,
    step_id: str,
    step_type: str,
    now: datetime,
    input: Optional[dict] = None,
    idempotency_key: Optional[str] = None,
    is_recovery: bool = False,
) -> ExecutionLogEntry:
    entry = ExecutionLogEntry(
        automation_id=enrollment.automation_id,
        enrollment_id=enrollment.id,
        contact_id=enrollment.contact_id,
        step_id=step_id,
        step_type=step_type,
        status="pending",
        attempts=0,
        is_recovery=bool(is_recovery),
        input=input,
        executed_at=now,
    )
    db.add(entry)
    db.flush()
    entry.idempotency_key = idempotency_key or idempotency_key_for(enrollment, entry.id)
    db.flush()
    return entry


def mark_executing(db: Session, entry: ExecutionLogEntry) -> None:
    if entry.status != "pending":
        raise ValueError(f"log entry {entry.id} is {entry.status}, expected pending")
    entry.status = "executing"
    db.flush()


def finalize(
    db: Session,
    entry: ExecutionLogEntry,
    *,
    status: str,
    now: datetime,
    output: Optional[dict] = None,
    error: Optional[str] = None,
    attempts: Optional[int] = None,
) -> None:
    if status not in ("completed", "failed", "skipped"):
        raise ValueError(f"invalid final status {status!r}")
    if entry.status not in OPEN_LOG_STATUSES:
        raise ValueError(f"log entry {entry.id} already finalized as {entry.status}")
    entry.status = status
    entry.output = output
    entry.error = _clip(error)
    entry.finalized_at = now
    if attempts is not None:
        entry.attempts = int(attempts)
    db.flush()


def record(
    db: Session,
    enrollment: Enrollment,
    *,
    step_id: str,
    step_type: str,
    status: str,
    now: datetime,
    input: Optional[dict] = None,
    output: Optional[dict] = None,
    error: Optional[str] = None,
    is_recovery: bool = False,
) -> ExecutionLogEntry:
    """Single-shot entry for steps without external side effects."""
    entry = begin(
        db,
        enrollment,
        step_id=step_id,
        step_type=step_type,
        now=now,
        input=input,
        is_recovery=is_recovery,
    )
    finalize(db, entry, status=status, now=now, output=output, error=error, attempts=1)
    return entry


def latest_open_entry(db: Session, enrollment_id: str) -> Optional[ExecutionLogEntry]:
    return (
        db.query(ExecutionLogEntry)
        .filter(
            ExecutionLogEntry.enrollment_id == enrollment_id,
            ExecutionLogEntry.status.in_(OPEN_LOG_STATUSES),
        )
        .order_by(ExecutionLogEntry.id.desc())
        .first()
    )


def history(db: Session, enrollment_id: str, *, limit: int = 500) -> list[ExecutionLogEntry]:
    return (
        db.query(ExecutionLogEntry)
        .filter(ExecutionLogEntry.enrollment_id == enrollment_id)
        .order_by(ExecutionLogEntry.id.asc())
        .limit(int(limit))
        .all()
    )


def for_automation(
    db: Session, automation_id: str, *, contact_id: Optional[str] = None, limit: int = 100
) -> list[ExecutionLogEntry]:
    """Most recent entries first, across every enrollment of an automation."""
    q = db.query(ExecutionLogEntry).filter(ExecutionLogEntry.automation_id == automation_id)
    if contact_id is not None:
        q = q.filter(ExecutionLogEntry.contact_id == str(contact_id))
    return q.order_by(ExecutionLogEntry.id.desc()).limit(int(limit)).all()


def count_failed(db: Session, automation_id: str) -> int:
    return int(
        db.query(ExecutionLogEntry)
        .filter(ExecutionLogEntry.automation_id == automation_id, ExecutionLogEntry.status == "failed")
        .count()
    )


def lookup_prior_delivery(entry: ExecutionLogEntry, collaborator) -> Optional[dict]:
    """Ask the collaborator whether a stuck entry's effect already happened.

    Returns the delivery record, or None when the collaborator confirms
    nothing was delivered under the entry's key. Raises UnknownOutcomeError
    when the collaborator has no way to tell.
    """
    if collaborator is None or not isinstance(collaborator, SupportsDeliveryLookup):
        raise UnknownOutcomeError(
            f"step {entry.step_id} was in flight and {type(collaborator).__name__} has no delivery lookup",
            log_entry_id=entry.id,
            idempotency_key=entry.idempotency_key,
        )

    found = collaborator.find_delivery(entry.idempotency_key)
    return None if not found else dict(found)
