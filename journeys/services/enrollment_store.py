"""Durable enrollment state and the claim protocol.

Every write to an enrollment after creation is a conditional UPDATE. Claims
are taken against the ``lock_version`` read with the candidate row, so two
workers that read the same row can't both win. All later writes are guarded
by the claim token; a worker whose claim was taken over gets ClaimLostError
and must drop the enrollment.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from journeys.models.automation import Automation
from journeys.models.enrollment import Enrollment
from journeys.services.errors import ClaimConflictError, ClaimLostError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadyEnrollment:
    id: str
    lock_version: int


def _ready_filter(now: datetime):
    return (
        Enrollment.status == "active",
        or_(Enrollment.wait_until.is_(None), Enrollment.wait_until <= now),
        or_(Enrollment.claim_token.is_(None), Enrollment.claim_expires_at <= now),
    )


def find_ready(db: Session, *, now: datetime, limit: int = 100) -> list[ReadyEnrollment]:
    rows = (
        db.query(Enrollment.id, Enrollment.lock_version)
        .filter(*_ready_filter(now))
        .order_by(func.coalesce(Enrollment.wait_until, Enrollment.started_at).asc(), Enrollment.id.asc())
        .limit(int(limit))
        .all()
    )
    return [ReadyEnrollment(id=r.id, lock_version=int(r.lock_version)) for r in rows]


def claim(db: Session, candidate: ReadyEnrollment, *, now: datetime, ttl_seconds: int) -> str:
    """Take the claim on a candidate row. Caller commits.

    Succeeds only if the row is still in the state it was read in
    (same lock_version, still active, unclaimed or claim expired).
    """
    token = str(uuid.uuid4())
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == candidate.id,
            Enrollment.lock_version == candidate.lock_version,
            *_ready_filter(now),
        )
        .values(
            claim_token=token,
            claim_expires_at=now + timedelta(seconds=int(ttl_seconds)),
            lock_version=Enrollment.lock_version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ClaimConflictError(f"enrollment {candidate.id} was claimed by another worker")
    return token


def claim_by_id(db: Session, enrollment_id: str, *, now: datetime, ttl_seconds: int) -> str:
    row = db.query(Enrollment.id, Enrollment.lock_version).filter(Enrollment.id == enrollment_id).one_or_none()
    if row is None:
        raise LookupError(f"enrollment {enrollment_id} not found")
    return claim(db, ReadyEnrollment(id=row.id, lock_version=int(row.lock_version)), now=now, ttl_seconds=ttl_seconds)


def _guarded_update(db: Session, enrollment_id: str, token: str, **values) -> None:
    result = db.execute(
        update(Enrollment)
        .where(Enrollment.id == enrollment_id, Enrollment.claim_token == token)
        .values(lock_version=Enrollment.lock_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ClaimLostError(f"claim on enrollment {enrollment_id} is no longer held")


def load_claimed(db: Session, enrollment_id: str, token: str) -> Enrollment:
    enrollment = (
        db.query(Enrollment)
        .filter(Enrollment.id == enrollment_id)
        .populate_existing()
        .one_or_none()
    )
    if enrollment is None or enrollment.claim_token != token:
        raise ClaimLostError(f"claim on enrollment {enrollment_id} is no longer held")
    return enrollment


def renew_claim(db: Session, enrollment: Enrollment, token: str, *, now: datetime, ttl_seconds: int) -> None:
    _guarded_update(
        db,
        enrollment.id,
        token,
        claim_expires_at=now + timedelta(seconds=int(ttl_seconds)),
        updated_at=now,
    )
    db.refresh(enrollment)


def advance(
    db: Session,
    enrollment: Enrollment,
    token: str,
    *,
    next_step_id: Optional[str],
    now: datetime,
    wait_until: Optional[datetime] = None,
) -> None:
    """Move to the next step; keeps the claim (the executor may continue)."""
    _guarded_update(
        db,
        enrollment.id,
        token,
        current_step_id=next_step_id,
        wait_until=wait_until,
        steps_executed=Enrollment.steps_executed + 1,
        updated_at=now,
    )
    db.refresh(enrollment)


def clear_wait(db: Session, enrollment: Enrollment, token: str, *, now: datetime) -> None:
    _guarded_update(db, enrollment.id, token, wait_until=None, updated_at=now)
    db.refresh(enrollment)


def release(db: Session, enrollment: Enrollment, token: str, *, now: datetime) -> None:
    _guarded_update(db, enrollment.id, token, claim_token=None, claim_expires_at=None, updated_at=now)
    db.refresh(enrollment)


def complete(db: Session, enrollment: Enrollment, token: str, *, now: datetime) -> None:
    _guarded_update(
        db,
        enrollment.id,
        token,
        status="completed",
        completed_at=now,
        current_step_id=None,
        wait_until=None,
        claim_token=None,
        claim_expires_at=None,
        updated_at=now,
    )
    increment_counter(db, enrollment.automation_id, "completed_count")
    db.refresh(enrollment)


def fail(db: Session, enrollment: Enrollment, token: str, *, reason: str, now: datetime) -> None:
    _terminate(db, enrollment, token, status="failed", reason=reason, now=now)


def exit_enrollment(db: Session, enrollment: Enrollment, token: str, *, reason: str, now: datetime) -> None:
    _terminate(db, enrollment, token, status="exited", reason=reason, now=now)


def _terminate(db: Session, enrollment: Enrollment, token: str, *, status: str, reason: str, now: datetime) -> None:
    _guarded_update(
        db,
        enrollment.id,
        token,
        status=status,
        exited_at=now,
        exit_reason=str(reason)[:2000],
        wait_until=None,
        claim_token=None,
        claim_expires_at=None,
        updated_at=now,
    )
    db.refresh(enrollment)


def increment_counter(db: Session, automation_id: str, column: str) -> None:
    col = getattr(Automation, column)
    db.execute(
        update(Automation)
        .where(Automation.id == automation_id)
        .values({column: col + 1})
        .execution_options(synchronize_session=False)
    )


def exit_active_enrollments(
    db: Session,
    automation_id: str,
    *,
    reason: str,
    now: datetime,
    ttl_seconds: int = 120,
) -> tuple[int, int]:
    """Exit every active enrollment of an automation.

    Goes through the claim protocol; rows currently held by a worker are
    counted as busy and left alone. Returns (exited, busy).
    """
    rows = (
        db.query(Enrollment.id, Enrollment.lock_version)
        .filter(Enrollment.automation_id == automation_id, Enrollment.status == "active")
        .order_by(Enrollment.id.asc())
        .all()
    )

    exited = 0
    busy = 0
    for row in rows:
        candidate = ReadyEnrollment(id=row.id, lock_version=int(row.lock_version))
        try:
            token = _claim_for_exit(db, candidate, now=now, ttl_seconds=ttl_seconds)
            enrollment = load_claimed(db, candidate.id, token)
            exit_enrollment(db, enrollment, token, reason=reason, now=now)
            db.commit()
            exited += 1
        except ClaimConflictError:
            db.rollback()
            busy += 1

    logger.info(
        "Exited active enrollments",
        extra={"automation_id": automation_id, "exited": exited, "busy": busy, "reason": reason},
    )
    return exited, busy


def _claim_for_exit(db: Session, candidate: ReadyEnrollment, *, now: datetime, ttl_seconds: int) -> str:
    # Parked rows (wait_until in the future) are claimable here, unlike the scheduler's ready filter.
    token = str(uuid.uuid4())
    result = db.execute(
        update(Enrollment)
        .where(
            Enrollment.id == candidate.id,
            Enrollment.lock_version == candidate.lock_version,
            Enrollment.status == "active",
            or_(Enrollment.claim_token.is_(None), Enrollment.claim_expires_at <= now),
        )
        .values(
            claim_token=token,
            claim_expires_at=now + timedelta(seconds=int(ttl_seconds)),
            lock_version=Enrollment.lock_version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ClaimConflictError(f"enrollment {candidate.id} is held by a worker")
    return token


def exit_one(db: Session, enrollment_id: str, *, reason: str, now: datetime, ttl_seconds: int = 120) -> Enrollment:
    row = db.query(Enrollment.id, Enrollment.lock_version).filter(Enrollment.id == enrollment_id).one_or_none()
    if row is None:
        raise LookupError(f"enrollment {enrollment_id} not found")
    token = _claim_for_exit(db, ReadyEnrollment(id=row.id, lock_version=int(row.lock_version)), now=now, ttl_seconds=ttl_seconds)
    enrollment = load_claimed(db, enrollment_id, token)
    exit_enrollment(db, enrollment, token, reason=reason, now=now)
    return enrollment


def recount_counters(db: Session, automation_id: str) -> dict:
    """Recompute cached counters from enrollment rows. Idempotent."""
    automation = db.query(Automation).filter(Automation.id == automation_id).populate_existing().one_or_none()
    if automation is None:
        raise LookupError(f"automation {automation_id} not found")

    enrolled = int(
        db.query(func.count(Enrollment.id)).filter(Enrollment.automation_id == automation_id).scalar() or 0
    )
    completed = int(
        db.query(func.count(Enrollment.id))
        .filter(Enrollment.automation_id == automation_id, Enrollment.status == "completed")
        .scalar()
        or 0
    )

    changed = automation.enrollment_count != enrolled or automation.completed_count != completed
    if changed:
        logger.warning(
            "Automation counters drifted; correcting",
            extra={
                "automation_id": automation_id,
                "enrollment_count": automation.enrollment_count,
                "completed_count": automation.completed_count,
                "actual_enrolled": enrolled,
                "actual_completed": completed,
            },
        )
        automation.enrollment_count = enrolled
        automation.completed_count = completed
        db.flush()

    return {
        "automation_id": automation_id,
        "enrollment_count": enrolled,
        "completed_count": completed,
        "changed": changed,
    }


def status_breakdown(db: Session, automation_id: str) -> dict[str, int]:
    rows = (
        db.query(Enrollment.status, func.count(Enrollment.id))
        .filter(Enrollment.automation_id == automation_id)
        .group_by(Enrollment.status)
        .all()
    )
    out = {"active": 0, "completed": 0, "exited": 0, "failed": 0}
    for status, count in rows:
        out[str(status)] = int(count)
    return out


def list_enrollments(
    db: Session,
    *,
    event_id: str,
    automation_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Enrollment]:
    q = db.query(Enrollment).filter(Enrollment.event_id == str(event_id))
    if automation_id is not None:
        q = q.filter(Enrollment.automation_id == str(automation_id))
    if contact_id is not None:
        q = q.filter(Enrollment.contact_id == str(contact_id))
    if status is not None:
        q = q.filter(Enrollment.status == str(status))
    return (
        q.order_by(Enrollment.started_at.desc(), Enrollment.id.asc())
        .limit(int(limit))
        .offset(int(offset))
        .all()
    )
