"""Turns domain events into enrollments.

Events arrive either directly through ``dispatch_event`` or through the
``trigger_events`` inbox, which the scheduler drains every tick. Each
enrollment is inserted in its own short transaction; the unique constraints
on ``enrollments`` turn a redelivered event into a no-op.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from journeys.core.clock import as_utc, utcnow
from journeys.database import SessionLocal
from journeys.models.automation import Automation, AutomationVersion
from journeys.models.enrollment import Enrollment
from journeys.models.trigger_event import TriggerEvent
from journeys.schemas.triggers import parse_trigger_config
from journeys.services.enrollment_store import increment_counter
from journeys.services.errors import TriggerPredicateError
from journeys.services.predicates import trigger_matches
from journeys.services.retry import inbox_retry_wait

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    type: str
    contact_id: str
    event_id: str
    edition_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None


@dataclass
class DispatchResult:
    matched: int = 0
    enrolled: list[str] = field(default_factory=list)
    duplicates: int = 0
    errors: int = 0


@dataclass(frozen=True)
class InboxProcessResult:
    processed: int
    failed: int


def _candidates(db: Session, event: DomainEvent) -> list[Automation]:
    q = db.query(Automation).filter(
        Automation.status == "active",
        Automation.trigger_type == event.type,
        Automation.event_id == event.event_id,
    )
    if event.edition_id is None:
        q = q.filter(Automation.edition_id.is_(None))
    else:
        q = q.filter(or_(Automation.edition_id.is_(None), Automation.edition_id == event.edition_id))
    return q.order_by(Automation.created_at.asc(), Automation.id.asc()).all()


def _matches(automation: Automation, event: DomainEvent, now: datetime) -> bool:
    extra = {"automation_id": automation.id, "event_type": event.type, "contact_id": event.contact_id}
    try:
        trigger = parse_trigger_config(automation.trigger_type, automation.trigger_config)
        return trigger_matches(trigger, event.payload, today=now.date())
    except TriggerPredicateError as exc:
        logger.warning("Trigger predicate failed; treating as no match", extra={**extra, "error": str(exc)})
    except (ValidationError, ValueError) as exc:
        logger.error("Stored trigger config is invalid; skipping automation", extra={**extra, "error": str(exc)})
    except Exception:
        logger.exception("Unexpected error evaluating trigger; treating as no match", extra=extra)
    return False


def _next_cycle(db: Session, automation: Automation, contact_id: str) -> Optional[int]:
    """Cycle for a new enrollment, or None when the contact may not enter."""
    latest = (
        db.query(Enrollment.cycle, Enrollment.status)
        .filter(Enrollment.automation_id == automation.id, Enrollment.contact_id == contact_id)
        .order_by(Enrollment.cycle.desc())
        .first()
    )
    if latest is None:
        return 0
    if automation.reentry_policy != "reenterable" or latest.status == "active":
        return None
    return int(latest.cycle) + 1


def _enroll(
    db: Session,
    automation: Automation,
    version: AutomationVersion,
    contact_id: str,
    now: datetime,
    *,
    trigger_event_key: Optional[str] = None,
) -> Optional[str]:
    cycle = _next_cycle(db, automation, contact_id)
    if cycle is None:
        return None

    enrollment = Enrollment(
        automation_id=automation.id,
        automation_version=version.version,
        event_id=automation.event_id,
        contact_id=contact_id,
        cycle=cycle,
        trigger_event_key=trigger_event_key,
        current_step_id=version.start_step_id,
        status="active",
        started_at=now,
        updated_at=now,
    )
    try:
        db.add(enrollment)
        db.flush()
        increment_counter(db, automation.id, "enrollment_count")
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    return enrollment.id


def enroll_contact(db: Session, automation: Automation, contact_id: str, *, now: Optional[datetime] = None) -> Optional[str]:
    """Enroll one contact by hand, under the same cycle and uniqueness rules as dispatch.

    Returns None when the contact is already enrolled or may not re-enter.
    Callers check that the automation is active.
    """
    version = automation.version_row()
    if version is None:
        return None
    now = as_utc(now) if now is not None else utcnow()
    enrollment_id = _enroll(db, automation, version, contact_id, now)
    if enrollment_id is not None:
        logger.info(
            "Contact enrolled manually",
            extra={"automation_id": automation.id, "contact_id": contact_id, "enrollment_id": enrollment_id},
        )
    return enrollment_id


def dispatch_event(event: DomainEvent, *, db: Optional[Session] = None, now: Optional[datetime] = None) -> DispatchResult:
    """Enroll the event's contact in every active automation it triggers.

    Commits per enrollment, so a passed-in session must not carry
    unrelated pending work.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = as_utc(now) if now is not None else utcnow()
    result = DispatchResult()

    try:
        automations = _candidates(db, event)
        for automation in automations:
            if not _matches(automation, event, now):
                continue
            result.matched += 1

            version = automation.version_row()
            if version is None:
                result.errors += 1
                logger.error("Active automation has no definition", extra={"automation_id": automation.id})
                continue

            automation_id = automation.id
            enrollment_id = _enroll(
                db, automation, version, event.contact_id, now, trigger_event_key=event.idempotency_key
            )
            if enrollment_id is None:
                result.duplicates += 1
                logger.debug(
                    "Contact not enrolled; already enrolled or re-entry not allowed",
                    extra={"automation_id": automation_id, "contact_id": event.contact_id},
                )
                continue

            result.enrolled.append(enrollment_id)
            logger.info(
                "Contact enrolled",
                extra={
                    "automation_id": automation_id,
                    "enrollment_id": enrollment_id,
                    "contact_id": event.contact_id,
                    "event_type": event.type,
                },
            )

        db.commit()
        return result

    except Exception:
        db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def emit_event(event: DomainEvent, *, db: Optional[Session] = None, now: Optional[datetime] = None) -> tuple[TriggerEvent, bool]:
    """Store an event in the inbox. Returns (row, duplicate)."""
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = as_utc(now) if now is not None else utcnow()
    key = event.idempotency_key or str(uuid.uuid4())

    try:
        row = TriggerEvent(
            event_type=event.type,
            contact_id=event.contact_id,
            event_id=event.event_id,
            edition_id=event.edition_id,
            idempotency_key=key,
            payload=dict(event.payload or {}),
            processed=False,
            retry_count=0,
            next_attempt_at=now,
            created_at=now,
        )
        try:
            db.add(row)
            db.commit()
            db.refresh(row)
            return row, False
        except IntegrityError:
            db.rollback()
            existing = (
                db.query(TriggerEvent)
                .filter(
                    TriggerEvent.event_id == event.event_id,
                    TriggerEvent.event_type == event.type,
                    TriggerEvent.idempotency_key == key,
                )
                .one()
            )
            return existing, True
    finally:
        if owns_db:
            db.close()


def _as_domain_event(row: TriggerEvent) -> DomainEvent:
    return DomainEvent(
        type=row.event_type,
        contact_id=row.contact_id,
        event_id=row.event_id,
        edition_id=row.edition_id,
        payload=dict(row.payload or {}),
        idempotency_key=row.idempotency_key,
    )


def process_trigger_inbox(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
) -> InboxProcessResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    now = as_utc(now) if now is not None else utcnow()
    processed = 0
    failed = 0

    try:
        row_ids = [
            r.id
            for r in db.query(TriggerEvent.id)
            .filter(TriggerEvent.processed.is_(False))
            .filter(or_(TriggerEvent.next_attempt_at.is_(None), TriggerEvent.next_attempt_at <= now))
            .order_by(TriggerEvent.id.asc())
            .with_for_update(skip_locked=True)
            .limit(int(batch_size))
            .all()
        ]

        # Rows carry idempotency keys, so a row re-read by another worker
        # after our locks are released enrolls nobody twice.
        for row_id in row_ids:
            row = db.get(TriggerEvent, row_id)
            if row is None or row.processed:
                continue

            try:
                dispatch_event(_as_domain_event(row), db=db, now=now)
                row = db.get(TriggerEvent, row_id)
                row.processed = True
                row.processed_at = now
                row.last_error = None
                db.commit()
                processed += 1

            except Exception as exc:
                db.rollback()
                row = db.get(TriggerEvent, row_id)
                row.retry_count = int(row.retry_count or 0) + 1
                row.last_error = f"{type(exc).__name__}: {exc}"[:2000]
                row.next_attempt_at = now + inbox_retry_wait(row.retry_count)

                if int(row.retry_count) >= int(max_retries):
                    row.processed = True
                    row.processed_at = now

                db.commit()
                failed += 1
                logger.exception(
                    "Trigger inbox row processing failed",
                    extra={
                        "trigger_event_id": row_id,
                        "event_type": row.event_type,
                        "retry_count": int(row.retry_count),
                        "max_retries": int(max_retries),
                    },
                )

        return InboxProcessResult(processed=processed, failed=failed)

    except Exception:
        db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
