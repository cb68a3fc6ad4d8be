"""Authoring and lifecycle operations for automations.

These functions only write automation and version rows, with two exceptions:
``exit_active`` exits enrollments through the claim protocol, and
``enroll_contact`` inserts an enrollment through the dispatcher's enroll path.
Definitions are versioned; publishing never edits a version row in place, so
running enrollments keep the graph they were pinned to.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from journeys.core.clock import utcnow
from journeys.models.automation import Automation, AutomationVersion
from journeys.models.enrollment import Enrollment
from journeys.models.execution_log import ExecutionLogEntry
from journeys.schemas.automation import AutomationCreate, AutomationUpdate
from journeys.schemas.steps import StepGraph
from journeys.schemas.triggers import parse_trigger_config
from journeys.services import enrollment_store as store
from journeys.services import execution_log, trigger_dispatcher
from journeys.services.errors import AutomationError, AutomationNotFound

logger = logging.getLogger(__name__)


class AutomationStateError(AutomationError):
    """Lifecycle transition not allowed from the current status."""


def _validated_trigger_config(trigger_type: str, raw: Optional[dict]) -> dict:
    try:
        trigger = parse_trigger_config(trigger_type, raw)
    except ValidationError:
        raise
    except ValueError as exc:
        raise AutomationError(str(exc)) from exc
    return trigger.model_dump(mode="json")


def get_automation(db: Session, event_id: str, automation_id: str) -> Automation:
    automation = (
        db.query(Automation)
        .filter(Automation.id == str(automation_id), Automation.event_id == str(event_id))
        .one_or_none()
    )
    if automation is None:
        raise AutomationNotFound(f"automation {automation_id} not found")
    return automation


def list_automations(
    db: Session,
    event_id: str,
    *,
    status: Optional[str] = None,
    trigger_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Automation]:
    q = db.query(Automation).filter(Automation.event_id == str(event_id))
    if status is not None:
        q = q.filter(Automation.status == status)
    if trigger_type is not None:
        q = q.filter(Automation.trigger_type == trigger_type)
    return q.order_by(Automation.created_at.desc(), Automation.id.asc()).limit(int(limit)).offset(int(offset)).all()


def _add_version(
    db: Session, automation: Automation, graph: StepGraph, *, created_by: Optional[str], now: datetime
) -> AutomationVersion:
    latest = (
        db.query(func.max(AutomationVersion.version))
        .filter(AutomationVersion.automation_id == automation.id)
        .scalar()
    )
    version = AutomationVersion(
        version=int(latest or 0) + 1,
        start_step_id=graph.start_step_id,
        steps=[step.model_dump(mode="json", exclude_none=True) for step in graph.steps],
        created_by=created_by,
        created_at=now,
    )
    automation.versions.append(version)
    automation.current_version = version.version
    automation.updated_at = now
    db.flush()
    return version


def create_automation(
    db: Session,
    *,
    event_id: str,
    payload: AutomationCreate,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Automation:
    now = now or utcnow()
    automation = Automation(
        event_id=str(event_id),
        edition_id=payload.edition_id,
        name=payload.name,
        description=payload.description,
        trigger_type=payload.trigger_type,
        trigger_config=_validated_trigger_config(payload.trigger_type, payload.trigger_config),
        status="draft",
        reentry_policy=payload.reentry_policy,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(automation)
    db.flush()

    if payload.definition is not None:
        _add_version(db, automation, payload.definition, created_by=created_by, now=now)

    db.commit()
    db.refresh(automation)
    logger.info(
        "Automation created",
        extra={"automation_id": automation.id, "event_id": automation.event_id, "trigger_type": automation.trigger_type},
    )
    return automation


def update_automation(
    db: Session,
    event_id: str,
    automation_id: str,
    payload: AutomationUpdate,
    *,
    now: Optional[datetime] = None,
) -> Automation:
    automation = get_automation(db, event_id, automation_id)
    changes = payload.model_dump(exclude_unset=True)

    if "name" in changes and changes["name"] is not None:
        automation.name = changes["name"]
    if "description" in changes:
        automation.description = changes["description"]
    if "edition_id" in changes:
        automation.edition_id = changes["edition_id"]
    if changes.get("reentry_policy") is not None:
        automation.reentry_policy = changes["reentry_policy"]
    if changes.get("trigger_config") is not None:
        automation.trigger_config = _validated_trigger_config(automation.trigger_type, changes["trigger_config"])

    automation.updated_at = now or utcnow()
    db.commit()
    db.refresh(automation)
    return automation


def publish_definition(
    db: Session,
    event_id: str,
    automation_id: str,
    graph: StepGraph,
    *,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AutomationVersion:
    """Store a new immutable version and make it current.

    Existing enrollments stay on the version they started with.
    """
    automation = get_automation(db, event_id, automation_id)
    version = _add_version(db, automation, graph, created_by=created_by, now=now or utcnow())
    db.commit()
    logger.info(
        "Automation definition published",
        extra={"automation_id": automation.id, "version": version.version, "steps": len(graph.steps)},
    )
    return version


def get_definition(db: Session, event_id: str, automation_id: str, version: Optional[int] = None) -> AutomationVersion:
    automation = get_automation(db, event_id, automation_id)
    row = automation.version_row(version)
    if row is None:
        raise AutomationNotFound(f"automation {automation_id} has no definition version {version or 'current'}")
    return row


def activate(db: Session, event_id: str, automation_id: str, *, now: Optional[datetime] = None) -> Automation:
    automation = get_automation(db, event_id, automation_id)
    if automation.status == "active":
        raise AutomationStateError("automation is already active")

    row = automation.version_row()
    if row is None:
        raise AutomationError("automation has no definition")
    try:
        StepGraph.model_validate({"start_step_id": row.start_step_id, "steps": row.steps})
        parse_trigger_config(automation.trigger_type, automation.trigger_config)
    except (ValidationError, ValueError) as exc:
        raise AutomationError(f"automation definition is invalid: {exc}") from exc

    return _set_status(db, automation, "active", now)


def pause(db: Session, event_id: str, automation_id: str, *, now: Optional[datetime] = None) -> Automation:
    """Stop new enrollments. Running enrollments keep going."""
    automation = get_automation(db, event_id, automation_id)
    if automation.status != "active":
        raise AutomationStateError(f"only active automations can be paused (status={automation.status})")
    return _set_status(db, automation, "paused", now)


def resume(db: Session, event_id: str, automation_id: str, *, now: Optional[datetime] = None) -> Automation:
    automation = get_automation(db, event_id, automation_id)
    if automation.status != "paused":
        raise AutomationStateError(f"only paused automations can be resumed (status={automation.status})")
    return _set_status(db, automation, "active", now)


def _set_status(db: Session, automation: Automation, status: str, now: Optional[datetime]) -> Automation:
    previous = automation.status
    automation.status = status
    automation.updated_at = now or utcnow()
    db.commit()
    db.refresh(automation)
    logger.info(
        "Automation status changed",
        extra={"automation_id": automation.id, "from_status": previous, "to_status": status},
    )
    return automation


def exit_active(
    db: Session,
    event_id: str,
    automation_id: str,
    *,
    reason: str = "automation_paused",
    ttl_seconds: int = 120,
    now: Optional[datetime] = None,
) -> tuple[int, int]:
    automation = get_automation(db, event_id, automation_id)
    return store.exit_active_enrollments(
        db, automation.id, reason=reason, now=now or utcnow(), ttl_seconds=ttl_seconds
    )


def enroll_contact(
    db: Session, event_id: str, automation_id: str, contact_id: str, *, now: Optional[datetime] = None
) -> Enrollment:
    automation = get_automation(db, event_id, automation_id)
    if automation.status != "active":
        raise AutomationStateError(f"only active automations accept enrollments (status={automation.status})")
    if automation.version_row() is None:
        raise AutomationError("automation has no definition")

    enrollment_id = trigger_dispatcher.enroll_contact(db, automation, contact_id, now=now)
    if enrollment_id is None:
        raise AutomationStateError(f"contact {contact_id} is already enrolled or may not re-enter")
    return db.get(Enrollment, enrollment_id)


def duplicate(
    db: Session,
    event_id: str,
    automation_id: str,
    *,
    name: str,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Automation:
    """Copy trigger and current definition into a new draft with zeroed counters."""
    source = get_automation(db, event_id, automation_id)
    now = now or utcnow()

    copy = Automation(
        event_id=source.event_id,
        edition_id=source.edition_id,
        name=name,
        description=source.description,
        trigger_type=source.trigger_type,
        trigger_config=dict(source.trigger_config or {}),
        status="draft",
        reentry_policy=source.reentry_policy,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    db.add(copy)
    db.flush()

    row = source.version_row()
    if row is not None:
        graph = StepGraph.model_validate({"start_step_id": row.start_step_id, "steps": row.steps})
        _add_version(db, copy, graph, created_by=created_by, now=now)

    db.commit()
    db.refresh(copy)
    logger.info("Automation duplicated", extra={"automation_id": copy.id, "source_automation_id": source.id})
    return copy


def recount(db: Session, event_id: str, automation_id: str) -> dict:
    automation = get_automation(db, event_id, automation_id)
    result = store.recount_counters(db, automation.id)
    db.commit()
    return result


def stats(db: Session, event_id: str, automation_id: str) -> dict:
    automation = get_automation(db, event_id, automation_id)
    return {
        "automation_id": automation.id,
        "enrollment_count": int(automation.enrollment_count or 0),
        "completed_count": int(automation.completed_count or 0),
        "by_status": store.status_breakdown(db, automation.id),
        "failed_steps": execution_log.count_failed(db, automation.id),
    }


def get_logs(
    db: Session,
    event_id: str,
    automation_id: str,
    *,
    contact_id: Optional[str] = None,
    limit: int = 100,
) -> list[ExecutionLogEntry]:
    automation = get_automation(db, event_id, automation_id)
    return execution_log.for_automation(db, automation.id, contact_id=contact_id, limit=limit)
