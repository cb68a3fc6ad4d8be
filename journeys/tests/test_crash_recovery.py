import logging
from datetime import datetime, timedelta, timezone

from journeys.database import SessionLocal
from journeys.models.enrollment import Enrollment
from journeys.models.execution_log import ExecutionLogEntry
from journeys.services import enrollment_store as store
from journeys.services import execution_log
from journeys.services.collaborators import Collaborators
from journeys.services.trigger_dispatcher import DomainEvent, dispatch_event

EVENT_ID = "evt-100"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
LATER = T0 + timedelta(minutes=5)

HELLO = [{"id": "hello", "type": "send_email", "template_id": "welcome"}]


def _enroll():
    return dispatch_event(DomainEvent(type="contact_created", contact_id="c-1", event_id=EVENT_ID), now=T0).enrolled[0]


def _crash_mid_step(enrollment_id, *, reached="executing"):
    """Claim, open a log entry for the current step, then stop as if the worker died."""
    db = SessionLocal()
    try:
        token = store.claim_by_id(db, enrollment_id, now=T0, ttl_seconds=120)
        db.commit()
        enrollment = store.load_claimed(db, enrollment_id, token)
        entry = execution_log.begin(db, enrollment, step_id="hello", step_type="send_email", now=T0)
        if reached == "executing":
            execution_log.mark_executing(db, entry)
        db.commit()
        return token, entry.id, entry.idempotency_key
    finally:
        db.close()


def _reclaim(enrollment_id, now=LATER):
    db = SessionLocal()
    try:
        token = store.claim_by_id(db, enrollment_id, now=now, ttl_seconds=120)
        db.commit()
        return token
    finally:
        db.close()


def _logs(enrollment_id):
    db = SessionLocal()
    try:
        return (
            db.query(ExecutionLogEntry)
            .filter(ExecutionLogEntry.enrollment_id == enrollment_id)
            .order_by(ExecutionLogEntry.id.asc())
            .all()
        )
    finally:
        db.close()


def _status(enrollment_id):
    db = SessionLocal()
    try:
        return db.get(Enrollment, enrollment_id).status
    finally:
        db.close()


def test_claim_stays_held_until_it_expires(automation_factory):
    automation_factory(HELLO)
    enrollment_id = _enroll()
    _crash_mid_step(enrollment_id)

    db = SessionLocal()
    try:
        assert store.find_ready(db, now=T0 + timedelta(seconds=60), limit=10) == []
        assert [c.id for c in store.find_ready(db, now=T0 + timedelta(seconds=121), limit=10)] == [enrollment_id]
    finally:
        db.close()


def test_already_delivered_effect_is_not_repeated(automation_factory, collaborators, email, executor_factory):
    automation_factory(HELLO)
    enrollment_id = _enroll()
    _, stale_id, key = _crash_mid_step(enrollment_id)
    email.delivered[key] = {"provider_message_id": "sent-before-crash"}

    executor_factory(collaborators, now=LATER).run(enrollment_id, _reclaim(enrollment_id))

    assert email.sends == []
    logs = _logs(enrollment_id)
    assert [(e.id == stale_id, e.status, e.is_recovery) for e in logs] == [
        (True, "completed", False),
        (False, "skipped", True),
    ]
    assert logs[0].output["delivery"] == {"provider_message_id": "sent-before-crash"}
    assert logs[1].output["recovered_entry_id"] == stale_id
    assert _status(enrollment_id) == "completed"


def test_undelivered_effect_is_retried_with_same_key(automation_factory, collaborators, email, executor_factory):
    automation_factory(HELLO)
    enrollment_id = _enroll()
    _, stale_id, key = _crash_mid_step(enrollment_id)

    executor_factory(collaborators, now=LATER).run(enrollment_id, _reclaim(enrollment_id))

    assert [s["key"] for s in email.sends] == [key]
    logs = _logs(enrollment_id)
    assert logs[0].id == stale_id and logs[0].status == "failed"
    assert logs[1].status == "completed"
    assert logs[1].is_recovery is True
    assert logs[1].idempotency_key == key
    assert _status(enrollment_id) == "completed"


def test_unknown_outcome_is_logged_and_step_reexecuted(
    automation_factory, blind_email, webhooks, contacts, executor_factory, caplog
):
    automation_factory(HELLO)
    enrollment_id = _enroll()
    _, stale_id, key = _crash_mid_step(enrollment_id)
    collaborators = Collaborators(email=blind_email, webhooks=webhooks, contacts=contacts)

    with caplog.at_level(logging.WARNING, logger="journeys.services.step_executor"):
        executor_factory(collaborators, now=LATER).run(enrollment_id, _reclaim(enrollment_id))

    assert [s["key"] for s in blind_email.sends] == [key]
    logs = _logs(enrollment_id)
    assert logs[0].status == "failed"
    assert "unknown outcome" in logs[0].error
    assert logs[1].is_recovery is True and logs[1].status == "completed"
    assert any("Unknown outcome" in r.getMessage() for r in caplog.records)
    assert _status(enrollment_id) == "completed"


def test_pending_entry_is_skipped_and_step_runs(automation_factory, collaborators, email, executor_factory):
    automation_factory(HELLO)
    enrollment_id = _enroll()
    _, stale_id, key = _crash_mid_step(enrollment_id, reached="pending")

    executor_factory(collaborators, now=LATER).run(enrollment_id, _reclaim(enrollment_id))

    logs = _logs(enrollment_id)
    assert logs[0].id == stale_id and logs[0].status == "skipped"
    assert logs[1].status == "completed"
    assert len(email.sends) == 1
    assert all(e.status not in ("pending", "executing") for e in logs)


def test_worker_with_expired_claim_drops_the_enrollment(automation_factory, collaborators, email, executor_factory):
    automation_factory(HELLO)
    enrollment_id = _enroll()
    old_token, _, _ = _crash_mid_step(enrollment_id, reached="pending")
    _reclaim(enrollment_id)

    result = executor_factory(collaborators, now=LATER).run(enrollment_id, old_token)

    assert result.claim_lost
    assert email.sends == []
    assert _status(enrollment_id) == "active"
