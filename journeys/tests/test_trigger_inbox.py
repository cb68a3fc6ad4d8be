from datetime import datetime, timedelta, timezone

from journeys.database import SessionLocal
from journeys.models.enrollment import Enrollment
from journeys.models.trigger_event import TriggerEvent
from journeys.services import trigger_dispatcher
from journeys.services.scheduler import run_tick
from journeys.services.trigger_dispatcher import DomainEvent, emit_event, process_trigger_inbox

EVENT_ID = "evt-100"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

HELLO = [{"id": "hello", "type": "send_email", "template_id": "welcome"}]


def _event(key="signup-1", contact_id="c-1"):
    return DomainEvent(type="contact_created", contact_id=contact_id, event_id=EVENT_ID, idempotency_key=key)


def _inbox_row(row_id):
    db = SessionLocal()
    try:
        return db.get(TriggerEvent, row_id)
    finally:
        db.close()


def _enrollment_count():
    db = SessionLocal()
    try:
        return db.query(Enrollment).count()
    finally:
        db.close()


def test_emit_is_deduplicated_by_key():
    first, dup1 = emit_event(_event(), now=T0)
    second, dup2 = emit_event(_event(), now=T0)
    other, dup3 = emit_event(_event(key="signup-2"), now=T0)

    assert (dup1, dup2, dup3) == (False, True, False)
    assert second.id == first.id
    assert other.id != first.id


def test_emit_without_key_always_stores_a_new_row():
    a, _ = emit_event(_event(key=None), now=T0)
    b, _ = emit_event(_event(key=None), now=T0)

    assert a.id != b.id
    assert a.idempotency_key != b.idempotency_key


def test_processing_dispatches_and_marks_rows(automation_factory):
    automation_factory(HELLO)
    row, _ = emit_event(_event(), now=T0)

    result = process_trigger_inbox(now=T0)

    assert (result.processed, result.failed) == (1, 0)
    stored = _inbox_row(row.id)
    assert stored.processed is True
    assert stored.last_error is None
    assert _enrollment_count() == 1

    # Already processed; a second pass is a no-op.
    again = process_trigger_inbox(now=T0 + timedelta(minutes=1))
    assert (again.processed, again.failed) == (0, 0)
    assert _enrollment_count() == 1


def test_failed_rows_back_off_then_dead_letter(automation_factory, monkeypatch):
    automation_factory(HELLO)
    row, _ = emit_event(_event(), now=T0)

    def broken_dispatch(*args, **kwargs):
        raise RuntimeError("directory unavailable")

    monkeypatch.setattr(trigger_dispatcher, "dispatch_event", broken_dispatch)

    first = process_trigger_inbox(now=T0, max_retries=2)
    assert first.failed == 1
    stored = _inbox_row(row.id)
    assert stored.retry_count == 1
    assert stored.processed is False
    assert "directory unavailable" in stored.last_error

    # Not due until 2s later.
    early = process_trigger_inbox(now=T0 + timedelta(seconds=1), max_retries=2)
    assert (early.processed, early.failed) == (0, 0)

    second = process_trigger_inbox(now=T0 + timedelta(seconds=2), max_retries=2)
    assert second.failed == 1
    stored = _inbox_row(row.id)
    assert stored.retry_count == 2
    assert stored.processed is True
    assert _enrollment_count() == 0


def test_run_tick_drains_inbox_before_claiming(automation_factory, collaborators, email, settings):
    automation_factory(HELLO)
    emit_event(_event(), now=T0)

    tick = run_tick(now=T0, collaborators=collaborators, settings=settings)

    assert tick.inbox_processed == 1
    assert tick.claimed == 1
    assert tick.completed == 1
    assert len(email.sends) == 1
