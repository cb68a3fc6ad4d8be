import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

from journeys.core.clock import as_utc
from journeys.core.config import Settings
from journeys.database import SessionLocal
from journeys.models.enrollment import Enrollment
from journeys.models.execution_log import ExecutionLogEntry
from journeys.schemas.steps import StepGraph
from journeys.services import automation_service
from journeys.services import enrollment_store as store
from journeys.services.collaborators import Collaborators, ContactSnapshot, EmailResult, WebhookResponse
from journeys.services.step_executor import SIGNATURE_HEADER, TIMESTAMP_HEADER, StepExecutor
from journeys.services.trigger_dispatcher import DomainEvent, dispatch_event

EVENT_ID = "evt-100"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _enroll(contact_id="c-1"):
    result = dispatch_event(DomainEvent(type="contact_created", contact_id=contact_id, event_id=EVENT_ID), now=T0)
    return result.enrolled[0]


def _claim(enrollment_id, now=T0):
    db = SessionLocal()
    try:
        token = store.claim_by_id(db, enrollment_id, now=now, ttl_seconds=120)
        db.commit()
        return token
    finally:
        db.close()


def _load(enrollment_id):
    db = SessionLocal()
    try:
        return db.get(Enrollment, enrollment_id)
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


def test_email_uses_log_idempotency_key_and_rendered_subject(automation_factory, collaborators, email, executor_factory):
    automation_factory(
        [{"id": "hello", "type": "send_email", "template_id": "welcome", "subject": "Hi {{ contact.first_name }}"}],
        name="Spring Summit welcome",
    )
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    entry = _logs(enrollment_id)[0]
    assert entry.status == "completed"
    assert entry.idempotency_key == f"journey:{enrollment_id}:log:{entry.id}"
    sent = email.sends[0]
    assert sent["key"] == entry.idempotency_key
    assert sent["context"]["subject"] == "Hi Ada"
    assert sent["context"]["automation"]["name"] == "Spring Summit welcome"
    assert sent["context"]["enrollment"]["id"] == enrollment_id
    assert entry.output["provider_message_id"] == "msg-1"


def test_failed_email_is_logged_and_journey_continues(automation_factory, collaborators, email, contacts, executor_factory):
    email.results = [EmailResult(success=False, error="mailbox unavailable", retryable=False)]
    automation_factory(
        [
            {"id": "hello", "type": "send_email", "template_id": "welcome", "next_step_id": "tag"},
            {"id": "tag", "type": "add_tag", "tag": "onboarded"},
        ]
    )
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    logs = _logs(enrollment_id)
    assert [(entry.step_id, entry.status) for entry in logs] == [("hello", "failed"), ("tag", "completed")]
    assert logs[0].error == "mailbox unavailable"
    assert _load(enrollment_id).status == "completed"
    assert "onboarded" in contacts.get_contact("c-1").tags


def test_transient_failures_back_off_exponentially(automation_factory, collaborators, email):
    email.results = [
        EmailResult(success=False, error="timeout", retryable=True),
        EmailResult(success=False, error="timeout", retryable=True),
        EmailResult(success=True, provider_message_id="m-3"),
    ]
    automation_factory([{"id": "hello", "type": "send_email", "template_id": "welcome"}])
    enrollment_id = _enroll()
    sleeps = []
    executor = StepExecutor(
        collaborators,
        settings=Settings(step_max_attempts=3, step_retry_base_seconds=1.0, step_retry_max_seconds=30.0),
        sleep=sleeps.append,
        clock=lambda: T0,
    )

    executor.run(enrollment_id, _claim(enrollment_id))

    assert sleeps == [1.0, 2.0]
    entry = _logs(enrollment_id)[0]
    assert entry.status == "completed"
    assert entry.attempts == 3


def test_step_max_attempts_overrides_default(automation_factory, collaborators, webhooks, executor_factory):
    webhooks.responses = [WebhookResponse(status_code=502, error="HTTP 502: Bad Gateway")] * 5
    automation_factory([{"id": "hook", "type": "webhook", "url": "https://hooks.example.com/x", "max_attempts": 5}])
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    assert len(webhooks.calls) == 5
    assert _logs(enrollment_id)[0].attempts == 5


def test_tag_and_field_mutations(automation_factory, collaborators, contacts, executor_factory):
    contacts.add_tag("c-1", "lead")
    automation_factory(
        [
            {"id": "untag", "type": "remove_tag", "tag": "lead", "next_step_id": "tag"},
            {"id": "tag", "type": "add_tag", "tag": "customer", "next_step_id": "field"},
            {"id": "field", "type": "update_field", "field": "greeting", "value": "Welcome, {{ contact.first_name }}"},
        ]
    )
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    contact = contacts.get_contact("c-1")
    assert contact.tags == ["customer"]
    assert contact.fields["greeting"] == "Welcome, Ada"
    assert _load(enrollment_id).steps_executed == 3


def test_webhook_payload_is_rendered_and_signed(automation_factory, collaborators, webhooks, executor_factory):
    automation_factory(
        [
            {
                "id": "crm",
                "type": "webhook",
                "url": "https://crm.example.com/contacts",
                "method": "POST",
                "headers": {"X-Source": "journeys"},
                "payload": {"name": "{{ contact.first_name }}", "company": "{{ contact.fields.company }}", "n": 3},
                "secret": "s3cret",
            }
        ]
    )
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    call = webhooks.calls[0]
    assert call["payload"] == {"name": "Ada", "company": "Acme", "n": 3}
    assert call["headers"]["X-Source"] == "journeys"
    timestamp = call["headers"][TIMESTAMP_HEADER]
    body = json.dumps(call["payload"], separators=(",", ":"), sort_keys=True).encode("utf-8")
    expected = hmac.new(b"s3cret", timestamp.encode("utf-8") + b"." + body, hashlib.sha256).hexdigest()
    assert call["headers"][SIGNATURE_HEADER] == f"sha256={expected}"

    entry = _logs(enrollment_id)[0]
    assert "secret" not in entry.input
    assert entry.output == {"status_code": 200, "body": "ok"}


def test_wait_until_date_field_parks_relative_to_contact_date(automation_factory, collaborators, contacts, executor_factory):
    contacts.put(ContactSnapshot(contact_id="c-1", fields={"event_date": "2026-03-10"}))
    automation_factory(
        [
            {
                "id": "before-event",
                "type": "wait",
                "date_field": "event_date",
                "offset_days": 2,
                "offset_direction": "before",
                "next_step_id": "remind",
            },
            {"id": "remind", "type": "send_email", "template_id": "reminder"},
        ]
    )
    enrollment_id = _enroll()

    result = executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    assert result.parked
    enrollment = _load(enrollment_id)
    assert as_utc(enrollment.wait_until) == datetime(2026, 3, 8, tzinfo=timezone.utc)
    assert enrollment.current_step_id == "remind"


def test_wait_already_elapsed_advances_without_parking(automation_factory, collaborators, email, executor_factory):
    automation_factory(
        [
            {"id": "hold", "type": "wait", "until": "2026-02-01T00:00:00Z", "next_step_id": "hello"},
            {"id": "hello", "type": "send_email", "template_id": "welcome"},
        ]
    )
    enrollment_id = _enroll()

    result = executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    assert not result.parked
    enrollment = _load(enrollment_id)
    assert enrollment.status == "completed"
    assert enrollment.wait_until is None
    assert len(email.sends) == 1


def test_wait_on_missing_date_field_fails_enrollment(automation_factory, collaborators, executor_factory):
    automation_factory([{"id": "hold", "type": "wait", "date_field": "birthday"}])
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    enrollment = _load(enrollment_id)
    assert enrollment.status == "failed"
    assert "birthday" in enrollment.exit_reason


def test_condition_that_cannot_be_evaluated_fails_enrollment(automation_factory, collaborators, executor_factory):
    automation_factory(
        [
            {
                "id": "adult",
                "type": "condition",
                "predicate": {"field": "company", "operator": "greater_than", "value": 18},
                "true_step_id": None,
                "false_step_id": None,
            }
        ]
    )
    enrollment_id = _enroll()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    enrollment = _load(enrollment_id)
    assert enrollment.status == "failed"
    assert enrollment.completed_at is None
    assert _logs(enrollment_id)[0].status == "failed"


def test_missing_step_exits_with_step_not_found(automation_factory, collaborators, executor_factory):
    automation_factory([{"id": "tag", "type": "add_tag", "tag": "x"}])
    enrollment_id = _enroll()

    db = SessionLocal()
    try:
        db.query(Enrollment).filter(Enrollment.id == enrollment_id).update({"current_step_id": "ghost"})
        db.commit()
    finally:
        db.close()

    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    enrollment = _load(enrollment_id)
    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "step_not_found"
    assert enrollment.completed_at is None


def test_step_limit_yields_and_releases_claim(automation_factory, collaborators, contacts, settings):
    steps = [
        {"id": f"t{i}", "type": "add_tag", "tag": f"tag-{i}", **({"next_step_id": f"t{i + 1}"} if i < 5 else {})}
        for i in range(6)
    ]
    automation_factory(steps)
    enrollment_id = _enroll()
    executor = StepExecutor(
        collaborators,
        settings=Settings(max_steps_per_tick=4, step_retry_base_seconds=0.0),
        sleep=lambda _s: None,
        clock=lambda: T0,
    )

    result = executor.run(enrollment_id, _claim(enrollment_id))

    assert result.yielded and result.steps_run == 4
    enrollment = _load(enrollment_id)
    assert enrollment.status == "active"
    assert enrollment.current_step_id == "t4"
    assert enrollment.claim_token is None

    executor.run(enrollment_id, _claim(enrollment_id))
    assert _load(enrollment_id).status == "completed"
    assert len(contacts.get_contact("c-1").tags) == 6


def test_in_flight_enrollment_keeps_its_pinned_definition(automation_factory, collaborators, email, executor_factory):
    automation = automation_factory(
        [
            {"id": "hold", "type": "wait", "duration": 1, "unit": "days", "next_step_id": "hello"},
            {"id": "hello", "type": "send_email", "template_id": "v1-template"},
        ]
    )
    enrollment_id = _enroll()
    executor_factory(collaborators).run(enrollment_id, _claim(enrollment_id))

    db = SessionLocal()
    try:
        automation_service.publish_definition(
            db,
            EVENT_ID,
            automation.id,
            StepGraph.model_validate(
                {"start_step_id": "hello", "steps": [{"id": "hello", "type": "send_email", "template_id": "v2-template"}]}
            ),
        )
    finally:
        db.close()

    later = T0 + timedelta(days=1, minutes=1)
    executor_factory(collaborators, now=later).run(enrollment_id, _claim(enrollment_id, now=later))

    assert [s["template_id"] for s in email.sends] == ["v1-template"]
    assert _load(enrollment_id).automation_version == 1


class _Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class _FlakyHookThatChecksClaim:
    """Fails a few times; on every call records whether another worker could take the enrollment."""

    def __init__(self, clock, failures):
        self.clock = clock
        self.failures = failures
        self.claimable_during_call = []

    def call(self, url, payload, headers, *, method="POST", idempotency_key=None):
        db = SessionLocal()
        try:
            self.claimable_during_call.append(bool(store.find_ready(db, now=self.clock(), limit=10)))
        finally:
            db.close()
        if self.failures:
            self.failures -= 1
            return WebhookResponse(status_code=503, error="HTTP 503")
        return WebhookResponse(status_code=200, body="ok")


def test_retries_longer_than_claim_ttl_keep_the_claim(automation_factory, contacts, email):
    clock = _Clock(T0)
    hook = _FlakyHookThatChecksClaim(clock, failures=4)
    automation_factory([{"id": "hook", "type": "webhook", "url": "https://hooks.example.com/x", "max_attempts": 6}])
    enrollment_id = _enroll()
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        clock.sleep(seconds)

    executor = StepExecutor(
        Collaborators(email=email, webhooks=hook, contacts=contacts),
        settings=Settings(claim_ttl_seconds=120, step_retry_base_seconds=50.0, step_retry_max_seconds=500.0),
        sleep=sleep,
        clock=clock,
    )

    result = executor.run(enrollment_id, _claim(enrollment_id))

    assert sleeps == [50.0, 60.0, 60.0, 60.0]
    assert clock.now - T0 > timedelta(seconds=120)
    assert hook.claimable_during_call == [False] * 5
    assert result.status == "completed"
    assert _logs(enrollment_id)[0].attempts == 5


def test_retry_stops_when_claim_was_taken_over(automation_factory, collaborators, webhooks):
    webhooks.responses = [WebhookResponse(status_code=503, error="HTTP 503")] * 3
    automation_factory([{"id": "hook", "type": "webhook", "url": "https://hooks.example.com/x"}])
    enrollment_id = _enroll()

    def stalled_sleep(_seconds):
        # Another worker takes the row over while this one is stuck.
        _claim(enrollment_id, now=T0 + timedelta(seconds=300))

    executor = StepExecutor(
        collaborators,
        settings=Settings(step_retry_base_seconds=1.0, step_retry_max_seconds=1.0),
        sleep=stalled_sleep,
        clock=lambda: T0,
    )

    result = executor.run(enrollment_id, _claim(enrollment_id))

    assert result.claim_lost
    assert len(webhooks.calls) == 1
    assert [e.status for e in _logs(enrollment_id)] == ["executing"]
