"""Runs a claimed enrollment forward through its step graph.

The executor only ever touches an enrollment it holds the claim on. Each
step is logged before its side effect runs, and the final log status is
committed together with the enrollment transition that follows, so a crash
leaves either nothing or an open log entry that the next claim resolves.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from journeys.core.clock import as_utc, utcnow
from journeys.core.config import Settings, load_settings
from journeys.database import SessionLocal
from journeys.models.automation import Automation
from journeys.models.enrollment import Enrollment
from journeys.models.execution_log import ExecutionLogEntry
from journeys.schemas.steps import StepGraph
from journeys.services import enrollment_store as store
from journeys.services import execution_log
from journeys.services.collaborators import Collaborators, ContactSnapshot, encode_json_body
from journeys.services.errors import (
    ClaimLostError,
    PermanentEffectError,
    PredicateError,
    TransientEffectError,
    UnknownOutcomeError,
)
from journeys.services.predicates import evaluate_predicate, lookup_field
from journeys.services.rendering import render_text, render_value
from journeys.services.retry import call_with_retry

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Journey-Signature"
TIMESTAMP_HEADER = "X-Journey-Timestamp"

_UNIT_SECONDS = {"minutes": 60, "hours": 3600, "days": 86400}


@dataclass(frozen=True)
class StepOutcome:
    """What the enrollment should do after a step.

    kind is one of ``advance``, ``park`` or ``fail``.
    """

    kind: str
    next_step_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class RunResult:
    enrollment_id: str
    status: str
    steps_run: int
    parked: bool = False
    yielded: bool = False
    claim_lost: bool = False


def sign_payload(secret: str, body: bytes, timestamp: str) -> str:
    message = timestamp.encode("utf-8") + b"." + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _parse_date_value(raw) -> datetime:
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise PermanentEffectError(f"{raw!r} is not an ISO date") from exc
    raise PermanentEffectError(f"{raw!r} is not a date")


def compute_resume_at(step, now: datetime, contact: Optional[ContactSnapshot] = None) -> datetime:
    """Instant a wait step releases the enrollment."""
    if step.duration is not None:
        return now + timedelta(seconds=step.duration * _UNIT_SECONDS[step.unit])
    if step.until is not None:
        return as_utc(step.until)

    fields = contact.fields if contact is not None else {}
    raw = lookup_field(fields, step.date_field)
    if raw is None:
        raise PermanentEffectError(f"contact has no value for date field {step.date_field!r}")
    anchor = _parse_date_value(raw)
    offset = timedelta(days=step.offset_days)
    return anchor - offset if step.offset_direction == "before" else anchor + offset


def build_context(automation: Automation, enrollment: Enrollment, contact: ContactSnapshot, step) -> dict:
    return {
        "contact": {
            "id": contact.contact_id,
            "fields": dict(contact.fields),
            "tags": list(contact.tags),
            "segments": list(contact.segments),
            **{k: v for k, v in contact.fields.items() if isinstance(k, str) and k not in ("id", "fields", "tags", "segments")},
        },
        "automation": {
            "id": automation.id,
            "name": automation.name,
            "event_id": automation.event_id,
            "edition_id": automation.edition_id,
            "version": enrollment.automation_version,
        },
        "enrollment": {
            "id": enrollment.id,
            "cycle": enrollment.cycle,
            "started_at": as_utc(enrollment.started_at).isoformat() if enrollment.started_at else None,
        },
        "step": {"id": step.id, "type": step.type},
    }


class StepExecutor:
    def __init__(
        self,
        collaborators: Collaborators,
        *,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.collaborators = collaborators
        self.settings = settings or load_settings()
        self._sleep = sleep
        self._clock = clock

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def run(self, enrollment_id: str, claim_token: str, *, db: Optional[Session] = None) -> RunResult:
        owns_db = db is None
        if owns_db:
            db = SessionLocal()

        try:
            return self._run(db, enrollment_id, claim_token)
        except ClaimLostError:
            db.rollback()
            logger.warning("Claim lost mid-run; dropping enrollment", extra={"enrollment_id": enrollment_id})
            return RunResult(enrollment_id=enrollment_id, status="active", steps_run=0, claim_lost=True)
        except Exception:
            db.rollback()
            raise
        finally:
            if owns_db:
                db.close()

    def _run(self, db: Session, enrollment_id: str, token: str) -> RunResult:
        enrollment = store.load_claimed(db, enrollment_id, token)
        automation = db.get(Automation, enrollment.automation_id)
        log_extra = {
            "enrollment_id": enrollment.id,
            "automation_id": enrollment.automation_id,
            "contact_id": enrollment.contact_id,
        }

        version = automation.version_row(enrollment.automation_version) if automation is not None else None
        if version is None:
            store.exit_enrollment(db, enrollment, token, reason="definition_missing", now=self._now())
            db.commit()
            logger.error("Enrollment points at a missing definition version", extra=log_extra)
            return RunResult(enrollment_id=enrollment.id, status=enrollment.status, steps_run=0)

        graph = StepGraph.model_validate({"start_step_id": version.start_step_id, "steps": version.steps})
        stale = execution_log.latest_open_entry(db, enrollment.id)
        steps_run = 0

        while enrollment.status == "active":
            now = self._now()

            if enrollment.wait_until is not None:
                if as_utc(enrollment.wait_until) > now:
                    store.release(db, enrollment, token, now=now)
                    db.commit()
                    return RunResult(enrollment.id, enrollment.status, steps_run, parked=True)
                store.clear_wait(db, enrollment, token, now=now)
                db.commit()

            if steps_run >= self.settings.max_steps_per_tick:
                store.release(db, enrollment, token, now=now)
                db.commit()
                logger.info("Step limit reached for this tick; yielding", extra={**log_extra, "steps_run": steps_run})
                return RunResult(enrollment.id, enrollment.status, steps_run, yielded=True)

            if enrollment.current_step_id is None:
                store.complete(db, enrollment, token, now=now)
                db.commit()
                logger.info("Enrollment completed", extra=log_extra)
                break

            step = graph.get(enrollment.current_step_id)
            if step is None:
                if stale is not None:
                    execution_log.finalize(db, stale, status="skipped", now=now, error="step no longer exists")
                store.exit_enrollment(db, enrollment, token, reason="step_not_found", now=now)
                db.commit()
                logger.warning(
                    "Current step not found in definition; exiting",
                    extra={**log_extra, "step_id": enrollment.current_step_id},
                )
                break

            store.renew_claim(db, enrollment, token, now=now, ttl_seconds=self.settings.claim_ttl_seconds)
            db.commit()

            if stale is not None and stale.step_id != step.id:
                execution_log.finalize(db, stale, status="skipped", now=now, error="enrollment moved past this step")
                db.commit()
                stale = None

            outcome = self._execute_step(db, automation, enrollment, token, step, now, stale)
            stale = None
            steps_run += 1

            now = self._now()
            if outcome.kind == "fail":
                store.fail(db, enrollment, token, reason=outcome.reason or "step_failed", now=now)
                db.commit()
                logger.warning("Enrollment failed", extra={**log_extra, "step_id": step.id, "reason": outcome.reason})
                break

            store.advance(
                db,
                enrollment,
                token,
                next_step_id=outcome.next_step_id,
                now=now,
                wait_until=outcome.wait_until if outcome.kind == "park" else None,
            )
            if outcome.kind == "park":
                store.release(db, enrollment, token, now=now)
                db.commit()
                logger.debug("Enrollment parked", extra={**log_extra, "wait_until": outcome.wait_until.isoformat()})
                return RunResult(enrollment.id, enrollment.status, steps_run, parked=True)
            db.commit()

        return RunResult(enrollment.id, enrollment.status, steps_run)

    def _execute_step(self, db, automation, enrollment, token, step, now, stale) -> StepOutcome:
        if step.type == "wait":
            return self._run_wait(db, enrollment, step, now, stale)
        if step.type == "condition":
            return self._run_condition(db, enrollment, step, now, stale)

        effects = {
            "send_email": self._send_email,
            "add_tag": self._add_tag,
            "remove_tag": self._remove_tag,
            "update_field": self._update_field,
            "webhook": self._call_webhook,
        }
        lookups = {
            "send_email": self.collaborators.email,
            "webhook": self.collaborators.webhooks,
        }
        return self._run_effect(
            db,
            automation,
            enrollment,
            token,
            step,
            now,
            stale,
            effect=effects[step.type],
            lookup=lookups.get(step.type, self.collaborators.contacts),
        )

    def _retry(self, fn, *, max_attempts: Optional[int], log_extra: dict, before_retry=None):
        # A single backoff sleep must not outlast the claim.
        max_seconds = min(self.settings.step_retry_max_seconds, self.settings.claim_ttl_seconds / 2)
        return call_with_retry(
            fn,
            max_attempts=max_attempts or self.settings.step_max_attempts,
            base_seconds=self.settings.step_retry_base_seconds,
            max_seconds=max_seconds,
            sleep=self._sleep,
            log_extra=log_extra,
            before_retry=before_retry,
        )

    def _renew_claim(self, db, enrollment, token) -> None:
        store.renew_claim(db, enrollment, token, now=self._now(), ttl_seconds=self.settings.claim_ttl_seconds)
        db.commit()

    def _fetch_contact(self, enrollment: Enrollment, step) -> ContactSnapshot:
        result = self._retry(
            lambda: self.collaborators.contacts.get_contact(enrollment.contact_id),
            max_attempts=None,
            log_extra={"enrollment_id": enrollment.id, "step_id": step.id, "operation": "get_contact"},
        )
        if not result.ok:
            raise result.error
        return result.value

    def _close_stale_pure(self, db, stale: Optional[ExecutionLogEntry], now: datetime) -> None:
        # Pure steps have no side effect to recover; rerunning is safe.
        if stale is not None:
            execution_log.finalize(db, stale, status="skipped", now=now, error="worker stopped before finalizing")

    def _run_wait(self, db, enrollment, step, now, stale) -> StepOutcome:
        self._close_stale_pure(db, stale, now)
        try:
            contact = self._fetch_contact(enrollment, step) if step.date_field else None
            resume_at = compute_resume_at(step, now, contact)
        except (PermanentEffectError, TransientEffectError) as exc:
            execution_log.record(
                db, enrollment, step_id=step.id, step_type=step.type, status="failed", now=now, error=str(exc)
            )
            return StepOutcome(kind="fail", reason=f"wait step {step.id} failed: {exc}")

        if resume_at <= now:
            execution_log.record(
                db,
                enrollment,
                step_id=step.id,
                step_type=step.type,
                status="completed",
                now=now,
                output={"wait_until": resume_at.isoformat(), "elapsed": True},
            )
            return StepOutcome(kind="advance", next_step_id=step.next_step_id)

        execution_log.record(
            db,
            enrollment,
            step_id=step.id,
            step_type=step.type,
            status="completed",
            now=now,
            output={"wait_until": resume_at.isoformat()},
        )
        return StepOutcome(kind="park", next_step_id=step.next_step_id, wait_until=resume_at)

    def _run_condition(self, db, enrollment, step, now, stale) -> StepOutcome:
        self._close_stale_pure(db, stale, now)
        predicate_input = step.predicate.model_dump()
        try:
            contact = self._fetch_contact(enrollment, step)
            result = evaluate_predicate(step.predicate, contact.fields, contact.tags, contact.segments)
        except (PredicateError, PermanentEffectError, TransientEffectError) as exc:
            execution_log.record(
                db,
                enrollment,
                step_id=step.id,
                step_type=step.type,
                status="failed",
                now=now,
                input=predicate_input,
                error=str(exc),
            )
            return StepOutcome(kind="fail", reason=f"condition step {step.id} failed: {exc}")

        branch = step.true_step_id if result else step.false_step_id
        execution_log.record(
            db,
            enrollment,
            step_id=step.id,
            step_type=step.type,
            status="completed",
            now=now,
            input=predicate_input,
            output={"result": bool(result), "next_step_id": branch},
        )
        return StepOutcome(kind="advance", next_step_id=branch)

    def _run_effect(self, db, automation, enrollment, token, step, now, stale, *, effect, lookup) -> StepOutcome:
        log_extra = {
            "enrollment_id": enrollment.id,
            "automation_id": enrollment.automation_id,
            "step_id": step.id,
            "step_type": step.type,
        }
        idempotency_key = None
        is_recovery = False

        if stale is not None:
            idempotency_key = stale.idempotency_key
            is_recovery = True
            if stale.status == "pending":
                execution_log.finalize(
                    db, stale, status="skipped", now=now, error="worker stopped before the effect was attempted"
                )
            else:
                try:
                    prior = execution_log.lookup_prior_delivery(stale, lookup)
                except UnknownOutcomeError as exc:
                    logger.warning(
                        "Unknown outcome for in-flight step; re-executing with the same idempotency key",
                        extra={**log_extra, "log_entry_id": exc.log_entry_id, "idempotency_key": exc.idempotency_key},
                    )
                    execution_log.finalize(db, stale, status="failed", now=now, error=f"unknown outcome: {exc}")
                else:
                    if prior is not None:
                        execution_log.finalize(
                            db, stale, status="completed", now=now, output={"recovered": True, "delivery": prior}
                        )
                        execution_log.record(
                            db,
                            enrollment,
                            step_id=step.id,
                            step_type=step.type,
                            status="skipped",
                            now=now,
                            output={"already_delivered": True, "recovered_entry_id": stale.id},
                            is_recovery=True,
                        )
                        logger.info("In-flight step was already delivered; not repeating", extra=log_extra)
                        return StepOutcome(kind="advance", next_step_id=step.next_step_id)
                    execution_log.finalize(
                        db, stale, status="failed", now=now, error="worker stopped mid-step; no delivery recorded"
                    )
            db.commit()

        entry = execution_log.begin(
            db,
            enrollment,
            step_id=step.id,
            step_type=step.type,
            now=now,
            input=step.model_dump(mode="json", exclude={"secret"}),
            idempotency_key=idempotency_key,
            is_recovery=is_recovery,
        )
        db.commit()
        execution_log.mark_executing(db, entry)
        db.commit()

        key = entry.idempotency_key
        outcome = self._retry(
            lambda: effect(automation, enrollment, step, key),
            max_attempts=step.max_attempts,
            log_extra={**log_extra, "log_entry_id": entry.id},
            before_retry=lambda: self._renew_claim(db, enrollment, token),
        )

        finished = self._now()
        if outcome.ok:
            execution_log.finalize(
                db, entry, status="completed", now=finished, output=outcome.value, attempts=outcome.attempts
            )
            return StepOutcome(kind="advance", next_step_id=step.next_step_id)

        err = outcome.error
        execution_log.finalize(
            db, entry, status="failed", now=finished, output=err.output, error=str(err), attempts=outcome.attempts
        )
        logger.warning(
            "Step failed",
            extra={**log_extra, "attempts": outcome.attempts, "error": str(err), "fail_hard": step.fail_hard},
        )
        if step.fail_hard:
            return StepOutcome(kind="fail", reason=f"{step.type} step {step.id} failed: {err}")
        return StepOutcome(kind="advance", next_step_id=step.next_step_id)

    def _send_email(self, automation, enrollment, step, idempotency_key) -> dict:
        contact = self.collaborators.contacts.get_contact(enrollment.contact_id)
        context = build_context(automation, enrollment, contact, step)
        if step.subject:
            context["subject"] = render_text(step.subject, context)
        if step.from_name:
            context["from_name"] = step.from_name

        result = self.collaborators.email.send(
            enrollment.contact_id, step.template_id, context, idempotency_key=idempotency_key
        )
        if result.success:
            return {"provider_message_id": result.provider_message_id, "template_id": step.template_id}

        output = {"template_id": step.template_id, "error": result.error}
        if result.retryable:
            raise TransientEffectError(result.error or "email send failed", output=output)
        raise PermanentEffectError(result.error or "email send failed", output=output)

    def _add_tag(self, automation, enrollment, step, idempotency_key) -> dict:
        self.collaborators.contacts.add_tag(enrollment.contact_id, step.tag)
        return {"tag": step.tag}

    def _remove_tag(self, automation, enrollment, step, idempotency_key) -> dict:
        self.collaborators.contacts.remove_tag(enrollment.contact_id, step.tag)
        return {"tag": step.tag}

    def _update_field(self, automation, enrollment, step, idempotency_key) -> dict:
        value = step.value
        if isinstance(value, (str, dict, list)):
            contact = self.collaborators.contacts.get_contact(enrollment.contact_id)
            value = render_value(value, build_context(automation, enrollment, contact, step))
        self.collaborators.contacts.update_field(enrollment.contact_id, step.field, value)
        return {"field": step.field, "value": value}

    def _call_webhook(self, automation, enrollment, step, idempotency_key) -> dict:
        contact = self.collaborators.contacts.get_contact(enrollment.contact_id)
        context = build_context(automation, enrollment, contact, step)

        if step.payload is not None:
            payload = render_value(step.payload, context)
        else:
            payload = {
                "contact_id": enrollment.contact_id,
                "automation_id": automation.id,
                "enrollment_id": enrollment.id,
                "step_id": step.id,
            }
        headers = render_value(dict(step.headers), context)

        if step.secret and step.method != "GET":
            timestamp = str(int(self._now().timestamp()))
            headers[TIMESTAMP_HEADER] = timestamp
            headers[SIGNATURE_HEADER] = sign_payload(step.secret, encode_json_body(payload), timestamp)

        response = self.collaborators.webhooks.call(
            str(step.url), payload, headers, method=step.method, idempotency_key=idempotency_key
        )
        output = {"status_code": response.status_code, "body": response.body}
        if response.ok:
            return output

        message = response.error or f"HTTP {response.status_code}"
        if response.retryable:
            raise TransientEffectError(message, output=output)
        raise PermanentEffectError(message, output=output)
