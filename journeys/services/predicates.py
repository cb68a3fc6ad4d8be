from collections.abc import Mapping
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional

from journeys.core.clock import as_utc, utcnow
from journeys.schemas.predicate import Predicate
from journeys.services.errors import PredicateError, TriggerPredicateError

_MISSING = object()


def lookup_field(data: Mapping, path: str) -> Any:
    """Resolve ``a.b.c`` against nested mappings; missing keys give None."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return None
    return current


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    if isinstance(haystack, (list, tuple, set)):
        return needle in haystack
    return str(needle) in str(haystack)


def _as_number(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise PredicateError(f"{label} is a boolean, not a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise PredicateError(f"{label} {value!r} is not numeric") from exc


def evaluate_predicate(
    predicate: Predicate,
    fields: Mapping,
    tags: Iterable[str] = (),
    segments: Iterable[str] = (),
) -> bool:
    op = predicate.operator
    expected = predicate.value

    if op in ("has_tag", "not_has_tag"):
        present = str(expected) in {str(t) for t in tags}
        return present if op == "has_tag" else not present

    if op in ("in_segment", "not_in_segment"):
        present = str(expected) in {str(s) for s in segments}
        return present if op == "in_segment" else not present

    actual = lookup_field(fields, predicate.field)

    if op == "equals":
        return actual == expected
    if op == "not_equals":
        return actual != expected
    if op == "contains":
        return _contains(actual, expected)
    if op == "not_contains":
        return not _contains(actual, expected)
    if op == "is_empty":
        return _is_empty(actual)
    if op == "is_not_empty":
        return not _is_empty(actual)
    if op in ("greater_than", "less_than"):
        if actual is None:
            return False
        left = _as_number(actual, predicate.field)
        right = _as_number(expected, "value")
        return left > right if op == "greater_than" else left < right

    raise PredicateError(f"unsupported operator {op!r}")


def scheduled_trigger_day(reference: date, offset_days: int, direction: str) -> date:
    """Day a scheduled_date trigger fires for a contact whose date field is ``reference``."""
    offset = -offset_days if direction == "before" else offset_days
    return reference + timedelta(days=offset)


def _as_day(raw: Any) -> date:
    if isinstance(raw, datetime):
        return as_utc(raw).date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str) and len(raw.strip()) >= 10:
        try:
            return date.fromisoformat(raw.strip()[:10])
        except ValueError as exc:
            raise PredicateError(f"{raw!r} is not an ISO date") from exc
    raise PredicateError(f"{raw!r} is not a date")


def _type_matches(trigger, payload: Mapping, today: date) -> bool:
    kind = trigger.type

    if kind == "contact_created":
        if trigger.contact_types:
            return payload.get("contact_type") in trigger.contact_types
        return True

    if kind == "ticket_purchased":
        if trigger.ticket_type_ids:
            return payload.get("ticket_type_id") in trigger.ticket_type_ids
        return True

    if kind == "tag_added":
        return payload.get("tag_id") in trigger.tag_ids

    if kind == "consent_given":
        return payload.get("consent_type") == trigger.consent_type

    if kind == "scheduled_date":
        declared = payload.get("date_field")
        if declared is not None and declared != trigger.date_field:
            return False
        # Without the contact's date the emitter has already picked the day.
        if payload.get("date") is None:
            return True
        fires_on = scheduled_trigger_day(_as_day(payload["date"]), trigger.offset_days, trigger.offset_direction)
        return fires_on == today

    return True


def trigger_matches(trigger, payload: Any, *, today: Optional[date] = None) -> bool:
    """Evaluate a typed trigger config against an event payload.

    ``today`` is the dispatch day, used by scheduled_date offsets.

    Raises TriggerPredicateError when the payload can't be evaluated; the
    dispatcher treats that as a non-match.
    """
    if not isinstance(payload, Mapping):
        raise TriggerPredicateError(f"event payload must be an object, got {type(payload).__name__}")

    try:
        if not _type_matches(trigger, payload, today or utcnow().date()):
            return False
        tags = payload.get("tags") or ()
        segments = payload.get("segments") or ()
        return all(evaluate_predicate(f, payload, tags, segments) for f in trigger.filters)
    except PredicateError as exc:
        raise TriggerPredicateError(str(exc)) from exc
    except TypeError as exc:
        raise TriggerPredicateError(f"payload has unexpected shape: {exc}") from exc
