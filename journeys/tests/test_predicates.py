from datetime import date

import pytest

from journeys.schemas.predicate import Predicate
from journeys.schemas.triggers import parse_trigger_config
from journeys.services.errors import PredicateError, TriggerPredicateError
from journeys.services.predicates import evaluate_predicate, lookup_field, scheduled_trigger_day, trigger_matches


def test_lookup_field_walks_nested_mappings():
    data = {"ticket": {"type": {"id": "vip"}}}
    assert lookup_field(data, "ticket.type.id") == "vip"
    assert lookup_field(data, "ticket.missing.id") is None
    assert lookup_field(data, "ticket.type.id.deeper") is None


@pytest.mark.parametrize(
    "operator,value,expected",
    [
        ("equals", "Acme", True),
        ("not_equals", "Acme", False),
        ("contains", "cm", True),
        ("not_contains", "zz", True),
    ],
)
def test_field_operators(operator, value, expected):
    predicate = Predicate(field="company", operator=operator, value=value)
    assert evaluate_predicate(predicate, {"company": "Acme"}) is expected


def test_emptiness_operators():
    assert evaluate_predicate(Predicate(field="phone", operator="is_empty"), {"phone": ""})
    assert evaluate_predicate(Predicate(field="phone", operator="is_empty"), {})
    assert evaluate_predicate(Predicate(field="tags", operator="is_not_empty"), {"tags": ["a"]})


def test_numeric_comparisons():
    gt = Predicate(field="age", operator="greater_than", value=18)
    assert evaluate_predicate(gt, {"age": "21"})
    assert not evaluate_predicate(gt, {"age": 10})
    assert not evaluate_predicate(gt, {})


def test_numeric_comparison_on_text_raises():
    with pytest.raises(PredicateError):
        evaluate_predicate(Predicate(field="age", operator="less_than", value=3), {"age": "unknown"})


def test_tag_and_segment_membership():
    assert evaluate_predicate(Predicate(operator="has_tag", value="VIP"), {}, tags=["VIP"])
    assert evaluate_predicate(Predicate(operator="not_has_tag", value="VIP"), {}, tags=[])
    assert evaluate_predicate(Predicate(operator="in_segment", value="speakers"), {}, segments=["speakers"])
    assert not evaluate_predicate(Predicate(operator="not_in_segment", value="speakers"), {}, segments=["speakers"])


def test_ticket_trigger_filters_on_ticket_type():
    trigger = parse_trigger_config("ticket_purchased", {"ticket_type_ids": ["early-bird"]})
    assert trigger_matches(trigger, {"ticket_type_id": "early-bird"})
    assert not trigger_matches(trigger, {"ticket_type_id": "regular"})


def test_contact_created_without_filter_matches_anything():
    trigger = parse_trigger_config("contact_created", {})
    assert trigger_matches(trigger, {"contact_type": "speaker"})


def test_consent_trigger_matches_consent_type():
    trigger = parse_trigger_config("consent_given", {"consent_type": "newsletter"})
    assert trigger_matches(trigger, {"consent_type": "newsletter"})
    assert not trigger_matches(trigger, {"consent_type": "marketing"})


def test_scheduled_date_trigger_checks_declared_field():
    trigger = parse_trigger_config("scheduled_date", {"date_field": "event_start"})
    assert trigger_matches(trigger, {})
    assert trigger_matches(trigger, {"date_field": "event_start"})
    assert not trigger_matches(trigger, {"date_field": "birthday"})


def test_scheduled_date_offset_picks_the_firing_day():
    trigger = parse_trigger_config(
        "scheduled_date", {"date_field": "event_start", "offset_days": 3, "offset_direction": "before"}
    )
    payload = {"date_field": "event_start", "date": "2026-06-10T18:00:00Z"}

    assert scheduled_trigger_day(date(2026, 6, 10), 3, "before") == date(2026, 6, 7)
    assert trigger_matches(trigger, payload, today=date(2026, 6, 7))
    assert not trigger_matches(trigger, payload, today=date(2026, 6, 10))

    after = parse_trigger_config("scheduled_date", {"date_field": "event_start", "offset_days": 1})
    assert trigger_matches(after, payload, today=date(2026, 6, 11))

    with pytest.raises(TriggerPredicateError):
        trigger_matches(trigger, {"date": "soon"}, today=date(2026, 6, 7))


def test_trigger_filters_must_all_hold():
    trigger = parse_trigger_config(
        "checked_in",
        {"filters": [{"field": "gate", "operator": "equals", "value": "north"}]},
    )
    assert trigger_matches(trigger, {"gate": "north"})
    assert not trigger_matches(trigger, {"gate": "south"})


def test_unevaluable_payload_raises_trigger_predicate_error():
    trigger = parse_trigger_config(
        "checked_in",
        {"filters": [{"field": "badge_count", "operator": "greater_than", "value": 1}]},
    )
    with pytest.raises(TriggerPredicateError):
        trigger_matches(trigger, {"badge_count": "lots"})
    with pytest.raises(TriggerPredicateError):
        trigger_matches(trigger, ["not", "a", "mapping"])
