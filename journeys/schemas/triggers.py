"""Typed trigger configurations, one model per trigger type."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from journeys.schemas.predicate import Predicate


class _TriggerBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Extra payload filters; all must hold for the trigger to match.
    filters: list[Predicate] = Field(default_factory=list)


class ContactCreatedTrigger(_TriggerBase):
    type: Literal["contact_created"] = "contact_created"
    contact_types: list[str] = Field(default_factory=list)


class TicketPurchasedTrigger(_TriggerBase):
    type: Literal["ticket_purchased"] = "ticket_purchased"
    ticket_type_ids: list[str] = Field(default_factory=list)


class CheckedInTrigger(_TriggerBase):
    type: Literal["checked_in"] = "checked_in"


class TagAddedTrigger(_TriggerBase):
    type: Literal["tag_added"] = "tag_added"
    tag_ids: list[str] = Field(min_length=1)


class ConsentGivenTrigger(_TriggerBase):
    type: Literal["consent_given"] = "consent_given"
    consent_type: Literal["marketing", "newsletter", "partner"]


class ScheduledDateTrigger(_TriggerBase):
    type: Literal["scheduled_date"] = "scheduled_date"
    date_field: str = Field(min_length=1)
    offset_days: int = Field(default=0, ge=0)
    offset_direction: Literal["before", "after"] = "after"


class TalkSubmittedTrigger(_TriggerBase):
    type: Literal["talk_submitted"] = "talk_submitted"


class TalkAcceptedTrigger(_TriggerBase):
    type: Literal["talk_accepted"] = "talk_accepted"


class TalkRejectedTrigger(_TriggerBase):
    type: Literal["talk_rejected"] = "talk_rejected"


TriggerConfig = Annotated[
    Union[
        ContactCreatedTrigger,
        TicketPurchasedTrigger,
        CheckedInTrigger,
        TagAddedTrigger,
        ConsentGivenTrigger,
        ScheduledDateTrigger,
        TalkSubmittedTrigger,
        TalkAcceptedTrigger,
        TalkRejectedTrigger,
    ],
    Field(discriminator="type"),
]

_trigger_adapter = TypeAdapter(TriggerConfig)


def parse_trigger_config(trigger_type: str, raw: Any) -> TriggerConfig:
    """Validate a stored or submitted config against its trigger type.

    The ``type`` key may be omitted; it is filled from ``trigger_type``. A
    mismatching ``type`` is rejected.
    """
    data = dict(raw or {})
    declared = data.setdefault("type", trigger_type)
    if declared != trigger_type:
        raise ValueError(f"trigger_config type {declared!r} does not match trigger_type {trigger_type!r}")
    return _trigger_adapter.validate_python(data)
