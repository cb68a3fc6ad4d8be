from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from journeys.schemas.steps import StepGraph

TriggerType = Literal[
    "contact_created",
    "ticket_purchased",
    "checked_in",
    "tag_added",
    "consent_given",
    "scheduled_date",
    "talk_submitted",
    "talk_accepted",
    "talk_rejected",
]

ReentryPolicy = Literal["one_shot", "reenterable"]


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    edition_id: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    reentry_policy: ReentryPolicy = "one_shot"
    definition: Optional[StepGraph] = None


class AutomationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    edition_id: Optional[str] = None
    trigger_config: Optional[dict[str, Any]] = None
    reentry_policy: Optional[ReentryPolicy] = None


class AutomationDuplicate(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class AutomationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    edition_id: Optional[str]
    name: str
    description: Optional[str]
    trigger_type: str
    trigger_config: dict[str, Any]
    status: str
    reentry_policy: str
    current_version: Optional[int]
    start_step_id: Optional[str]
    enrollment_count: int
    completed_count: int
    created_by: Optional[str]
    created_at: datetime
    updated_at: datetime


class DefinitionResponse(BaseModel):
    automation_id: str
    version: int
    start_step_id: str
    steps: list[dict[str, Any]]
    created_at: datetime


class AutomationStats(BaseModel):
    automation_id: str
    enrollment_count: int
    completed_count: int
    by_status: dict[str, int]
    failed_steps: int


class ExitActiveResult(BaseModel):
    exited: int
    busy: int


class RecountResult(BaseModel):
    automation_id: str
    enrollment_count: int
    completed_count: int
    changed: bool
