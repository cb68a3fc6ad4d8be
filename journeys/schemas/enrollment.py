from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from journeys.schemas.automation import TriggerType


class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    automation_id: str
    automation_version: int
    contact_id: str
    cycle: int
    current_step_id: Optional[str]
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    exited_at: Optional[datetime]
    exit_reason: Optional[str]
    wait_until: Optional[datetime]
    steps_executed: int


class EnrollmentListResponse(BaseModel):
    limit: int
    offset: int
    rows: list[EnrollmentResponse]


class ExecutionLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    enrollment_id: str
    contact_id: str
    step_id: str
    step_type: str
    status: str
    attempts: int
    idempotency_key: Optional[str]
    is_recovery: bool
    input: Optional[dict[str, Any]]
    output: Optional[dict[str, Any]]
    error: Optional[str]
    executed_at: datetime
    finalized_at: Optional[datetime]


class ExitEnrollmentRequest(BaseModel):
    reason: str = Field(default="manual_exit", min_length=1, max_length=500)


class EmitEventRequest(BaseModel):
    type: TriggerType
    contact_id: str = Field(min_length=1)
    edition_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class EmitEventResponse(BaseModel):
    id: int
    accepted: bool
    duplicate: bool


class ManualEnrollmentRequest(BaseModel):
    contact_id: str = Field(min_length=1)
