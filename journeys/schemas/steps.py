"""Step definition graph.

A definition is an adjacency list of typed step records. Each step names its
successors through explicit edges (``next_step_id`` for linear steps,
``true_step_id``/``false_step_id`` for conditions); a missing edge is a
terminal exit. Validation happens when the graph is built, so a stored
definition is always well formed.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, model_validator

from journeys.schemas.predicate import Predicate

StepId = Annotated[str, StringConstraints(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_.:-]+$")]

WaitUnit = Literal["minutes", "hours", "days"]
FailurePolicy = Literal["continue", "fail"]

EFFECT_STEP_TYPES = ("send_email", "add_tag", "remove_tag", "update_field", "webhook")


class _StepBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: StepId
    name: Optional[str] = None

    def edges(self) -> list[str]:
        return []


class _LinearStep(_StepBase):
    next_step_id: Optional[StepId] = None

    def edges(self) -> list[str]:
        return [self.next_step_id] if self.next_step_id else []


class _EffectStep(_LinearStep):
    on_failure: FailurePolicy = "continue"
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)

    @property
    def fail_hard(self) -> bool:
        return self.on_failure == "fail"


class SendEmailStep(_EffectStep):
    type: Literal["send_email"] = "send_email"
    template_id: str = Field(min_length=1)
    subject: Optional[str] = None
    from_name: Optional[str] = None


class WaitStep(_LinearStep):
    """Park the enrollment until a resume instant.

    Exactly one mode: a relative ``duration``+``unit``; an absolute ``until``;
    or a ``date_field`` on the contact shifted by ``offset_days``.
    """

    type: Literal["wait"] = "wait"
    duration: Optional[int] = Field(default=None, ge=1)
    unit: Optional[WaitUnit] = None
    until: Optional[datetime] = None
    date_field: Optional[str] = None
    offset_days: int = Field(default=0, ge=0)
    offset_direction: Literal["before", "after"] = "after"

    @model_validator(mode="after")
    def _one_mode(self):
        relative = self.duration is not None or self.unit is not None
        if relative and (self.duration is None or self.unit is None):
            raise ValueError("duration and unit are required together")
        modes = [relative, self.until is not None, bool(self.date_field)]
        if sum(modes) != 1:
            raise ValueError("wait step needs exactly one of duration+unit, until, date_field")
        return self


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    predicate: Predicate
    true_step_id: Optional[StepId] = None
    false_step_id: Optional[StepId] = None

    def edges(self) -> list[str]:
        return [s for s in (self.true_step_id, self.false_step_id) if s]


class AddTagStep(_EffectStep):
    type: Literal["add_tag"] = "add_tag"
    tag: str = Field(min_length=1)


class RemoveTagStep(_EffectStep):
    type: Literal["remove_tag"] = "remove_tag"
    tag: str = Field(min_length=1)


class UpdateFieldStep(_EffectStep):
    type: Literal["update_field"] = "update_field"
    field: str = Field(min_length=1)
    value: Any = None


class WebhookStep(_EffectStep):
    type: Literal["webhook"] = "webhook"
    url: AnyHttpUrl
    method: Literal["GET", "POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: Optional[dict[str, Any]] = None
    secret: Optional[str] = None


Step = Annotated[
    Union[
        SendEmailStep,
        WaitStep,
        ConditionStep,
        AddTagStep,
        RemoveTagStep,
        UpdateFieldStep,
        WebhookStep,
    ],
    Field(discriminator="type"),
]


class StepGraph(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start_step_id: StepId
    steps: list[Step] = Field(min_length=1)

    @model_validator(mode="after")
    def _validate_graph(self):
        by_id: dict[str, Any] = {}
        for step in self.steps:
            if step.id in by_id:
                raise ValueError(f"duplicate step id {step.id!r}")
            by_id[step.id] = step

        if self.start_step_id not in by_id:
            raise ValueError(f"start step {self.start_step_id!r} not found")

        for step in self.steps:
            for target in step.edges():
                if target not in by_id:
                    raise ValueError(f"step {step.id!r} points at unknown step {target!r}")

        loop = _find_tight_loop(by_id)
        if loop:
            raise ValueError("steps form a loop without a wait step that always parks: " + " -> ".join(loop))
        return self

    def get(self, step_id: Optional[str]):
        if not step_id:
            return None
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def reachable_ids(self) -> list[str]:
        seen: list[str] = []
        stack = [self.start_step_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.append(current)
            step = self.get(current)
            if step is not None:
                stack.extend(reversed(step.edges()))
        return seen


def _always_parks(step) -> bool:
    # Absolute and date-field waits stop parking once their instant has passed.
    return step.type == "wait" and step.duration is not None


def _find_tight_loop(by_id: dict) -> Optional[list[str]]:
    """Return a cycle with no duration wait on it, if any."""
    white, grey, black = 0, 1, 2
    color = {step_id: white for step_id in by_id}
    path: list[str] = []

    def visit(step_id: str) -> Optional[list[str]]:
        color[step_id] = grey
        path.append(step_id)
        for target in by_id[step_id].edges():
            if _always_parks(by_id[target]):
                continue
            if color[target] == grey:
                return path[path.index(target):] + [target]
            if color[target] == white:
                found = visit(target)
                if found:
                    return found
        path.pop()
        color[step_id] = black
        return None

    for step_id, step in by_id.items():
        if not _always_parks(step) and color[step_id] == white:
            found = visit(step_id)
            if found:
                return found
    return None


_step_adapter = TypeAdapter(Step)


def parse_step(raw: Any):
    return _step_adapter.validate_python(raw)
