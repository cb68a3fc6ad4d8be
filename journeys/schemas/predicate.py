from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, model_validator

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
    "in_segment",
    "not_in_segment",
    "has_tag",
    "not_has_tag",
]

# Operators that look at tags/segments instead of a field value.
MEMBERSHIP_OPERATORS = {"in_segment", "not_in_segment", "has_tag", "not_has_tag"}
UNARY_OPERATORS = {"is_empty", "is_not_empty"}


class Predicate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = ""
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def _check_operands(self):
        if self.operator not in MEMBERSHIP_OPERATORS and not self.field:
            raise ValueError(f"operator {self.operator!r} requires a field")
        if self.operator not in UNARY_OPERATORS and self.value is None:
            raise ValueError(f"operator {self.operator!r} requires a value")
        return self
