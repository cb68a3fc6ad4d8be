from journeys.models.automation import Automation, AutomationVersion
from journeys.models.enrollment import Enrollment
from journeys.models.execution_log import ExecutionLogEntry
from journeys.models.trigger_event import TriggerEvent

__all__ = [
    "Automation",
    "AutomationVersion",
    "Enrollment",
    "ExecutionLogEntry",
    "TriggerEvent",
]
