from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from journeys.services.errors import PermanentEffectError

_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


def render_text(template: str, context: dict) -> str:
    try:
        return _env.from_string(template).render(**context)
    except TemplateError as exc:
        raise PermanentEffectError(f"template error: {exc}") from exc


def render_value(value: Any, context: dict) -> Any:
    """Render every string leaf of a JSON-like structure."""
    if isinstance(value, str):
        if "{{" not in value and "{%" not in value:
            return value
        return render_text(value, context)
    if isinstance(value, dict):
        return {str(k): render_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, context) for v in value]
    return value
