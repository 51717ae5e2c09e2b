from __future__ import annotations

from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

_ALLOWED_FILTERS = {
    "default",
    "lower",
    "upper",
    "title",
    "trim",
    "replace",
    "truncate",
    "length",
}

_ALLOWED_TESTS = {
    "defined",
    "undefined",
    "none",
}


class TemplateRenderError(ValueError):
    pass


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env(strict: bool) -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined if strict else Undefined, trim_blocks=True)
    env.globals = {}
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    env.tests = {key: val for key, val in env.tests.items() if key in _ALLOWED_TESTS}
    return env


def _sanitize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(key): _sanitize_value(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(val) for val in value]
    return str(value)


def validate_template(text: str | None) -> str | None:
    """Return a syntax error message, or None when the template parses."""
    if not text:
        return None
    try:
        _env(strict=False).parse(text)
    except TemplateSyntaxError as exc:
        return f"line {exc.lineno or 1}: {exc.message}"
    return None


def render_template(text: str | None, context: dict[str, Any], strict: bool = True) -> str:
    env = _env(strict=strict)
    try:
        tmpl = env.from_string(text or "")
        return tmpl.render(_sanitize_value(context or {}) or {})
    except Exception as exc:
        raise TemplateRenderError(str(exc)) from exc
