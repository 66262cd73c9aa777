from __future__ import annotations

from typing import Any

from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

_ALLOWED_FILTERS = {
    "default",
    "lower",
    "upper",
    "title",
    "trim",
    "replace",
    "round",
    "length",
    "int",
    "float",
    "join",
}

_ALLOWED_TESTS = {
    "defined",
    "undefined",
    "none",
    "equalto",
}

_MARKERS = ("{{", "{%")


class TemplateRenderError(ValueError):
    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env(strict: bool) -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined if strict else Undefined)
    env.globals = {"range": range}
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


def _sanitize_context(context: dict[str, Any] | None) -> dict[str, Any]:
    return _sanitize_value(context or {}) or {}


def render_template(text: str | None, context: dict[str, Any], strict: bool = True) -> str:
    env = _env(strict=strict)
    tmpl = env.from_string(text or "")
    return tmpl.render(_sanitize_context(context))


def is_template(value: Any) -> bool:
    return isinstance(value, str) and any(marker in value for marker in _MARKERS)


def render_config(config: Any, context: dict[str, Any], strict: bool = True, _path: str = "") -> Any:
    """Render every templated string inside an action config.

    Strings without Jinja markers pass through untouched so literal values keep
    their type. Render failures raise ``TemplateRenderError`` naming the config path.
    """
    if isinstance(config, dict):
        return {
            key: render_config(val, context, strict, f"{_path}.{key}" if _path else str(key))
            for key, val in config.items()
        }
    if isinstance(config, list):
        return [render_config(val, context, strict, f"{_path}[{idx}]") for idx, val in enumerate(config)]
    if not is_template(config):
        return config
    try:
        return render_template(config, context, strict=strict)
    except TemplateError as exc:
        raise TemplateRenderError(_path, str(exc)) from exc
