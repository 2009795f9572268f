"""Input checks shared by the store modules and the operations layer."""

import json
import math
from collections.abc import Iterable

from spec_relay.errors import ValidationError


def require_text(field: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "is required and must be a non-empty string")
    return value


def check_enum(field: str, value, allowed: Iterable[str]) -> str:
    allowed = tuple(allowed)
    if value not in allowed:
        raise ValidationError(
            field, f"invalid value {value!r}; expected one of {', '.join(allowed)}"
        )
    return value


def check_str_list(field: str, value) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(field, "must be a list of strings")
    return list(value)


def check_json_map(field: str, value) -> dict:
    """Accept string-keyed maps of str/int/float/bool/None/list/map values."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(field, "must be an object")
    _check_json_value(field, value)
    return value


def _check_json_value(path: str, value) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(path, "numbers must be finite")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(path, f"keys must be strings, got {key!r}")
            _check_json_value(f"{path}.{key}", item)
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_json_value(f"{path}[{i}]", item)
        return
    raise ValidationError(path, f"unsupported value type {type(value).__name__}")


def load_json_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []


def load_json_map(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
