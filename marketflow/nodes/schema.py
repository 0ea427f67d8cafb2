"""Declarative validation for dynamic node configuration maps."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
from urllib.parse import urlparse

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class FieldRule:
    """Constraints for one configuration field."""

    type: Optional[str] = None
    required: bool = False
    default: Any = None
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    options: Optional[Union[Sequence[Any], Mapping[Any, Any]]] = None


def _is_int(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and value.strip().lstrip("-").isdigit()


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def _is_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


_TYPE_CHECKS = {
    "string": (lambda v: isinstance(v, str), "must be a string"),
    "int": (_is_int, "must be an integer"),
    "integer": (_is_int, "must be an integer"),
    "float": (_is_number, "must be a number"),
    "number": (_is_number, "must be a number"),
    "bool": (lambda v: isinstance(v, bool), "must be a boolean"),
    "boolean": (lambda v: isinstance(v, bool), "must be a boolean"),
    "array": (lambda v: isinstance(v, (list, tuple)), "must be an array"),
    "object": (lambda v: isinstance(v, Mapping), "must be an object"),
    "email": (lambda v: isinstance(v, str) and bool(_EMAIL.match(v)), "must be a valid email address"),
    "url": (_is_url, "must be a valid URL"),
    "date": (_is_date, "must be a valid date"),
}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def validate_config(config: Mapping[str, Any], schema: Mapping[str, FieldRule]) -> List[str]:
    """Check ``config`` against ``schema`` and return every violation found.

    Absent optional fields are skipped. Range, length, pattern and option
    checks only apply once the value passed its type check.
    """
    errors: List[str] = []
    for field, rule in schema.items():
        value = config.get(field)
        if _is_empty(value):
            if rule.required:
                errors.append(f"Field '{field}' is required")
            continue

        if rule.type is not None:
            check = _TYPE_CHECKS.get(rule.type)
            if check is None:
                errors.append(f"Field '{field}' has unknown type '{rule.type}'")
                continue
            predicate, message = check
            if not predicate(value):
                errors.append(f"Field '{field}' {message}")
                continue

        if _is_number(value):
            number = float(value)
            if rule.min is not None and number < rule.min:
                errors.append(f"Field '{field}' must be at least {rule.min:g}")
            if rule.max is not None and number > rule.max:
                errors.append(f"Field '{field}' must be at most {rule.max:g}")

        if isinstance(value, str):
            if rule.min_length is not None and len(value) < rule.min_length:
                errors.append(f"Field '{field}' must be at least {rule.min_length} characters")
            if rule.max_length is not None and len(value) > rule.max_length:
                errors.append(f"Field '{field}' must be at most {rule.max_length} characters")
            if rule.pattern is not None and not re.search(rule.pattern, value):
                errors.append(f"Field '{field}' format is invalid")

        if rule.options is not None:
            allowed = list(rule.options)
            if value not in allowed:
                errors.append(
                    f"Field '{field}' must be one of: {', '.join(str(o) for o in allowed)}"
                )
    return errors


def apply_defaults(config: Mapping[str, Any], schema: Mapping[str, FieldRule]) -> Dict[str, Any]:
    """Return a copy of ``config`` with schema defaults filled in for absent fields."""
    merged = dict(config)
    for field, rule in schema.items():
        if rule.default is not None and _is_empty(merged.get(field)):
            merged[field] = rule.default
    return merged
