from __future__ import annotations

from datetime import datetime
from typing import Any

from flask import request

from commerce_ledger.time_utils import parse_iso_datetime


class ValidationError(ValueError):
    """400-level input problem in the HTTP request itself (body, query string)."""


def get_json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("JSON body required")
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def require_fields(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def coerce_int(value: Any, field: str, *, allow_none: bool = False) -> int | None:
    """
    Strict integer coercion for JSON and query values.

    Rejects floats, booleans, decimals and scientific notation ("1e3"):
    quantities and cents are whole numbers.
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")

    # bool is a subclass of int
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    raise ValidationError(f"{field} must be an integer")


def int_arg(name: str, default: int, *, minimum: int = 1, maximum: int = 500) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    value = coerce_int(raw, name)
    return max(minimum, min(value, maximum))


def optional_int_arg(name: str) -> int | None:
    return coerce_int(request.args.get(name), name, allow_none=True)


def date_arg(name: str) -> datetime | None:
    raw = request.args.get(name)
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date or datetime")
