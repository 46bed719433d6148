"""
Schedule spec normalization and cron evaluation.

Interval specs are converted to canonical cron strings; six-field
expressions carry seconds as their first field.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from app.core.clock import as_utc, now_utc
from app.core.exceptions import ValidationError

INTERVAL_UNITS = ("seconds", "minutes", "hours", "days", "weeks")


def _field(spec: Any, name: str) -> Any:
    if isinstance(spec, Mapping):
        return spec.get(name)
    return getattr(spec, name, None)


def schedule_to_cron(spec: Mapping[str, Any] | Any) -> str:
    """
    Convert an interval/cron schedule spec to a cron expression.

    Raises ValidationError for an unknown mode or interval unit, or when the
    mode's required fields are missing.
    """
    mode = _field(spec, "mode")
    if mode == "cron":
        expression = _field(spec, "expression")
        if not isinstance(expression, str) or not expression.strip():
            raise ValidationError("Cron schedule requires an expression")
        return expression

    if mode != "interval":
        raise ValidationError(f"Unknown schedule mode: {mode}")

    value = _field(spec, "value")
    unit = _field(spec, "unit")
    if value is None:
        raise ValidationError("Interval schedule requires a value")
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"Interval value must be a positive integer, got {value!r}")

    if unit == "seconds":
        return f"*/{value} * * * * *"
    if unit == "minutes":
        return f"*/{value} * * * *"
    if unit == "hours":
        return f"0 */{value} * * *"
    if unit == "days":
        return f"0 0 */{value} * *"
    if unit == "weeks":
        return f"0 0 * * 0/{value}"
    raise ValidationError(f"Unknown interval unit: {unit}")


def resolve_timezone(name: str | None) -> ZoneInfo:
    if name is not None and not isinstance(name, str):
        raise ValidationError(f"Unknown timezone: {name!r}")
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def build_croniter(expression: str, start: datetime) -> croniter:
    # croniter reads a sixth field as seconds, placed last.
    fields = expression.split()
    if len(fields) == 6:
        expression = " ".join(fields[1:] + fields[:1])
    elif len(fields) != 5:
        raise ValidationError(f"Invalid cron expression: {expression}")
    try:
        return croniter(expression, start)
    except (ValueError, KeyError) as exc:
        raise ValidationError(f"Invalid cron expression: {expression}") from exc


def validate_cron_expression(expression: str) -> str:
    build_croniter(expression, now_utc())
    return expression


def next_fire_time(
    expression: str,
    timezone: str | None = None,
    after: datetime | None = None,
) -> datetime:
    """
    Next occurrence of the expression after `after`, evaluated in the
    schedule's local timezone and returned in UTC.
    """
    tz = resolve_timezone(timezone)
    base = as_utc(after) if after is not None else now_utc()
    iterator = build_croniter(expression, base.astimezone(tz))
    return as_utc(iterator.get_next(datetime))


def normalize_schedule(spec: Mapping[str, Any] | Any) -> str:
    """
    Full check of a schedule spec before it is stored: the cron expression
    must parse and the timezone must exist. Returns the cron expression.
    """
    expression = schedule_to_cron(spec)
    validate_cron_expression(expression)
    resolve_timezone(_field(spec, "timezone"))
    return expression
