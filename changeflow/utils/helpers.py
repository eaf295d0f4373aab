"""Shared request-parsing helpers for blueprints and filter objects.

parse_bool:  query-string / JSON truthiness ("true", "1", "yes", True)
parse_int:   integer coercion that reports the offending field
parse_date:  ISO date parsing (returns None on empty input)
require:     collect missing required fields into one ValidationError
"""

from datetime import date, datetime

from changeflow.core.exceptions import ValidationError

_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off"}


def parse_bool(value, field="value"):
    """Parse a boolean from JSON or a query string. ``None``/"" stay ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValidationError(f"{field} must be a boolean", details={field: value})


def parse_int(value, field="value"):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={field: value}) from None


def parse_date(value, field="value"):
    """Parse ``YYYY-MM-DD`` (or a full ISO datetime) into a date."""
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date", details={field: value}) from None


def require(data, *fields):
    """Raise ValidationError listing every field that is missing or blank."""
    missing = [f for f in fields if data.get(f) is None or (isinstance(data.get(f), str) and not data[f].strip())]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
