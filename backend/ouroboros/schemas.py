"""
Request field normalisation shared by the API schemas.

Choice fields are stored in database enums, so anything that is not an
exact stored value has to be rejected before it reaches a query. These
helpers canonicalise case and raise ValueError, which pydantic turns into
a 422 response.
"""
from typing import Optional

from fastapi import HTTPException

from ouroboros.classification import parse_security_class
from ouroboros.models import (
    ENTRY_TYPES, PRIORITIES, REPORT_STATUSES, REPORT_TYPES, THREAT_LEVELS,
)


def security_class_name(value: Optional[str]) -> Optional[str]:
    """Canonical security class name ("red" -> "RED"). Unknown names are rejected."""
    if value is None:
        return None
    parsed = parse_security_class(value)
    if parsed is None:
        raise ValueError(f"Unknown security class: {value!r}")
    return parsed.value


def choice(value: Optional[str], allowed: tuple, field: str) -> Optional[str]:
    if value is None:
        return None
    normalised = value.strip().lower()
    if normalised not in allowed:
        raise ValueError(f"{field} must be one of: {', '.join(allowed)}")
    return normalised


def threat_level(value):
    return choice(value, THREAT_LEVELS, "threat_level")


def entry_type(value):
    return choice(value, ENTRY_TYPES, "entry_type")


def report_type(value):
    return choice(value, REPORT_TYPES, "report_type")


def priority(value):
    return choice(value, PRIORITIES, "priority")


def report_status(value):
    return choice(value, REPORT_STATUSES, "status")


def query_value(check, value):
    """Apply one of the checks above to a query parameter, answering 422 on bad input."""
    try:
        return check(value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
