"""
Security Classification Model

Projects (and the reports filed against them) carry a colour-coded
classification. Each class maps to the minimum clearance needed to pass
the baseline gate.
"""
import enum
from typing import Any

from ouroboros.clearance import level_of


class SecurityClass(str, enum.Enum):
    GREEN = "GREEN"
    AMBER = "AMBER"
    RED = "RED"
    BLACK = "BLACK"


SECURITY_CLASS_REQUIREMENTS = {
    SecurityClass.GREEN: 1,
    SecurityClass.AMBER: 2,
    SecurityClass.RED: 4,
    SecurityClass.BLACK: 5,
}

# Requirement for classes not in the table above. See DESIGN.md.
UNKNOWN_CLASS_CLEARANCE = 1


def parse_security_class(value: Any):
    """Return the SecurityClass for a member or name, or None if unrecognised."""
    if isinstance(value, SecurityClass):
        return value
    if isinstance(value, str):
        try:
            return SecurityClass(value.strip().upper())
        except ValueError:
            return None
    return None


def required_clearance(security_class: Any, default: int = UNKNOWN_CLASS_CLEARANCE) -> int:
    """Minimum clearance for a security class. Never raises."""
    parsed = parse_security_class(security_class)
    if parsed is None:
        return default
    return SECURITY_CLASS_REQUIREMENTS[parsed]


def visible_security_classes(level: Any) -> list[SecurityClass]:
    """Classes whose baseline gate the given clearance passes."""
    lvl = level_of(level)
    return [sc for sc, req in SECURITY_CLASS_REQUIREMENTS.items() if lvl >= req]
