"""
Clearance Model

Personnel clearance is an integer from 0 (uncleared) to 5 (Archmagos).
Levels are only ever compared with >=; each level also unlocks a set of
capability tags used by the portal to decide which areas a user may open.
"""
from dataclasses import dataclass
from typing import Any, Optional

MIN_CLEARANCE = 0
MAX_CLEARANCE = 5

WILDCARD = "*"


@dataclass(frozen=True)
class ClearanceInfo:
    level: int
    name: str
    title: str
    description: str
    color: str
    capabilities: frozenset


# ─── Level table ───────────────────────────────────────────────────────────
CLEARANCE_LEVELS = {
    0: ClearanceInfo(
        0, "Pending", "Uncleared", "Awaiting verification", "#606068",
        frozenset(),
    ),
    1: ClearanceInfo(
        1, "Level 1", "Initiate", "Basic access to assigned projects", "#4a5568",
        frozenset({"dashboard", "assigned-projects", "letters"}),
    ),
    2: ClearanceInfo(
        2, "Level 2", "Acolyte", "Can contribute to research and view reports", "#2a8a8a",
        frozenset({"dashboard", "assigned-projects", "letters", "reports-view"}),
    ),
    3: ClearanceInfo(
        3, "Level 3", "Adept", "Can create projects and manage department activities", "#b87333",
        frozenset({"dashboard", "all-dept-projects", "letters", "reports", "create-projects"}),
    ),
    4: ClearanceInfo(
        4, "Level 4", "Magos", "Cross-department access, personnel management", "#c9a227",
        frozenset({"dashboard", "all-projects", "letters", "reports", "personnel", "invitations"}),
    ),
    5: ClearanceInfo(
        5, "Level 5", "Archmagos", "Full administrative access", "#c42b2b",
        frozenset({WILDCARD}),
    ),
}


def _coerce(value: Any) -> int:
    # bool is an int subclass; True must not read as level 1
    if isinstance(value, bool) or not isinstance(value, int):
        return MIN_CLEARANCE
    if value < MIN_CLEARANCE or value > MAX_CLEARANCE:
        return MIN_CLEARANCE
    return value


def level_of(subject: Any) -> int:
    """
    Clearance level of an identity, user row or raw value.

    Anything missing, non-integer or outside 0-5 fails closed to 0 so
    display and decision code always has a level to work with.
    """
    if subject is None:
        return MIN_CLEARANCE
    if hasattr(subject, "clearance_level"):
        return _coerce(getattr(subject, "clearance_level"))
    return _coerce(subject)


def meets_requirement(level: Any, required: int) -> bool:
    """True when the level is at or above the requirement."""
    return level_of(level) >= required


def clearance_info(level: Any) -> ClearanceInfo:
    return CLEARANCE_LEVELS[level_of(level)]


def has_capability(level: Any, capability: str) -> bool:
    capabilities = clearance_info(level).capabilities
    return WILDCARD in capabilities or capability in capabilities


def clamp_view_threshold(requested: Optional[int], author_level: Any, default: int = 1) -> int:
    """
    Threshold an author may put on new content.

    Authors cannot gate content above their own clearance, and a missing
    request falls back to the default threshold.
    """
    threshold = default if requested is None else requested
    return max(MIN_CLEARANCE, min(threshold, level_of(author_level)))
