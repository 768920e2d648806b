"""
Project access rules.

A rule is an explicit grant attached to a project. There are four shapes,
one per access type, so a rule never carries a target it does not use:

    UserRule(target_id)        -> the user with that id
    DepartmentRule(target_id)  -> any member of that department
    RankRule(target_id)        -> anyone holding that rank
    ClearanceRule(min_clearance) -> anyone at or above that level

Every rule grants a project role. Rules are built through build_rule(),
which rejects malformed combinations when the rule is created rather than
when it is evaluated.
"""
import enum
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from ouroboros.clearance import MAX_CLEARANCE, MIN_CLEARANCE, level_of
from ouroboros.exceptions import InvalidRule


class ProjectRole(str, enum.Enum):
    LEAD = "lead"
    RESEARCHER = "researcher"
    OBSERVER = "observer"
    CONSULTANT = "consultant"

    @property
    def precedence(self) -> int:
        return ROLE_PRECEDENCE[self]


# Higher wins when several rules match the same requester.
ROLE_PRECEDENCE = {
    ProjectRole.LEAD: 3,
    ProjectRole.RESEARCHER: 2,
    ProjectRole.OBSERVER: 1,
    ProjectRole.CONSULTANT: 0,
}

DEFAULT_ROLE = ProjectRole.RESEARCHER


class AccessType(str, enum.Enum):
    USER = "user"
    DEPARTMENT = "department"
    RANK = "rank"
    CLEARANCE = "clearance"


# ─── Rule variants ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class UserRule:
    access_type: ClassVar[AccessType] = AccessType.USER
    target_id: Any
    role: ProjectRole = DEFAULT_ROLE
    id: Any = None

    def matches(self, identity) -> bool:
        return identity.id == self.target_id


@dataclass(frozen=True)
class DepartmentRule:
    access_type: ClassVar[AccessType] = AccessType.DEPARTMENT
    target_id: Any
    role: ProjectRole = DEFAULT_ROLE
    id: Any = None

    def matches(self, identity) -> bool:
        return self.target_id in identity.department_ids


@dataclass(frozen=True)
class RankRule:
    access_type: ClassVar[AccessType] = AccessType.RANK
    target_id: Any
    role: ProjectRole = DEFAULT_ROLE
    id: Any = None

    def matches(self, identity) -> bool:
        return identity.rank_id is not None and identity.rank_id == self.target_id


@dataclass(frozen=True)
class ClearanceRule:
    access_type: ClassVar[AccessType] = AccessType.CLEARANCE
    min_clearance: int
    role: ProjectRole = DEFAULT_ROLE
    id: Any = None

    def matches(self, identity) -> bool:
        return level_of(identity) >= self.min_clearance


AccessRule = Union[UserRule, DepartmentRule, RankRule, ClearanceRule]

_TARGETED = {
    AccessType.USER: UserRule,
    AccessType.DEPARTMENT: DepartmentRule,
    AccessType.RANK: RankRule,
}


def parse_role(value: Any) -> ProjectRole:
    if value is None:
        return DEFAULT_ROLE
    try:
        return ProjectRole(value)
    except ValueError:
        raise InvalidRule(f"Unknown project role: {value!r}")


def build_rule(
    access_type: Any,
    target_id: Any = None,
    min_clearance: Optional[int] = None,
    role: Any = None,
    id: Any = None,
) -> AccessRule:
    """
    Validate raw rule fields and return the matching variant.

    Exactly one of target_id / min_clearance must be set, chosen by the
    access type. Raises InvalidRule otherwise.
    """
    try:
        kind = AccessType(access_type)
    except ValueError:
        raise InvalidRule(f"Unknown access type: {access_type!r}")
    project_role = parse_role(role)

    if kind is AccessType.CLEARANCE:
        if target_id is not None:
            raise InvalidRule("Clearance rules cannot name a target")
        if min_clearance is None:
            raise InvalidRule("Minimum clearance is required for clearance-based access")
        if isinstance(min_clearance, bool) or not isinstance(min_clearance, int):
            raise InvalidRule(f"Minimum clearance must be an integer, got {min_clearance!r}")
        if not MIN_CLEARANCE <= min_clearance <= MAX_CLEARANCE:
            raise InvalidRule(
                f"Minimum clearance must be between {MIN_CLEARANCE} and {MAX_CLEARANCE}"
            )
        return ClearanceRule(min_clearance=min_clearance, role=project_role, id=id)

    if target_id is None or target_id == "":
        raise InvalidRule(f"Target ID is required for {kind.value} access")
    if min_clearance is not None:
        raise InvalidRule(f"{kind.value.capitalize()} rules cannot set a minimum clearance")
    return _TARGETED[kind](target_id=target_id, role=project_role, id=id)


def rule_from_row(row) -> AccessRule:
    """Convert a stored ProjectAccessRule row back into its variant."""
    return build_rule(
        row.access_type,
        target_id=row.target_id,
        min_clearance=row.min_clearance,
        role=row.role,
        id=row.id,
    )


def rule_columns(rule: AccessRule) -> dict:
    """Column values for persisting a rule."""
    return {
        "access_type": rule.access_type.value,
        "target_id": getattr(rule, "target_id", None),
        "min_clearance": getattr(rule, "min_clearance", None),
        "role": rule.role.value,
    }


def describe_rule(rule: AccessRule) -> str:
    if isinstance(rule, ClearanceRule):
        return f"Clearance Level {rule.min_clearance}+"
    return f"{rule.access_type.value}:{rule.target_id}"
