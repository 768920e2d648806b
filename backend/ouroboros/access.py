"""
Access Rule Evaluator

Decides whether an identity may open a project, and in which role.

1. Baseline gate: clearance >= the floor of the project's security class.
2. Explicit rules: any matching rule grants access, even below the floor.
   When several rules match, the highest-precedence role wins; an explicit
   grant always decides the role over the baseline.

Rules can only widen access. Nothing here revokes what the baseline grants.
Every function is pure: it reads the snapshot it is given and nothing else.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from ouroboros.classification import UNKNOWN_CLASS_CLEARANCE, required_clearance
from ouroboros.clearance import level_of
from ouroboros.rules import DEFAULT_ROLE, AccessRule, ProjectRole

# ─── Authority thresholds ──────────────────────────────────────────────────
CREATE_PROJECT_CLEARANCE = 3
MANAGE_RULES_CLEARANCE = 3
MANAGE_ASSIGNMENTS_CLEARANCE = 4
WRITE_ANY_LOGBOOK_CLEARANCE = 4
REVIEW_PROPOSALS_CLEARANCE = 4
TRIAGE_REPORTS_CLEARANCE = 3
MANAGE_PERSONNEL_CLEARANCE = 4
ADMIN_CLEARANCE = 5

BASIS_CLEARANCE = "clearance"


@dataclass(frozen=True)
class Identity:
    """Who is asking. Passed explicitly into every decision."""
    id: Any
    clearance_level: int = 0
    department_ids: frozenset = field(default_factory=frozenset)
    rank_id: Any = None
    username: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.department_ids, frozenset):
            object.__setattr__(self, "department_ids", frozenset(self.department_ids))


@dataclass(frozen=True)
class ProjectView:
    """The slice of a project the evaluator needs."""
    id: Any
    security_class: Any
    access_rules: tuple = ()
    created_by: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.access_rules, tuple):
            object.__setattr__(self, "access_rules", tuple(self.access_rules))


@dataclass(frozen=True)
class AccessDecision:
    """
    Outcome of can_access.

    Attributes:
        allowed: Whether the identity may open the project
        role: Granted project role, None when denied
        basis: What granted access ("clearance" or "rule:<type>")
        required: Baseline clearance for the project's security class
        reason: Explanation when denied
    """
    allowed: bool
    role: Optional[ProjectRole] = None
    basis: Optional[str] = None
    required: Optional[int] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def matching_rules(rules: Sequence[AccessRule], identity: Identity) -> list:
    return [rule for rule in rules if rule.matches(identity)]


def strongest_rule(rules: Sequence[AccessRule]) -> Optional[AccessRule]:
    """Highest-precedence rule; the earliest one wins a tie."""
    best = None
    for rule in rules:
        if best is None or rule.role.precedence > best.role.precedence:
            best = rule
    return best


def can_access(
    project: ProjectView,
    identity: Identity,
    unknown_class_clearance: int = UNKNOWN_CLASS_CLEARANCE,
) -> AccessDecision:
    """Evaluate the baseline gate and the project's rules for one identity."""
    required = required_clearance(project.security_class, default=unknown_class_clearance)

    granted = strongest_rule(matching_rules(project.access_rules, identity))
    if granted is not None:
        return AccessDecision(
            allowed=True,
            role=granted.role,
            basis=f"rule:{granted.access_type.value}",
            required=required,
        )

    if level_of(identity) >= required:
        return AccessDecision(
            allowed=True, role=DEFAULT_ROLE, basis=BASIS_CLEARANCE, required=required
        )

    return AccessDecision(
        allowed=False,
        required=required,
        reason=f"Clearance {level_of(identity)} below required {required}",
    )


def meets_project_floor(
    project: ProjectView,
    subject: Any,
    unknown_class_clearance: int = UNKNOWN_CLASS_CLEARANCE,
) -> bool:
    """Baseline gate only, without rule overrides (used for assignees)."""
    return level_of(subject) >= required_clearance(
        project.security_class, default=unknown_class_clearance
    )


# ─── Authority predicates ──────────────────────────────────────────────────
# One place for the "who may change what" checks used by the routes.

def can_create_project(
    identity: Identity,
    security_class: Any,
    unknown_class_clearance: int = UNKNOWN_CLASS_CLEARANCE,
) -> bool:
    level = level_of(identity)
    if level < CREATE_PROJECT_CLEARANCE:
        return False
    return level >= required_clearance(security_class, default=unknown_class_clearance)


def can_manage_access_rules(identity: Identity, project: ProjectView) -> bool:
    """Clearance 3+ or the project's creator may add and remove rules."""
    if level_of(identity) >= MANAGE_RULES_CLEARANCE:
        return True
    return project.created_by is not None and project.created_by == identity.id


def can_manage_assignments(
    identity: Identity,
    project: ProjectView,
    own_role: Optional[ProjectRole] = None,
    unknown_class_clearance: int = UNKNOWN_CLASS_CLEARANCE,
) -> bool:
    """Requires the project's floor, plus clearance 4+ or being the project lead."""
    if not meets_project_floor(project, identity, unknown_class_clearance):
        return False
    if level_of(identity) >= MANAGE_ASSIGNMENTS_CLEARANCE:
        return True
    return own_role == ProjectRole.LEAD


def can_write_logbook(identity: Identity, decision: AccessDecision, assigned: bool) -> bool:
    if not decision.allowed:
        return False
    return level_of(identity) >= WRITE_ANY_LOGBOOK_CLEARANCE or assigned


def can_edit_project(identity: Identity, decision: AccessDecision, own_role: Optional[ProjectRole]) -> bool:
    if not decision.allowed:
        return False
    return level_of(identity) >= ADMIN_CLEARANCE or own_role == ProjectRole.LEAD


def can_review_proposals(identity: Identity) -> bool:
    return level_of(identity) >= REVIEW_PROPOSALS_CLEARANCE


def can_change_clearance(identity: Identity) -> bool:
    return level_of(identity) >= ADMIN_CLEARANCE
