"""
Proposal promotion.

Approving a proposal turns it into a project: classification and
descriptive fields are copied across, each clearance requirement becomes a
clearance-type access rule, and the submitter is made project lead.

promote_proposal_to_project() only computes that result. Persisting it,
and making sure it happens once per proposal, is the store's job.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from ouroboros.exceptions import AlreadyApproved, ProposalRejected, ProposalStateError
from ouroboros.rules import AccessType, ProjectRole, build_rule

PROJECT_CODE_PREFIX = "ORB"


class ProposalStatus(str, enum.Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVISION = "revision"


SETTLED_STATUSES = (ProposalStatus.APPROVED, ProposalStatus.REJECTED)
# Statuses a reviewer may set without settling the proposal.
REVIEW_STATUSES = (ProposalStatus.PENDING, ProposalStatus.UNDER_REVIEW, ProposalStatus.REVISION)
# Statuses in which the submitter may still edit.
EDITABLE_STATUSES = (ProposalStatus.PENDING, ProposalStatus.REVISION)


class ProjectStatus(str, enum.Enum):
    ACTIVE = "active"
    REVIEW = "review"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"
    EXPUNGED = "expunged"


@dataclass(frozen=True)
class ProposalDepartment:
    department_id: Any
    is_primary: bool = False


@dataclass(frozen=True)
class Proposal:
    id: Any
    name: str
    submitted_by: Any
    security_class: str = "GREEN"
    threat_level: str = "low"
    status: ProposalStatus = ProposalStatus.PENDING
    codename: Optional[str] = None
    object_class: Optional[str] = None
    site_assignment: Optional[str] = None
    description: Optional[str] = None
    containment_procedures: Optional[str] = None
    research_protocols: Optional[str] = None
    departments: tuple = ()
    clearance_requirements: tuple = ()
    created_project_id: Any = None


@dataclass(frozen=True)
class ProjectDraft:
    name: str
    security_class: str
    threat_level: str
    created_by: Any
    project_code: Optional[str] = None
    department_id: Any = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    codename: Optional[str] = None
    object_class: Optional[str] = None
    site_assignment: Optional[str] = None
    description: Optional[str] = None
    containment_procedures: Optional[str] = None
    research_protocols: Optional[str] = None
    progress: int = 0


@dataclass(frozen=True)
class AssignmentDraft:
    user_id: Any
    role: ProjectRole = ProjectRole.LEAD


@dataclass(frozen=True)
class Promotion:
    project: ProjectDraft
    access_rules: tuple = ()
    lead_assignment: Optional[AssignmentDraft] = None
    departments: tuple = field(default_factory=tuple)


def ensure_approvable(proposal: Proposal) -> None:
    """Raise if the proposal has already been settled."""
    status = ProposalStatus(proposal.status)
    if status is ProposalStatus.APPROVED:
        raise AlreadyApproved(
            "Proposal already approved",
            proposal_id=proposal.id,
            project_id=proposal.created_project_id,
        )
    if status is ProposalStatus.REJECTED:
        raise ProposalRejected("Cannot approve a rejected proposal", proposal_id=proposal.id)


def ensure_reviewable(proposal: Proposal, status) -> ProposalStatus:
    """
    Check a reviewer's status change and return the target status.

    Approval and rejection have their own operations; a settled proposal
    cannot move at all.
    """
    target = ProposalStatus(status)
    if target not in REVIEW_STATUSES:
        raise ProposalStateError(
            f"Status {target.value!r} is set by approving or rejecting the proposal",
            proposal_id=proposal.id,
        )
    if ProposalStatus(proposal.status) in SETTLED_STATUSES:
        raise ProposalStateError(
            f"Proposal already {ProposalStatus(proposal.status).value}",
            proposal_id=proposal.id,
            project_id=proposal.created_project_id,
        )
    return target


def ensure_editable(proposal: Proposal) -> None:
    if ProposalStatus(proposal.status) not in EDITABLE_STATUSES:
        raise ProposalStateError(
            "Only pending proposals or those returned for revision can be edited",
            proposal_id=proposal.id,
        )


def unique_departments(departments) -> tuple:
    """One entry per department, in first-seen order. Primary if any duplicate was."""
    merged = {}
    for dept in departments:
        known = merged.get(dept.department_id)
        is_primary = dept.is_primary or (known is not None and known.is_primary)
        merged[dept.department_id] = ProposalDepartment(dept.department_id, is_primary)
    return tuple(merged.values())


def primary_department(departments) -> Any:
    for dept in departments:
        if dept.is_primary:
            return dept.department_id
    return departments[0].department_id if departments else None


def requirement_rules(requirements) -> tuple:
    """One clearance rule per distinct requirement, first occurrence order."""
    seen = []
    for level in requirements:
        if level not in seen:
            seen.append(level)
    return tuple(
        build_rule(AccessType.CLEARANCE, min_clearance=level, role=ProjectRole.RESEARCHER)
        for level in seen
    )


def promote_proposal_to_project(proposal: Proposal, project_code: Optional[str] = None) -> Promotion:
    """
    Compute the project an approved proposal becomes.

    project_code may be left out when the caller assigns it later, once the
    approval has been claimed.
    """
    ensure_approvable(proposal)
    departments = unique_departments(proposal.departments)

    project = ProjectDraft(
        project_code=project_code,
        name=proposal.name,
        codename=proposal.codename,
        object_class=proposal.object_class,
        security_class=proposal.security_class,
        threat_level=proposal.threat_level,
        department_id=primary_department(departments),
        site_assignment=proposal.site_assignment,
        description=proposal.description,
        containment_procedures=proposal.containment_procedures,
        research_protocols=proposal.research_protocols,
        created_by=proposal.submitted_by,
    )
    return Promotion(
        project=project,
        access_rules=requirement_rules(proposal.clearance_requirements),
        lead_assignment=AssignmentDraft(user_id=proposal.submitted_by, role=ProjectRole.LEAD),
        departments=departments,
    )


def next_sequence_code(prefix: str, year: int, last_code: Optional[str]) -> str:
    """`<prefix>-<year>-<NNNN>`, one past the last code issued this year."""
    number = 1
    if last_code:
        try:
            number = int(last_code.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            number = 1
    return f"{prefix}-{year}-{number:04d}"


def next_project_code(last_code: Optional[str], year: int) -> str:
    return next_sequence_code(PROJECT_CODE_PREFIX, year, last_code)

