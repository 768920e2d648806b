"""
Storage operations around the access core.

Loads the snapshots the pure evaluator works on (Identity, ProjectView,
Proposal) and persists the results it produces. Invariants that need a
transaction, such as one project per approved proposal and one assignment
per (project, user), are enforced here.
"""
import logging
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ouroboros.access import Identity, ProjectView
from ouroboros.clearance import clamp_view_threshold
from ouroboros.exceptions import AlreadyApproved, AlreadyExists, ProposalRejected, ProposalStateError
from ouroboros.models import (
    Department, DepartmentMember, LogbookEntry, Project, ProjectAccessRule, ProjectAssignment,
    ProjectDepartment, ProjectProposal, ProposalClearanceRequirement, ProposalDepartment, Rank,
    Report, ReportRead, User,
)
from ouroboros.proposals import (
    SETTLED_STATUSES, Proposal, ProposalDepartment as ProposalDepartmentRef,
    ProposalStatus, ensure_approvable, ensure_editable, ensure_reviewable, next_project_code,
    next_sequence_code, promote_proposal_to_project, unique_departments,
)
from ouroboros.rules import AccessRule, ProjectRole, rule_columns, rule_from_row

logger = logging.getLogger(__name__)

REPORT_TYPE_PREFIXES = {
    "general": "GR",
    "incident": "IR",
    "intel": "IN",
    "status": "SR",
    "containment_breach": "CB",
}


# ─── Snapshots ─────────────────────────────────────────────────────────────

def identity_from_user(user: User) -> Identity:
    """Build the evaluator's Identity from a user row and its memberships."""
    memberships = list(user.memberships or [])
    rank_id = None
    for m in memberships:
        if m.department_id == user.primary_department_id and m.rank_id is not None:
            rank_id = m.rank_id
            break
    if rank_id is None:
        rank_id = next((m.rank_id for m in memberships if m.rank_id is not None), None)

    return Identity(
        id=user.id,
        clearance_level=user.clearance_level,
        department_ids=frozenset(m.department_id for m in memberships),
        rank_id=rank_id,
        username=user.username,
    )


async def load_identity(db: AsyncSession, user_id: Any) -> Optional[Identity]:
    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return identity_from_user(user)


def project_view(project: Project) -> ProjectView:
    return ProjectView(
        id=project.id,
        security_class=project.security_class,
        access_rules=tuple(rule_from_row(r) for r in project.access_rules),
        created_by=project.created_by,
    )


async def get_project(db: AsyncSession, project_id: Any) -> Optional[Project]:
    return await db.get(Project, project_id)


async def list_projects(
    db: AsyncSession,
    status: Optional[str] = None,
    security_class: Optional[str] = None,
) -> list:
    query = select(Project).order_by(Project.updated_at.desc())
    if status:
        query = query.where(Project.status == status)
    if security_class:
        query = query.where(Project.security_class == security_class)
    result = await db.execute(query)
    return list(result.scalars().all())


async def _find(db: AsyncSession, model, keys: dict):
    result = await db.execute(select(model).filter_by(**keys))
    return result.scalar_one_or_none()


async def _upsert(
    db: AsyncSession, model, keys: dict, values: dict, insert_only: Optional[dict] = None
) -> tuple:
    """
    Insert the row identified by a unique key, or update the one already there.

    Two writers can both miss on the lookup; the one whose insert hits the
    unique constraint rolls back and updates the winner's row instead.
    Returns (row, created).
    """
    existing = await _find(db, model, keys)
    if existing is None:
        row = model(id=uuid4(), **keys, **values, **(insert_only or {}))
        db.add(row)
        try:
            await db.commit()
            return row, True
        except IntegrityError:
            await db.rollback()
            logger.info("Concurrent insert on %s %s, updating instead", model.__tablename__, keys)
            existing = await _find(db, model, keys)
            if existing is None:
                raise

    for key, value in values.items():
        setattr(existing, key, value)
    await db.commit()
    return existing, False


def assignment_role(project: Project, user_id: Any) -> Optional[ProjectRole]:
    for a in project.assignments:
        if a.user_id == user_id:
            return ProjectRole(a.role)
    return None


# ─── Projects ──────────────────────────────────────────────────────────────

async def _last_code(db: AsyncSession, column, prefix: str) -> Optional[str]:
    result = await db.execute(
        select(column).where(column.like(f"{prefix}%")).order_by(column.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def generate_project_code(db: AsyncSession, year: Optional[int] = None) -> str:
    year = year or datetime.utcnow().year
    last = await _last_code(db, Project.project_code, f"ORB-{year}-")
    return next_project_code(last, year)


async def create_project(db: AsyncSession, creator: Identity, **fields) -> Project:
    """Insert a project and make its creator the lead."""
    project = Project(
        id=uuid4(),
        project_code=await generate_project_code(db),
        created_by=creator.id,
        **fields,
    )
    db.add(project)
    await db.flush()

    db.add(ProjectAssignment(
        id=uuid4(), project_id=project.id, user_id=creator.id,
        role=ProjectRole.LEAD.value, assigned_by=creator.id,
    ))
    await db.commit()
    await db.refresh(project)
    return project


async def add_access_rule(
    db: AsyncSession, project: Project, rule: AccessRule, created_by: Any
) -> ProjectAccessRule:
    row = ProjectAccessRule(
        id=uuid4(), project_id=project.id, created_by=created_by, **rule_columns(rule)
    )
    db.add(row)
    await db.commit()
    await db.refresh(project)
    return row


async def delete_access_rule(db: AsyncSession, project: Project, rule_id: Any) -> bool:
    result = await db.execute(
        select(ProjectAccessRule).where(
            ProjectAccessRule.id == rule_id,
            ProjectAccessRule.project_id == project.id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return False
    await db.delete(row)
    await db.commit()
    await db.refresh(project)
    return True


async def upsert_assignment(
    db: AsyncSession,
    project_id: Any,
    user_id: Any,
    role: ProjectRole,
    assigned_by: Any = None,
) -> tuple:
    """
    Assign a user to a project, or change the role of an existing assignment.

    Returns (assignment, created).
    """
    return await _upsert(
        db, ProjectAssignment,
        keys={"project_id": project_id, "user_id": user_id},
        values={"role": role.value},
        insert_only={"assigned_by": assigned_by},
    )


async def remove_assignment(db: AsyncSession, project_id: Any, user_id: Any) -> bool:
    row = await _find(db, ProjectAssignment, {"project_id": project_id, "user_id": user_id})
    if row is None:
        return False
    await db.delete(row)
    await db.commit()
    return True


# ─── Departments ───────────────────────────────────────────────────────────

async def list_departments(db: AsyncSession) -> list:
    result = await db.execute(
        select(Department).where(Department.is_active == True).order_by(Department.name)
    )
    return list(result.scalars().all())


async def list_ranks(db: AsyncSession, department_id: Any = None) -> list:
    query = (
        select(Rank)
        .where(Rank.is_active == True)
        .order_by(Rank.department_id, Rank.sort_order, Rank.name)
    )
    if department_id is not None:
        query = query.where(Rank.department_id == department_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def _insert_named(db: AsyncSession, row, what: str):
    name = row.name
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists(f"{what} {name!r} already exists")
    await db.refresh(row)
    return row


async def create_department(db: AsyncSession, name: str, **fields) -> Department:
    return await _insert_named(db, Department(id=uuid4(), name=name, **fields), "Department")


async def create_rank(
    db: AsyncSession,
    department_id: Any,
    name: str,
    short_name: Optional[str] = None,
    clearance_level: int = 1,
    sort_order: int = 0,
    description: Optional[str] = None,
) -> Rank:
    """Add a rank to a department. Names are unique per department."""
    rank = Rank(
        id=uuid4(),
        department_id=department_id,
        name=name,
        short_name=short_name or name[:2].upper(),
        clearance_level=clearance_level,
        sort_order=sort_order,
        description=description,
    )
    return await _insert_named(db, rank, "Rank")


async def upsert_membership(
    db: AsyncSession,
    user_id: Any,
    department_id: Any,
    rank_id: Any = None,
    assigned_by: Any = None,
) -> tuple:
    """Add a user to a department, or change their rank there. Returns (membership, created)."""
    return await _upsert(
        db, DepartmentMember,
        keys={"user_id": user_id, "department_id": department_id},
        values={"rank_id": rank_id},
        insert_only={"assigned_by": assigned_by},
    )


async def remove_membership(db: AsyncSession, user_id: Any, department_id: Any) -> bool:
    row = await _find(db, DepartmentMember, {"user_id": user_id, "department_id": department_id})
    if row is None:
        return False
    await db.delete(row)
    await db.commit()
    return True


# ─── Content ───────────────────────────────────────────────────────────────

async def add_logbook_entry(
    db: AsyncSession,
    project: Project,
    author: Identity,
    entry_text: str,
    entry_type: str = "observation",
    attachments: Optional[dict] = None,
    min_clearance_to_view: Optional[int] = None,
    is_redacted: bool = False,
    redacted_version: Optional[str] = None,
) -> LogbookEntry:
    count = await db.scalar(
        select(func.count(LogbookEntry.id)).where(LogbookEntry.project_id == project.id)
    )
    entry = LogbookEntry(
        id=uuid4(),
        project_id=project.id,
        author_id=author.id,
        entry_number=(count or 0) + 1,
        entry_text=entry_text,
        entry_type=entry_type,
        attachments=attachments,
        min_clearance_to_view=clamp_view_threshold(min_clearance_to_view, author),
        is_redacted=is_redacted,
        redacted_version=redacted_version if is_redacted else None,
    )
    db.add(entry)
    project.updated_at = datetime.utcnow()
    await db.commit()
    return entry


async def list_logbook_entries(db: AsyncSession, project_id: Any) -> list:
    result = await db.execute(
        select(LogbookEntry)
        .where(LogbookEntry.project_id == project_id)
        .order_by(LogbookEntry.created_at.desc())
    )
    return list(result.scalars().all())


async def create_report(
    db: AsyncSession,
    author: Identity,
    title: str,
    content: str,
    summary: Optional[str] = None,
    report_type: str = "general",
    priority: str = "normal",
    project_id: Any = None,
    min_clearance_to_view: Optional[int] = 1,
) -> Report:
    year = datetime.utcnow().year
    prefix = REPORT_TYPE_PREFIXES.get(report_type, "GR")
    last = await _last_code(db, Report.report_code, f"{prefix}-{year}-")

    report = Report(
        id=uuid4(),
        report_code=next_sequence_code(prefix, year, last),
        title=title,
        content=content,
        summary=summary,
        report_type=report_type,
        priority=priority,
        project_id=project_id,
        author_id=author.id,
        min_clearance_to_view=clamp_view_threshold(min_clearance_to_view, author),
    )
    db.add(report)
    await db.commit()
    await db.refresh(report)
    return report


async def record_report_read(db: AsyncSession, report_id: Any, user_id: Any) -> bool:
    """Leave a read receipt once per (report, user). Returns True if new."""
    existing = await db.execute(
        select(ReportRead.id).where(ReportRead.report_id == report_id, ReportRead.user_id == user_id)
    )
    if existing.scalar_one_or_none() is not None:
        return False
    db.add(ReportRead(id=uuid4(), report_id=report_id, user_id=user_id))
    await db.commit()
    return True


async def read_report_ids(db: AsyncSession, user_id: Any) -> set:
    result = await db.execute(select(ReportRead.report_id).where(ReportRead.user_id == user_id))
    return set(result.scalars().all())


async def update_report(
    db: AsyncSession,
    report: Report,
    editor: Identity,
    status: Optional[str] = None,
    priority: Optional[str] = None,
) -> dict:
    """
    Move a report through triage and/or change its priority.

    The first acknowledgement and every resolution are stamped with who
    did it and when. Returns the changed fields as {field: {old, new}}.
    """
    now = datetime.utcnow()
    changes = {}
    if status is not None and status != report.status:
        changes["status"] = {"old": report.status, "new": status}
        report.status = status
        if status == "acknowledged" and report.acknowledged_at is None:
            report.acknowledged_at = now
            report.acknowledged_by = editor.id
        elif status == "resolved":
            report.resolved_at = now
            report.resolved_by = editor.id
    if priority is not None and priority != report.priority:
        changes["priority"] = {"old": report.priority, "new": priority}
        report.priority = priority

    if changes:
        await db.commit()
    return changes


# ─── Proposals ─────────────────────────────────────────────────────────────

def proposal_from_row(row: ProjectProposal) -> Proposal:
    return Proposal(
        id=row.id,
        name=row.name,
        submitted_by=row.submitted_by,
        security_class=row.security_class,
        threat_level=row.threat_level,
        status=ProposalStatus(row.status),
        codename=row.codename,
        object_class=row.object_class,
        site_assignment=row.site_assignment,
        description=row.description,
        containment_procedures=row.containment_procedures,
        research_protocols=row.research_protocols,
        departments=tuple(
            ProposalDepartmentRef(d.department_id, d.is_primary) for d in row.departments
        ),
        clearance_requirements=tuple(c.clearance_level for c in row.clearance_requirements),
        created_project_id=row.created_project_id,
    )


async def submit_proposal(
    db: AsyncSession,
    submitter: Identity,
    departments: list,
    clearance_requirements: list,
    **fields,
) -> ProjectProposal:
    """departments is a list of (department_id, is_primary) pairs."""
    proposal = ProjectProposal(id=uuid4(), submitted_by=submitter.id, status="pending", **fields)
    db.add(proposal)
    await db.flush()
    _add_proposal_links(db, proposal.id, departments, clearance_requirements)
    await db.commit()
    await db.refresh(proposal)
    return proposal


def _add_proposal_links(db: AsyncSession, proposal_id: Any, departments, clearance_requirements) -> None:
    """Department links are de-duplicated; a department is stored once per proposal."""
    if departments is not None:
        refs = unique_departments(ProposalDepartmentRef(d, p) for d, p in departments)
        for ref in refs:
            db.add(ProposalDepartment(
                id=uuid4(), proposal_id=proposal_id,
                department_id=ref.department_id, is_primary=ref.is_primary,
            ))
    for level in clearance_requirements or ():
        db.add(ProposalClearanceRequirement(id=uuid4(), proposal_id=proposal_id, clearance_level=level))


async def get_proposal(db: AsyncSession, proposal_id: Any) -> Optional[ProjectProposal]:
    return await db.get(ProjectProposal, proposal_id)


async def _claim_proposal(db: AsyncSession, proposal_id: Any, status: str, reviewer: Identity, **values) -> bool:
    """Move an unsettled proposal to a new status. False if it was settled first."""
    now = datetime.utcnow()
    result = await db.execute(
        update(ProjectProposal)
        .where(
            ProjectProposal.id == proposal_id,
            ProjectProposal.status.not_in([s.value for s in SETTLED_STATUSES]),
        )
        .values(status=status, reviewed_by=reviewer.id, reviewed_at=now, updated_at=now, **values)
    )
    return result.rowcount == 1


async def _raise_settled(db: AsyncSession, proposal_id: Any) -> None:
    """Raise the error matching whatever settled the proposal under us."""
    current = (await db.execute(
        select(ProjectProposal.status, ProjectProposal.created_project_id)
        .where(ProjectProposal.id == proposal_id)
    )).one()
    if current.status == ProposalStatus.REJECTED.value:
        raise ProposalRejected("Proposal was rejected", proposal_id=proposal_id)
    raise AlreadyApproved(
        "Proposal already approved", proposal_id=proposal_id, project_id=current.created_project_id
    )


async def approve_proposal(
    db: AsyncSession, row: ProjectProposal, reviewer: Identity
) -> Project:
    """
    Turn a proposal into a project, exactly once.

    The status check in promote_proposal_to_project rejects settled
    proposals up front; the conditional UPDATE makes the claim atomic, so a
    concurrent second approval finds no row to claim and creates nothing.
    """
    proposal_id = row.id
    promotion = promote_proposal_to_project(proposal_from_row(row))

    if not await _claim_proposal(db, proposal_id, ProposalStatus.APPROVED.value, reviewer):
        await db.rollback()
        await _raise_settled(db, proposal_id)

    draft = promotion.project
    project = Project(
        id=uuid4(),
        project_code=draft.project_code or await generate_project_code(db),
        name=draft.name,
        codename=draft.codename,
        object_class=draft.object_class,
        security_class=draft.security_class,
        threat_level=draft.threat_level,
        department_id=draft.department_id,
        site_assignment=draft.site_assignment,
        status=draft.status.value,
        description=draft.description,
        containment_procedures=draft.containment_procedures,
        research_protocols=draft.research_protocols,
        progress=draft.progress,
        created_by=draft.created_by,
    )
    db.add(project)
    await db.flush()

    for dept in promotion.departments:
        db.add(ProjectDepartment(
            id=uuid4(), project_id=project.id,
            department_id=dept.department_id, is_primary=dept.is_primary,
        ))
    for rule in promotion.access_rules:
        db.add(ProjectAccessRule(
            id=uuid4(), project_id=project.id, created_by=reviewer.id, **rule_columns(rule)
        ))
    lead = promotion.lead_assignment
    db.add(ProjectAssignment(
        id=uuid4(), project_id=project.id, user_id=lead.user_id,
        role=lead.role.value, assigned_by=reviewer.id,
    ))
    await db.execute(
        update(ProjectProposal)
        .where(ProjectProposal.id == row.id)
        .values(created_project_id=project.id)
    )
    await db.commit()
    await db.refresh(project)
    await db.refresh(row)

    logger.info("Proposal %s approved as project %s", row.id, project.project_code)
    return project


async def reject_proposal(
    db: AsyncSession, row: ProjectProposal, reviewer: Identity, reason: Optional[str] = None
) -> ProjectProposal:
    proposal_id = row.id
    ensure_approvable(proposal_from_row(row))

    if not await _claim_proposal(
        db, proposal_id, ProposalStatus.REJECTED.value, reviewer, rejection_reason=reason
    ):
        await db.rollback()
        await _raise_settled(db, proposal_id)
    await db.commit()
    await db.refresh(row)
    return row


async def review_proposal(
    db: AsyncSession,
    row: ProjectProposal,
    reviewer: Identity,
    status: Optional[str] = None,
    **notes,
) -> ProjectProposal:
    """
    Record a reviewer's notes and optionally move the proposal to
    under_review, revision or back to pending.

    The status move goes through the same conditional UPDATE as approval,
    so it cannot reopen a proposal settled in the meantime.
    """
    proposal_id = row.id
    notes = {k: v for k, v in notes.items() if v is not None}
    if status is not None:
        target = ensure_reviewable(proposal_from_row(row), status)
        if not await _claim_proposal(db, proposal_id, target.value, reviewer, **notes):
            await db.rollback()
            await _raise_settled(db, proposal_id)
    elif notes:
        for key, value in notes.items():
            setattr(row, key, value)
        row.updated_at = datetime.utcnow()
    await db.commit()
    await db.refresh(row)
    return row


async def edit_proposal(
    db: AsyncSession,
    row: ProjectProposal,
    departments: Optional[list] = None,
    clearance_requirements: Optional[list] = None,
    **fields,
) -> ProjectProposal:
    """
    Submitter edits. Allowed while pending or returned for revision; a
    proposal in revision goes back to pending. Departments and clearance
    requirements, when given, replace the existing ones.
    """
    proposal_id = row.id
    ensure_editable(proposal_from_row(row))

    result = await db.execute(
        update(ProjectProposal)
        .where(
            ProjectProposal.id == proposal_id,
            ProjectProposal.status.in_([ProposalStatus.PENDING.value, ProposalStatus.REVISION.value]),
        )
        .values(status=ProposalStatus.PENDING.value, updated_at=datetime.utcnow(), **fields)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ProposalStateError("Proposal is no longer editable", proposal_id=proposal_id)

    if departments is not None:
        await db.execute(delete(ProposalDepartment).where(ProposalDepartment.proposal_id == proposal_id))
    if clearance_requirements is not None:
        await db.execute(
            delete(ProposalClearanceRequirement)
            .where(ProposalClearanceRequirement.proposal_id == proposal_id)
        )
    _add_proposal_links(db, proposal_id, departments, clearance_requirements)
    await db.commit()
    await db.refresh(row)
    return row
