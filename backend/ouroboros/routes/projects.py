"""
Projects API - classification-gated projects, access rules, team, logbook.

Every read goes through the access evaluator and every content record
through the redaction engine; decisions land in the audit trail.
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, field_validator

from ouroboros.access import (
    AccessDecision, Identity, can_access, can_create_project, can_edit_project,
    can_manage_access_rules, can_manage_assignments, can_write_logbook, meets_project_floor,
)
from ouroboros.audit import log_content_render, log_crud_event, log_project_access
from ouroboros.auth import get_current_identity
from ouroboros.config import settings
from ouroboros.database import get_db
from ouroboros.models import Project, User
from ouroboros.proposals import ProjectStatus
from ouroboros.redaction import ContentRecord, RenderStatus, render
from ouroboros.rules import ProjectRole, build_rule, describe_rule, parse_role, rule_from_row
from ouroboros import schemas, store

router = APIRouter(prefix="/api/projects", tags=["Projects"])


# ─── Schemas ───────────────────────────────────────────────────────────────

class ProjectCreate(BaseModel):
    name: str
    codename: Optional[str] = None
    object_class: Optional[str] = None
    security_class: str = "GREEN"
    threat_level: str = "low"
    department_id: Optional[UUID] = None
    site_assignment: Optional[str] = None
    description: Optional[str] = None
    containment_procedures: Optional[str] = None
    research_protocols: Optional[str] = None

    @field_validator("security_class")
    @classmethod
    def check_security_class(cls, v):
        return schemas.security_class_name(v)

    @field_validator("threat_level")
    @classmethod
    def check_threat_level(cls, v):
        return schemas.threat_level(v)


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    codename: Optional[str] = None
    status: Optional[ProjectStatus] = None
    threat_level: Optional[str] = None
    description: Optional[str] = None
    containment_procedures: Optional[str] = None
    research_protocols: Optional[str] = None
    progress: Optional[int] = Field(None, ge=0, le=100)

    @field_validator("threat_level")
    @classmethod
    def check_threat_level(cls, v):
        return schemas.threat_level(v)


class AccessRuleCreate(BaseModel):
    access_type: str
    target_id: Optional[UUID] = None
    min_clearance: Optional[int] = None
    role: Optional[str] = None


class AssignmentCreate(BaseModel):
    user_id: UUID
    role: str = "researcher"


class LogbookEntryCreate(BaseModel):
    entry_text: str
    entry_type: str = "observation"
    attachments: Optional[dict] = None
    min_clearance_to_view: Optional[int] = None
    is_redacted: bool = False
    redacted_version: Optional[str] = None

    @field_validator("entry_type")
    @classmethod
    def check_entry_type(cls, v):
        return schemas.entry_type(v)


# ─── Helpers ───────────────────────────────────────────────────────────────

def evaluate(project: Project, identity: Identity) -> AccessDecision:
    return can_access(
        store.project_view(project),
        identity,
        unknown_class_clearance=settings.UNKNOWN_SECURITY_CLASS_CLEARANCE,
    )


async def load_project(db: AsyncSession, project_id: UUID) -> Project:
    project = await store.get_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def authorize_project(
    db: AsyncSession, identity: Identity, project: Project, request: Request
) -> AccessDecision:
    """Evaluate, audit, and raise 403 on denial."""
    decision = evaluate(project, identity)
    await log_project_access(db, identity, project, decision, request)
    if not decision.allowed:
        raise HTTPException(status_code=403, detail="Insufficient clearance")
    return decision


def project_summary(project: Project) -> dict:
    return {
        "id": str(project.id),
        "project_code": project.project_code,
        "name": project.name,
        "codename": project.codename,
        "object_class": project.object_class,
        "security_class": project.security_class,
        "threat_level": project.threat_level,
        "status": project.status,
        "description": project.description,
        "progress": project.progress,
        "department_id": str(project.department_id) if project.department_id else None,
        "created_at": project.created_at.isoformat() if project.created_at else None,
        "updated_at": project.updated_at.isoformat() if project.updated_at else None,
    }


def rule_dict(row) -> dict:
    return {
        "id": str(row.id),
        "access_type": row.access_type,
        "target_id": str(row.target_id) if row.target_id else None,
        "min_clearance": row.min_clearance,
        "role": row.role,
        "description": describe_rule(rule_from_row(row)),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def assignment_dict(a) -> dict:
    return {
        "id": str(a.id),
        "user_id": str(a.user_id),
        "role": a.role,
        "assigned_at": a.assigned_at.isoformat() if a.assigned_at else None,
    }


def entry_dict(entry, viewer: Identity) -> tuple:
    """Render one logbook entry for a viewer. Returns (dict, status)."""
    rendered = render(
        ContentRecord(
            body={"entry_text": entry.entry_text, "attachments": entry.attachments},
            min_clearance_to_view=entry.min_clearance_to_view,
            is_redacted=entry.is_redacted,
            redacted_version=entry.redacted_version,
        ),
        viewer.clearance_level,
    )
    data = {
        "id": str(entry.id),
        "entry_number": entry.entry_number,
        "entry_type": entry.entry_type,
        "author_id": str(entry.author_id),
        "min_clearance_to_view": entry.min_clearance_to_view,
        "is_redacted": entry.is_redacted,
        "visibility": rendered.status.value,
        "entry_text": None,
        "attachments": None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
    if rendered.status is RenderStatus.FULL:
        data.update(rendered.payload)
    elif rendered.status is RenderStatus.REDACTED:
        data["entry_text"] = rendered.payload
    else:
        data["denial_reason"] = rendered.reason
    return data, rendered.status


# ─── LIST / CREATE ─────────────────────────────────────────────────────────

@router.get("")
async def list_projects(
    status: Optional[ProjectStatus] = Query(None),
    security: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """List every project the caller can open, by clearance or explicit rule."""
    projects = await store.list_projects(
        db,
        status=status.value if status else None,
        security_class=schemas.query_value(schemas.security_class_name, security),
    )
    visible = []
    for project in projects:
        decision = evaluate(project, identity)
        if decision.allowed:
            visible.append({**project_summary(project), "role": decision.role.value})

    return {
        "projects": visible,
        "total_in_system": len(projects),
        "visible_to_you": len(visible),
    }


@router.post("", status_code=201)
async def create_project(
    data: ProjectCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Create a project. Requires Level 3 and clearance for the chosen class."""
    if not can_create_project(
        identity, data.security_class, settings.UNKNOWN_SECURITY_CLASS_CLEARANCE
    ):
        raise HTTPException(status_code=403, detail="Insufficient clearance for this security class")

    project = await store.create_project(db, identity, **data.model_dump())
    await log_crud_event(
        db, identity, "CREATE", "project",
        resource_id=project.id, resource_title=project.name,
        details={"security_class": project.security_class, "project_code": project.project_code},
        request=request,
    )
    return project_summary(project)


# ─── SINGLE PROJECT ────────────────────────────────────────────────────────

@router.get("/{project_id}")
async def get_project(
    project_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    project = await load_project(db, project_id)
    decision = await authorize_project(db, identity, project, request)

    lead = next((a for a in project.assignments if a.role == ProjectRole.LEAD.value), None)
    return {
        **project_summary(project),
        "containment_procedures": project.containment_procedures,
        "research_protocols": project.research_protocols,
        "site_assignment": project.site_assignment,
        "your_role": decision.role.value,
        "access_basis": decision.basis,
        "team": [assignment_dict(a) for a in project.assignments],
        "lead_user_id": str(lead.user_id) if lead else None,
        "access_rules": [rule_dict(r) for r in project.access_rules],
    }


@router.patch("/{project_id}")
async def update_project(
    project_id: UUID,
    data: ProjectUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Edit a project. Level 5 or the project lead."""
    project = await load_project(db, project_id)
    decision = await authorize_project(db, identity, project, request)
    if not can_edit_project(identity, decision, store.assignment_role(project, identity.id)):
        raise HTTPException(status_code=403, detail="Only the project lead can edit this project")

    changes = {}
    for field_name, value in data.model_dump(exclude_none=True).items():
        if isinstance(value, ProjectStatus):
            value = value.value
        changes[field_name] = {"old": getattr(project, field_name), "new": value}
        setattr(project, field_name, value)
    await db.commit()

    await log_crud_event(
        db, identity, "UPDATE", "project",
        resource_id=project.id, resource_title=project.name,
        details={"changes": changes}, request=request,
    )
    return {"message": "Project updated", "changes": list(changes.keys())}


# ─── ACCESS RULES ──────────────────────────────────────────────────────────

@router.get("/{project_id}/access")
async def list_access_rules(
    project_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    project = await load_project(db, project_id)
    await authorize_project(db, identity, project, request)
    return {"rules": [rule_dict(r) for r in project.access_rules]}


@router.post("/{project_id}/access", status_code=201)
async def create_access_rule(
    project_id: UUID,
    data: AccessRuleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Grant access by user, department, rank or clearance. Level 3+ or the creator."""
    project = await load_project(db, project_id)
    if not can_manage_access_rules(identity, store.project_view(project)):
        raise HTTPException(status_code=403, detail="Insufficient clearance")

    # Raises InvalidRule (400) for a malformed combination
    rule = build_rule(data.access_type, data.target_id, data.min_clearance, data.role)
    row = await store.add_access_rule(db, project, rule, identity.id)

    await log_crud_event(
        db, identity, "GRANT_ACCESS", "access_rule",
        resource_id=project.id, resource_title=project.name,
        details={"rule": describe_rule(rule), "role": rule.role.value},
        request=request,
    )
    return rule_dict(row)


@router.delete("/{project_id}/access/{rule_id}")
async def delete_access_rule(
    project_id: UUID,
    rule_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    project = await load_project(db, project_id)
    if not can_manage_access_rules(identity, store.project_view(project)):
        raise HTTPException(status_code=403, detail="Insufficient clearance")

    if not await store.delete_access_rule(db, project, rule_id):
        raise HTTPException(status_code=404, detail="Access rule not found")

    await log_crud_event(
        db, identity, "REVOKE_ACCESS", "access_rule",
        resource_id=project.id, resource_title=project.name,
        details={"rule_id": str(rule_id)}, request=request,
    )
    return {"message": "Access rule removed"}


# ─── ASSIGNMENTS ───────────────────────────────────────────────────────────

@router.get("/{project_id}/assignments")
async def list_assignments(
    project_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    project = await load_project(db, project_id)
    await authorize_project(db, identity, project, request)
    return {"assignments": [assignment_dict(a) for a in project.assignments]}


@router.post("/{project_id}/assignments")
async def assign_member(
    project_id: UUID,
    data: AssignmentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Add a team member or change their role. Level 4+ or the project lead."""
    project = await load_project(db, project_id)
    view = store.project_view(project)
    if not can_manage_assignments(
        identity, view, store.assignment_role(project, identity.id),
        settings.UNKNOWN_SECURITY_CLASS_CLEARANCE,
    ):
        raise HTTPException(status_code=403, detail="Only project leads can assign members")

    role = parse_role(data.role)
    target = await db.get(User, data.user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if not meets_project_floor(view, target, settings.UNKNOWN_SECURITY_CLASS_CLEARANCE):
        raise HTTPException(status_code=400, detail="User lacks sufficient clearance for this project")

    project_name, username = project.name, target.username
    assignment, created = await store.upsert_assignment(
        db, project_id, target.id, role, assigned_by=identity.id
    )
    await log_crud_event(
        db, identity, "ASSIGN" if created else "REASSIGN", "assignment",
        resource_id=project_id, resource_title=project_name,
        details={"user": username, "role": role.value}, request=request,
    )
    return {**assignment_dict(assignment), "created": created}


@router.delete("/{project_id}/assignments/{user_id}")
async def remove_member(
    project_id: UUID,
    user_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    project = await load_project(db, project_id)
    view = store.project_view(project)
    if not can_manage_assignments(
        identity, view, store.assignment_role(project, identity.id),
        settings.UNKNOWN_SECURITY_CLASS_CLEARANCE,
    ):
        raise HTTPException(status_code=403, detail="Only project leads can remove members")

    if not await store.remove_assignment(db, project.id, user_id):
        raise HTTPException(status_code=404, detail="Assignment not found")

    await log_crud_event(
        db, identity, "UNASSIGN", "assignment",
        resource_id=project.id, resource_title=project.name,
        details={"user_id": str(user_id)}, request=request,
    )
    return {"message": "Assignment removed"}


# ─── LOGBOOK ───────────────────────────────────────────────────────────────

@router.get("/{project_id}/logbook")
async def get_logbook(
    project_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Logbook entries with per-entry redaction applied."""
    project = await load_project(db, project_id)
    await authorize_project(db, identity, project, request)

    entries = []
    for entry in await store.list_logbook_entries(db, project.id):
        data, status = entry_dict(entry, identity)
        entries.append(data)
        if status is not RenderStatus.FULL:
            await log_content_render(
                db, identity, "logbook_entry", entry.id, project.name,
                entry.min_clearance_to_view or 1, status.value, request,
            )

    return {"project_id": str(project.id), "entries": entries}


@router.post("/{project_id}/logbook", status_code=201)
async def add_logbook_entry(
    project_id: UUID,
    data: LogbookEntryCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Write to the logbook. Level 4+ or an assigned team member."""
    project = await load_project(db, project_id)
    decision = await authorize_project(db, identity, project, request)
    assigned = store.assignment_role(project, identity.id) is not None
    if not can_write_logbook(identity, decision, assigned):
        raise HTTPException(status_code=403, detail="You must be assigned to this project")

    entry = await store.add_logbook_entry(db, project, identity, **data.model_dump())
    await log_crud_event(
        db, identity, "CREATE", "logbook_entry",
        resource_id=entry.id, resource_title=project.name,
        details={"entry_number": entry.entry_number}, request=request,
    )
    body, _ = entry_dict(entry, identity)
    return body
