"""
Proposals API - submission, review and promotion to projects.
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, field_validator

from ouroboros.access import REVIEW_PROPOSALS_CLEARANCE, Identity, can_review_proposals
from ouroboros.audit import log_crud_event
from ouroboros.auth import get_current_identity, require_clearance
from ouroboros.clearance import MAX_CLEARANCE, MIN_CLEARANCE
from ouroboros.database import get_db
from ouroboros.models import ProjectProposal
from ouroboros import schemas, store
from ouroboros.proposals import ProposalStatus

router = APIRouter(prefix="/api/proposals", tags=["Proposals"])


class ProposalDepartmentIn(BaseModel):
    department_id: UUID
    is_primary: bool = False


class ProposalCreate(BaseModel):
    name: str
    codename: Optional[str] = None
    object_class: Optional[str] = None
    security_class: str = "GREEN"
    threat_level: str = "low"
    site_assignment: Optional[str] = None
    description: Optional[str] = None
    containment_procedures: Optional[str] = None
    research_protocols: Optional[str] = None
    justification: Optional[str] = None
    departments: list[ProposalDepartmentIn] = []
    clearance_requirements: list[int] = Field(default_factory=list)

    @field_validator("security_class")
    @classmethod
    def check_security_class(cls, v):
        return schemas.security_class_name(v)

    @field_validator("threat_level")
    @classmethod
    def check_threat_level(cls, v):
        return schemas.threat_level(v)


class ProposalUpdate(BaseModel):
    # Reviewer fields
    status: Optional[ProposalStatus] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    revision_notes: Optional[str] = None
    # Submitter fields
    name: Optional[str] = None
    codename: Optional[str] = None
    object_class: Optional[str] = None
    security_class: Optional[str] = None
    threat_level: Optional[str] = None
    site_assignment: Optional[str] = None
    description: Optional[str] = None
    containment_procedures: Optional[str] = None
    research_protocols: Optional[str] = None
    justification: Optional[str] = None
    departments: Optional[list[ProposalDepartmentIn]] = None
    clearance_requirements: Optional[list[int]] = None

    @field_validator("security_class")
    @classmethod
    def check_security_class(cls, v):
        return schemas.security_class_name(v)

    @field_validator("threat_level")
    @classmethod
    def check_threat_level(cls, v):
        return schemas.threat_level(v)


REVIEWER_FIELDS = {"status", "admin_notes", "rejection_reason", "revision_notes"}


class ProposalReject(BaseModel):
    reason: Optional[str] = None


def proposal_dict(p: ProjectProposal) -> dict:
    return {
        "id": str(p.id),
        "name": p.name,
        "codename": p.codename,
        "security_class": p.security_class,
        "threat_level": p.threat_level,
        "status": p.status,
        "submitted_by": str(p.submitted_by),
        "reviewed_by": str(p.reviewed_by) if p.reviewed_by else None,
        "reviewed_at": p.reviewed_at.isoformat() if p.reviewed_at else None,
        "rejection_reason": p.rejection_reason,
        "admin_notes": p.admin_notes,
        "revision_notes": p.revision_notes,
        "created_project_id": str(p.created_project_id) if p.created_project_id else None,
        "departments": [
            {"department_id": str(d.department_id), "is_primary": d.is_primary}
            for d in p.departments
        ],
        "clearance_requirements": [c.clearance_level for c in p.clearance_requirements],
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def check_requirements(levels) -> None:
    for level in levels or ():
        if not MIN_CLEARANCE <= level <= MAX_CLEARANCE:
            raise HTTPException(status_code=400, detail=f"Invalid clearance requirement: {level}")


async def load_proposal(db: AsyncSession, proposal_id: UUID) -> ProjectProposal:
    proposal = await store.get_proposal(db, proposal_id)
    if not proposal:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return proposal


@router.get("")
async def list_proposals(
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Reviewers see every proposal; everyone else sees their own."""
    query = select(ProjectProposal).order_by(ProjectProposal.created_at.desc())
    if not can_review_proposals(identity):
        query = query.where(ProjectProposal.submitted_by == identity.id)
    proposals = (await db.execute(query)).scalars().all()
    return {"proposals": [proposal_dict(p) for p in proposals]}


@router.post("", status_code=201)
async def submit_proposal(
    data: ProposalCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(1)),
):
    check_requirements(data.clearance_requirements)

    fields = data.model_dump(exclude={"departments", "clearance_requirements"})
    proposal = await store.submit_proposal(
        db, identity,
        departments=[(d.department_id, d.is_primary) for d in data.departments],
        clearance_requirements=data.clearance_requirements,
        **fields,
    )
    await log_crud_event(
        db, identity, "SUBMIT", "proposal",
        resource_id=proposal.id, resource_title=proposal.name, request=request,
    )
    return proposal_dict(proposal)


@router.get("/{proposal_id}")
async def get_proposal(
    proposal_id: UUID,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    proposal = await load_proposal(db, proposal_id)
    if proposal.submitted_by != identity.id and not can_review_proposals(identity):
        raise HTTPException(status_code=403, detail="Insufficient clearance")
    return proposal_dict(proposal)


@router.patch("/{proposal_id}")
async def update_proposal(
    proposal_id: UUID,
    data: ProposalUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """
    Reviewers (Level 4+) set notes and move a proposal between pending,
    under_review and revision. The submitter may edit it while it is
    pending or returned for revision, which puts it back to pending.
    """
    proposal = await load_proposal(db, proposal_id)
    changed = data.model_dump(exclude_unset=True, exclude_none=True)

    if can_review_proposals(identity):
        review = {k: v for k, v in changed.items() if k in REVIEWER_FIELDS}
        if data.status is not None:
            review["status"] = data.status.value
        proposal = await store.review_proposal(db, proposal, identity, **review)
        action = "REVIEW"
    elif proposal.submitted_by == identity.id:
        check_requirements(data.clearance_requirements)
        edits = {
            k: v for k, v in changed.items()
            if k not in REVIEWER_FIELDS and k not in ("departments", "clearance_requirements")
        }
        departments = None
        if data.departments is not None:
            departments = [(d.department_id, d.is_primary) for d in data.departments]
        proposal = await store.edit_proposal(
            db, proposal,
            departments=departments,
            clearance_requirements=data.clearance_requirements,
            **edits,
        )
        action = "EDIT"
    else:
        raise HTTPException(status_code=403, detail="Only the submitter or a reviewer may update a proposal")

    await log_crud_event(
        db, identity, action, "proposal",
        resource_id=proposal_id, resource_title=proposal.name,
        details={"fields": sorted(changed)}, request=request,
    )
    return proposal_dict(proposal)


@router.post("/{proposal_id}/approve")
async def approve_proposal(
    proposal_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(REVIEW_PROPOSALS_CLEARANCE)),
):
    """Approve a proposal and create its project. Raises AlreadyApproved (409) on repeats."""
    proposal = await load_proposal(db, proposal_id)
    project = await store.approve_proposal(db, proposal, identity)

    await log_crud_event(
        db, identity, "APPROVE", "proposal",
        resource_id=proposal_id, resource_title=project.name,
        details={"project_id": str(project.id), "project_code": project.project_code},
        request=request,
    )
    return {
        "success": True,
        "project_id": str(project.id),
        "project_code": project.project_code,
        "message": f"Project {project.project_code} created successfully",
    }


@router.post("/{proposal_id}/reject")
async def reject_proposal(
    proposal_id: UUID,
    data: ProposalReject,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(REVIEW_PROPOSALS_CLEARANCE)),
):
    proposal = await load_proposal(db, proposal_id)
    proposal = await store.reject_proposal(db, proposal, identity, data.reason)

    await log_crud_event(
        db, identity, "REJECT", "proposal",
        resource_id=proposal_id, resource_title=proposal.name,
        details={"reason": data.reason}, request=request,
    )
    return proposal_dict(proposal)
