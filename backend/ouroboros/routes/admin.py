"""
Admin API - personnel clearance management and system overview.
"""
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from pydantic import BaseModel, Field
from typing import Optional

from ouroboros.access import ADMIN_CLEARANCE, MANAGE_PERSONNEL_CLEARANCE, Identity, can_change_clearance
from ouroboros.audit import log_crud_event
from ouroboros.auth import require_clearance
from ouroboros.clearance import MAX_CLEARANCE, MIN_CLEARANCE, clearance_info
from ouroboros.database import get_db
from ouroboros.models import AuditLog, Project, ProjectProposal, User

router = APIRouter(prefix="/api/admin", tags=["Admin"])


class UserUpdateRequest(BaseModel):
    clearance_level: Optional[int] = Field(None, ge=MIN_CLEARANCE, le=MAX_CLEARANCE)
    is_active: Optional[bool] = None


# ─── LIST USERS ────────────────────────────────────────────────────────────

@router.get("/users")
async def list_users(
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(MANAGE_PERSONNEL_CLEARANCE)),
):
    """List personnel with their clearance."""
    result = await db.execute(select(User).order_by(User.username))
    users = result.scalars().all()

    return {
        "users": [
            {
                "id": str(u.id),
                "username": u.username,
                "email": u.email,
                "display_name": u.display_name,
                "title": u.title,
                "clearance_level": u.clearance_level,
                "clearance_title": clearance_info(u.clearance_level).title,
                "department_ids": [str(m.department_id) for m in u.memberships],
                "is_active": u.is_active,
                "last_login_at": u.last_login_at.isoformat() if u.last_login_at else None,
            }
            for u in users
        ]
    }


# ─── UPDATE USER ──────────────────────────────────────────────────────────

@router.put("/users/{user_id}")
async def update_user(
    user_id: UUID,
    data: UserUpdateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(MANAGE_PERSONNEL_CLEARANCE)),
):
    """Activate or deactivate a user (Level 4+), or change their clearance (Level 5)."""
    if data.clearance_level is not None and not can_change_clearance(identity):
        raise HTTPException(status_code=403, detail=f"Clearance Level {ADMIN_CLEARANCE}+ required")

    target = await db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    changes = {}
    if data.clearance_level is not None:
        changes["clearance_level"] = {
            "old": target.clearance_level, "new": data.clearance_level
        }
        target.clearance_level = data.clearance_level
    if data.is_active is not None:
        changes["is_active"] = {"old": target.is_active, "new": data.is_active}
        target.is_active = data.is_active

    await db.commit()

    await log_crud_event(
        db, identity, "UPDATE_USER", "user",
        resource_id=user_id,
        details={"target_user": target.username, "changes": changes},
        request=request,
    )

    return {"message": f"User {target.username} updated", "changes": changes}


# ─── SYSTEM OVERVIEW ─────────────────────────────────────────────────────

@router.get("/overview")
async def system_overview(
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(MANAGE_PERSONNEL_CLEARANCE)),
):
    """System-wide security overview with statistics."""
    projects_result = await db.execute(
        select(Project.security_class, func.count(Project.id))
        .group_by(Project.security_class)
    )
    projects_by_class = dict(projects_result.all())

    users_result = await db.execute(
        select(User.clearance_level, func.count(User.id))
        .group_by(User.clearance_level)
    )
    users_by_clearance = {str(level): count for level, count in users_result.all()}

    total_denials = await db.scalar(
        select(func.count(AuditLog.id)).where(AuditLog.was_allowed == False)
    ) or 0

    pending_proposals = await db.scalar(
        select(func.count(ProjectProposal.id))
        .where(ProjectProposal.status.in_(["pending", "under_review"]))
    ) or 0

    return {
        "projects_by_security_class": projects_by_class,
        "users_by_clearance": users_by_clearance,
        "total_access_denials": total_denials,
        "pending_proposals": pending_proposals,
    }
