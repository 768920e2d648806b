"""
Departments API - departments, their ranks, and user memberships.

Memberships feed department and rank access rules, so granting or
revoking one changes which projects a user can open.
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field

from ouroboros.access import ADMIN_CLEARANCE, MANAGE_PERSONNEL_CLEARANCE, Identity
from ouroboros.audit import log_crud_event
from ouroboros.auth import get_current_identity, require_clearance
from ouroboros.clearance import MAX_CLEARANCE, MIN_CLEARANCE, level_of
from ouroboros.database import get_db
from ouroboros.models import Department, DepartmentMember, Rank, User
from ouroboros import store

router = APIRouter(prefix="/api", tags=["Departments"])


class DepartmentCreate(BaseModel):
    name: str = Field(min_length=1)
    codename: Optional[str] = None
    description: Optional[str] = None
    icon_symbol: Optional[str] = None
    color: Optional[str] = None


class RankCreate(BaseModel):
    department_id: UUID
    name: str = Field(min_length=1)
    short_name: Optional[str] = None
    clearance_level: int = Field(1, ge=MIN_CLEARANCE, le=MAX_CLEARANCE)
    sort_order: int = 0
    description: Optional[str] = None


class MembershipGrant(BaseModel):
    department_id: UUID
    rank_id: Optional[UUID] = None


def department_dict(d: Department) -> dict:
    return {
        "id": str(d.id),
        "name": d.name,
        "codename": d.codename,
        "description": d.description,
        "icon_symbol": d.icon_symbol,
        "color": d.color,
    }


def rank_dict(r: Rank) -> dict:
    return {
        "id": str(r.id),
        "department_id": str(r.department_id),
        "name": r.name,
        "short_name": r.short_name,
        "clearance_level": r.clearance_level,
        "sort_order": r.sort_order,
    }


def membership_dict(m: DepartmentMember) -> dict:
    return {
        "user_id": str(m.user_id),
        "department_id": str(m.department_id),
        "rank_id": str(m.rank_id) if m.rank_id else None,
        "assigned_at": m.assigned_at.isoformat() if m.assigned_at else None,
    }


async def load_department(db: AsyncSession, department_id: UUID) -> Department:
    department = await db.get(Department, department_id)
    if not department or not department.is_active:
        raise HTTPException(status_code=404, detail="Department not found")
    return department


# ─── DEPARTMENTS ──────────────────────────────────────────────────────────

@router.get("/departments")
async def list_departments(
    include_ranks: bool = Query(False, alias="includeRanks"),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    departments = [department_dict(d) for d in await store.list_departments(db)]
    if include_ranks:
        by_department = {}
        for rank in await store.list_ranks(db):
            by_department.setdefault(str(rank.department_id), []).append(rank_dict(rank))
        for d in departments:
            d["ranks"] = by_department.get(d["id"], [])
    return {"departments": departments}


@router.post("/departments", status_code=201)
async def create_department(
    data: DepartmentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(ADMIN_CLEARANCE)),
):
    fields = data.model_dump(exclude_none=True)
    department = await store.create_department(db, **fields)
    await log_crud_event(
        db, identity, "CREATE", "department",
        resource_id=department.id, resource_title=department.name, request=request,
    )
    return department_dict(department)


# ─── RANKS ────────────────────────────────────────────────────────────────

@router.get("/ranks")
async def list_ranks(
    department_id: Optional[UUID] = Query(None, alias="departmentId"),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    return {"ranks": [rank_dict(r) for r in await store.list_ranks(db, department_id)]}


@router.post("/ranks", status_code=201)
async def create_rank(
    data: RankCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(ADMIN_CLEARANCE)),
):
    """Add a rank. Short name defaults to the first two letters of the name."""
    department = await load_department(db, data.department_id)
    department_name = department.name
    rank = await store.create_rank(db, **data.model_dump())
    await log_crud_event(
        db, identity, "CREATE", "rank",
        resource_id=rank.id, resource_title=rank.name,
        details={"department": department_name, "clearance_level": rank.clearance_level},
        request=request,
    )
    return rank_dict(rank)


# ─── MEMBERSHIPS ──────────────────────────────────────────────────────────

@router.get("/users/{user_id}/memberships")
async def list_memberships(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Own memberships for anyone, other users' for Level 4+."""
    if user_id != identity.id and level_of(identity) < MANAGE_PERSONNEL_CLEARANCE:
        raise HTTPException(status_code=403, detail=f"Clearance Level {MANAGE_PERSONNEL_CLEARANCE}+ required")
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"memberships": [membership_dict(m) for m in user.memberships]}


@router.post("/users/{user_id}/memberships")
async def grant_membership(
    user_id: UUID,
    data: MembershipGrant,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(MANAGE_PERSONNEL_CLEARANCE)),
):
    """Add a user to a department (201), or change their rank there (200)."""
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    username = user.username
    department = await load_department(db, data.department_id)
    department_name = department.name
    if data.rank_id is not None:
        rank = await db.get(Rank, data.rank_id)
        if not rank or rank.department_id != data.department_id:
            raise HTTPException(status_code=404, detail="Rank not found in this department")

    membership, created = await store.upsert_membership(
        db, user_id, data.department_id, data.rank_id, assigned_by=identity.id
    )
    response.status_code = 201 if created else 200
    await log_crud_event(
        db, identity, "GRANT_MEMBERSHIP" if created else "CHANGE_RANK", "membership",
        resource_id=user_id, resource_title=username,
        details={
            "department": department_name,
            "rank_id": str(data.rank_id) if data.rank_id else None,
        },
        request=request,
    )
    return {**membership_dict(membership), "created": created}


@router.delete("/users/{user_id}/memberships/{department_id}")
async def revoke_membership(
    user_id: UUID,
    department_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(MANAGE_PERSONNEL_CLEARANCE)),
):
    if not await store.remove_membership(db, user_id, department_id):
        raise HTTPException(status_code=404, detail="Membership not found")

    await log_crud_event(
        db, identity, "REVOKE_MEMBERSHIP", "membership",
        resource_id=user_id, details={"department_id": str(department_id)}, request=request,
    )
    return {"message": "Membership removed"}
