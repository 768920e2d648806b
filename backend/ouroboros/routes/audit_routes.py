"""
Audit Log API - Query and filter the audit trail of access decisions.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, desc
from datetime import datetime, timedelta

from ouroboros.access import ADMIN_CLEARANCE, Identity
from ouroboros.auth import require_clearance
from ouroboros.database import get_db
from ouroboros.models import AuditLog

router = APIRouter(prefix="/api/audit", tags=["Audit"])


def log_dict(log: AuditLog) -> dict:
    return {
        "id": str(log.id),
        "timestamp": log.event_timestamp.isoformat() if log.event_timestamp else None,
        "username": log.username,
        "user_clearance": log.user_clearance,
        "action": log.action,
        "resource_type": log.resource_type,
        "resource_id": str(log.resource_id) if log.resource_id else None,
        "resource_title": log.resource_title,
        "security_class": log.security_class,
        "clearance_required": log.clearance_required,
        "was_allowed": log.was_allowed,
        "granted_role": log.granted_role,
        "access_basis": log.access_basis,
        "denial_reason": log.denial_reason,
        "ip_address": log.ip_address,
        "request_method": log.request_method,
        "request_path": log.request_path,
    }


@router.get("/logs")
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type"),
    username: Optional[str] = Query(None, description="Filter by username"),
    resource_type: Optional[str] = Query(None, description="Filter by resource type"),
    was_allowed: Optional[bool] = Query(None, description="Filter by access result"),
    hours: int = Query(24, description="How many hours back to look"),
    limit: int = Query(100, description="Max results", le=500),
    offset: int = Query(0, description="Offset for pagination"),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(ADMIN_CLEARANCE)),
):
    """Query audit logs with filters. Level 5 only."""
    since = datetime.utcnow() - timedelta(hours=hours)

    query = (
        select(AuditLog)
        .where(AuditLog.event_timestamp >= since)
        .order_by(desc(AuditLog.event_timestamp))
    )

    if action:
        query = query.where(AuditLog.action == action)
    if username:
        query = query.where(AuditLog.username == username)
    if resource_type:
        query = query.where(AuditLog.resource_type == resource_type)
    if was_allowed is not None:
        query = query.where(AuditLog.was_allowed == was_allowed)

    count_query = select(func.count()).select_from(query.subquery())
    total = (await db.execute(count_query)).scalar() or 0

    query = query.offset(offset).limit(limit)
    result = await db.execute(query)
    logs = result.scalars().all()

    return {
        "total": total,
        "offset": offset,
        "limit": limit,
        "logs": [log_dict(log) for log in logs],
    }


@router.get("/denials")
async def recent_denials(
    limit: int = Query(50, le=200),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(ADMIN_CLEARANCE)),
):
    """Get recent access denials for security review."""
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.was_allowed == False)
        .order_by(desc(AuditLog.event_timestamp))
        .limit(limit)
    )
    return {"denials": [log_dict(log) for log in result.scalars().all()]}
