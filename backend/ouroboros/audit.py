"""
Comprehensive Audit Logging

Logs every project access decision, content render and mutation,
including denied attempts.
"""
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from ouroboros.access import AccessDecision, Identity
from ouroboros.models import AuditLog

logger = logging.getLogger(__name__)


def _request_info(request: Optional[object]) -> dict:
    if not request:
        return {}
    return {
        "ip_address": getattr(request.client, "host", None) if request.client else None,
        "user_agent": request.headers.get("user-agent", ""),
        "request_path": str(request.url.path),
        "request_method": request.method,
    }


async def log_event(
    db: AsyncSession,
    identity: Optional[Identity],
    action: str,
    resource_type: str,
    resource_id=None,
    resource_title: Optional[str] = None,
    security_class: Optional[str] = None,
    clearance_required: Optional[int] = None,
    was_allowed: bool = True,
    granted_role: Optional[str] = None,
    access_basis: Optional[str] = None,
    denial_reason: Optional[str] = None,
    details: Optional[dict] = None,
    request: Optional[object] = None,
):
    """Write an audit log entry using ORM."""
    entry = AuditLog(
        event_timestamp=datetime.utcnow(),
        user_id=identity.id if identity else None,
        username=identity.username if identity else "anonymous",
        user_clearance=identity.clearance_level if identity else None,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_title=resource_title,
        security_class=security_class,
        clearance_required=clearance_required,
        was_allowed=was_allowed,
        granted_role=granted_role,
        access_basis=access_basis,
        denial_reason=denial_reason,
        details=details if details else None,
        **_request_info(request),
    )

    db.add(entry)
    await db.commit()


async def log_project_access(
    db: AsyncSession,
    identity: Identity,
    project,
    decision: AccessDecision,
    request: Optional[object] = None,
):
    """Log a project-level access decision."""
    if not decision.allowed:
        logger.info(
            "Denied %s access to project %s: %s",
            identity.username or identity.id, project.project_code, decision.reason,
        )
    await log_event(
        db=db,
        identity=identity,
        action="READ_PROJECT" if decision.allowed else "ACCESS_DENIED",
        resource_type="project",
        resource_id=project.id,
        resource_title=project.name,
        security_class=project.security_class,
        clearance_required=decision.required,
        was_allowed=decision.allowed,
        granted_role=decision.role.value if decision.role else None,
        access_basis=decision.basis,
        denial_reason=decision.reason,
        request=request,
    )


async def log_content_render(
    db: AsyncSession,
    identity: Identity,
    resource_type: str,
    resource_id,
    resource_title: Optional[str],
    threshold: int,
    status: str,
    request: Optional[object] = None,
):
    """Log how much of a report or logbook entry a viewer was shown."""
    await log_event(
        db=db,
        identity=identity,
        action=f"RENDER_{status.upper()}",
        resource_type=resource_type,
        resource_id=resource_id,
        resource_title=resource_title,
        clearance_required=threshold,
        was_allowed=status != "denied",
        denial_reason="insufficient clearance" if status == "denied" else None,
        request=request,
    )


async def log_crud_event(
    db: AsyncSession,
    identity: Identity,
    action: str,
    resource_type: str,
    resource_id=None,
    resource_title: Optional[str] = None,
    was_allowed: bool = True,
    denial_reason: Optional[str] = None,
    details: Optional[dict] = None,
    request: Optional[object] = None,
):
    """Log a CRUD operation."""
    await log_event(
        db=db,
        identity=identity,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_title=resource_title,
        was_allowed=was_allowed,
        denial_reason=denial_reason,
        details=details,
        request=request,
    )
