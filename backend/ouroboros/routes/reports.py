"""
Reports API - clearance-thresholded reports with read receipts.
"""
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, field_validator

from ouroboros.access import TRIAGE_REPORTS_CLEARANCE, Identity
from ouroboros.audit import log_content_render, log_crud_event
from ouroboros.auth import get_current_identity, require_clearance
from ouroboros.clearance import level_of
from ouroboros.config import settings
from ouroboros.database import get_db
from ouroboros.models import Report
from ouroboros.redaction import ContentRecord, RenderStatus, render
from ouroboros import schemas, store

router = APIRouter(prefix="/api/reports", tags=["Reports"])


class ReportCreate(BaseModel):
    title: str
    content: str
    summary: Optional[str] = None
    report_type: str = "general"
    priority: str = "normal"
    project_id: Optional[UUID] = None
    min_clearance_to_view: Optional[int] = 1

    @field_validator("report_type")
    @classmethod
    def check_report_type(cls, v):
        return schemas.report_type(v)

    @field_validator("priority")
    @classmethod
    def check_priority(cls, v):
        return schemas.priority(v)


class ReportUpdate(BaseModel):
    status: Optional[str] = None
    priority: Optional[str] = None

    @field_validator("status")
    @classmethod
    def check_status(cls, v):
        return schemas.report_status(v)

    @field_validator("priority")
    @classmethod
    def check_priority(cls, v):
        return schemas.priority(v)


def report_header(report: Report) -> dict:
    return {
        "id": str(report.id),
        "report_code": report.report_code,
        "title": report.title,
        "summary": report.summary,
        "report_type": report.report_type,
        "priority": report.priority,
        "status": report.status,
        "min_clearance_to_view": report.min_clearance_to_view,
        "author_id": str(report.author_id),
        "project_id": str(report.project_id) if report.project_id else None,
        "acknowledged_at": report.acknowledged_at.isoformat() if report.acknowledged_at else None,
        "resolved_at": report.resolved_at.isoformat() if report.resolved_at else None,
        "created_at": report.created_at.isoformat() if report.created_at else None,
    }


@router.get("")
async def list_reports(
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    report_type: Optional[str] = Query(None, alias="type"),
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Reports at or below the caller's clearance."""
    status = schemas.query_value(schemas.report_status, status)
    priority = schemas.query_value(schemas.priority, priority)
    report_type = schemas.query_value(schemas.report_type, report_type)
    query = select(Report).order_by(Report.created_at.desc())
    if status:
        query = query.where(Report.status == status)
    if priority:
        query = query.where(Report.priority == priority)
    if report_type:
        query = query.where(Report.report_type == report_type)
    reports = (await db.execute(query)).scalars().all()

    level = level_of(identity)
    visible = [
        report_header(r) for r in reports
        if level >= (r.min_clearance_to_view if r.min_clearance_to_view is not None else 1)
    ]

    if level >= settings.REPORT_READ_TRACKING_CLEARANCE:
        read_ids = {str(rid) for rid in await store.read_report_ids(db, identity.id)}
        for r in visible:
            r["is_read"] = r["id"] in read_ids

    return {"reports": visible}


@router.get("/{report_id}")
async def get_report(
    report_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    report = await db.get(Report, report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")

    rendered = render(
        ContentRecord(body=report.content, min_clearance_to_view=report.min_clearance_to_view),
        identity.clearance_level,
    )
    if rendered.status is not RenderStatus.FULL:
        await log_content_render(
            db, identity, "report", report.id, report.title,
            report.min_clearance_to_view or 1, rendered.status.value, request,
        )
        raise HTTPException(status_code=403, detail="Insufficient clearance")

    # Read receipts are a side effect of viewing, kept out of render().
    if level_of(identity) >= settings.REPORT_READ_TRACKING_CLEARANCE:
        await store.record_report_read(db, report.id, identity.id)

    return {**report_header(report), "content": rendered.payload}


@router.post("", status_code=201)
async def create_report(
    data: ReportCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(require_clearance(1)),
):
    """File a report. The view threshold is capped at the author's clearance."""
    report = await store.create_report(db, identity, **data.model_dump())
    await log_crud_event(
        db, identity, "CREATE", "report",
        resource_id=report.id, resource_title=report.title,
        details={
            "report_code": report.report_code,
            "requested_threshold": data.min_clearance_to_view,
            "threshold": report.min_clearance_to_view,
        },
        request=request,
    )
    return report_header(report)


@router.patch("/{report_id}")
async def update_report(
    report_id: UUID,
    data: ReportUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: Identity = Depends(get_current_identity),
):
    """Triage a report. Anyone who can read it may change priority; status needs Level 3+."""
    report = await db.get(Report, report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    if level_of(identity) < (report.min_clearance_to_view or 1):
        raise HTTPException(status_code=403, detail="Insufficient clearance")
    if data.status is not None and level_of(identity) < TRIAGE_REPORTS_CLEARANCE:
        raise HTTPException(
            status_code=403,
            detail=f"Clearance Level {TRIAGE_REPORTS_CLEARANCE}+ required to change report status",
        )

    changes = await store.update_report(db, report, identity, status=data.status, priority=data.priority)
    if changes:
        await log_crud_event(
            db, identity, "UPDATE", "report",
            resource_id=report.id, resource_title=report.title,
            details={"report_code": report.report_code, "changes": changes},
            request=request,
        )
    return {**report_header(report), "changes": changes}
