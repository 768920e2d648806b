"""SQLAlchemy ORM models."""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Boolean, DateTime, Text, Integer, Enum, ForeignKey, JSON,
    UniqueConstraint, Uuid,
)
from sqlalchemy.orm import relationship
from ouroboros.database import Base

SECURITY_CLASSES = ("GREEN", "AMBER", "RED", "BLACK")
THREAT_LEVELS = ("negligible", "low", "moderate", "high", "critical", "apollyon")
PROJECT_STATUSES = ("active", "review", "suspended", "archived", "expunged")
PROJECT_ROLES = ("lead", "researcher", "observer", "consultant")
ACCESS_TYPES = ("user", "department", "rank", "clearance")
PROPOSAL_STATUSES = ("pending", "under_review", "approved", "rejected", "revision")
ENTRY_TYPES = ("observation", "experiment", "incident", "note", "addendum", "interview")
REPORT_TYPES = ("general", "incident", "intel", "status", "containment_breach")
PRIORITIES = ("low", "normal", "high", "critical", "omega")
REPORT_STATUSES = ("pending", "acknowledged", "investigating", "resolved", "archived")


class Department(Base):
    __tablename__ = "departments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), unique=True, nullable=False)
    codename = Column(String(255))
    description = Column(Text)
    icon_symbol = Column(String(16), default="⛧")
    color = Column(String(16), default="#c9a227")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Rank(Base):
    __tablename__ = "ranks"
    __table_args__ = (UniqueConstraint("department_id", "name"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    department_id = Column(Uuid, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    short_name = Column(String(16))
    clearance_level = Column(Integer, default=1, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, default=True)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subject = Column(String(255), unique=True, nullable=False)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255))
    display_name = Column(String(500))
    title = Column(String(255))
    designation = Column(String(255))
    clearance_level = Column(Integer, default=0, nullable=False)
    primary_department_id = Column(Uuid, ForeignKey("departments.id"))
    is_active = Column(Boolean, default=True)
    last_login_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    memberships = relationship(
        "DepartmentMember", lazy="selectin", foreign_keys="DepartmentMember.user_id"
    )


class DepartmentMember(Base):
    __tablename__ = "department_members"
    __table_args__ = (UniqueConstraint("department_id", "user_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    department_id = Column(Uuid, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    rank_id = Column(Uuid, ForeignKey("ranks.id", ondelete="SET NULL"))
    assigned_by = Column(Uuid, ForeignKey("users.id"))
    assigned_at = Column(DateTime, default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_code = Column(String(32), unique=True, nullable=False)
    name = Column(String(500), nullable=False)
    codename = Column(String(255))
    object_class = Column(String(255))
    security_class = Column(Enum(*SECURITY_CLASSES, name="security_class"), default="GREEN", nullable=False)
    threat_level = Column(Enum(*THREAT_LEVELS, name="threat_level"), default="low", nullable=False)
    department_id = Column(Uuid, ForeignKey("departments.id"))
    site_assignment = Column(String(255))
    status = Column(Enum(*PROJECT_STATUSES, name="project_status"), default="active", nullable=False)
    description = Column(Text)
    containment_procedures = Column(Text)
    research_protocols = Column(Text)
    progress = Column(Integer, default=0, nullable=False)
    created_by = Column(Uuid, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    access_rules = relationship(
        "ProjectAccessRule", lazy="selectin", cascade="all, delete-orphan",
        order_by="ProjectAccessRule.created_at",
    )
    assignments = relationship("ProjectAssignment", lazy="selectin", cascade="all, delete-orphan")


class ProjectAccessRule(Base):
    __tablename__ = "project_access_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    access_type = Column(Enum(*ACCESS_TYPES, name="project_access_type"), nullable=False)
    target_id = Column(Uuid)
    min_clearance = Column(Integer)
    role = Column(Enum(*PROJECT_ROLES, name="project_role"), default="researcher", nullable=False)
    created_by = Column(Uuid, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)


class ProjectAssignment(Base):
    __tablename__ = "project_assignments"
    __table_args__ = (UniqueConstraint("project_id", "user_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(Enum(*PROJECT_ROLES, name="project_role"), default="researcher", nullable=False)
    assigned_by = Column(Uuid, ForeignKey("users.id"))
    assigned_at = Column(DateTime, default=datetime.utcnow)


class ProjectDepartment(Base):
    __tablename__ = "project_departments"
    __table_args__ = (UniqueConstraint("project_id", "department_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    department_id = Column(Uuid, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)


class LogbookEntry(Base):
    __tablename__ = "logbook_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    author_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    entry_number = Column(Integer)
    entry_text = Column(Text, nullable=False)
    entry_type = Column(Enum(*ENTRY_TYPES, name="entry_type"), default="observation", nullable=False)
    attachments = Column(JSON)
    min_clearance_to_view = Column(Integer)
    redacted_version = Column(Text)
    is_redacted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Report(Base):
    __tablename__ = "reports"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_code = Column(String(32), unique=True, nullable=False)
    title = Column(String(500), nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text)
    report_type = Column(Enum(*REPORT_TYPES, name="report_type"), default="general", nullable=False)
    priority = Column(Enum(*PRIORITIES, name="priority"), default="normal", nullable=False)
    project_id = Column(Uuid, ForeignKey("projects.id"))
    author_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    status = Column(Enum(*REPORT_STATUSES, name="report_status"), default="pending", nullable=False)
    min_clearance_to_view = Column(Integer, default=1)
    acknowledged_at = Column(DateTime)
    acknowledged_by = Column(Uuid, ForeignKey("users.id"))
    resolved_at = Column(DateTime)
    resolved_by = Column(Uuid, ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)


class ReportRead(Base):
    __tablename__ = "report_reads"
    __table_args__ = (UniqueConstraint("report_id", "user_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    report_id = Column(Uuid, ForeignKey("reports.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    read_at = Column(DateTime, default=datetime.utcnow)


class ProjectProposal(Base):
    __tablename__ = "project_proposals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(500), nullable=False)
    codename = Column(String(255))
    object_class = Column(String(255))
    security_class = Column(Enum(*SECURITY_CLASSES, name="security_class"), default="GREEN", nullable=False)
    threat_level = Column(Enum(*THREAT_LEVELS, name="threat_level"), default="low", nullable=False)
    site_assignment = Column(String(255))
    description = Column(Text)
    containment_procedures = Column(Text)
    research_protocols = Column(Text)
    justification = Column(Text)
    status = Column(Enum(*PROPOSAL_STATUSES, name="proposal_status"), default="pending", nullable=False)
    rejection_reason = Column(Text)
    admin_notes = Column(Text)
    revision_notes = Column(Text)
    submitted_by = Column(Uuid, ForeignKey("users.id"), nullable=False)
    reviewed_by = Column(Uuid, ForeignKey("users.id"))
    reviewed_at = Column(DateTime)
    created_project_id = Column(Uuid, ForeignKey("projects.id"))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    departments = relationship("ProposalDepartment", lazy="selectin", cascade="all, delete-orphan")
    clearance_requirements = relationship(
        "ProposalClearanceRequirement", lazy="selectin", cascade="all, delete-orphan"
    )


class ProposalDepartment(Base):
    __tablename__ = "proposal_departments"
    __table_args__ = (UniqueConstraint("proposal_id", "department_id"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id = Column(Uuid, ForeignKey("project_proposals.id", ondelete="CASCADE"), nullable=False)
    department_id = Column(Uuid, ForeignKey("departments.id", ondelete="CASCADE"), nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)


class ProposalClearanceRequirement(Base):
    __tablename__ = "proposal_clearance_requirements"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    proposal_id = Column(Uuid, ForeignKey("project_proposals.id", ondelete="CASCADE"), nullable=False)
    clearance_level = Column(Integer, nullable=False)
    description = Column(Text)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_timestamp = Column(DateTime, default=datetime.utcnow)
    user_id = Column(Uuid)
    username = Column(String(255))
    user_clearance = Column(Integer)
    action = Column(String(50), nullable=False)
    resource_type = Column(String(100))
    resource_id = Column(Uuid)
    resource_title = Column(String(500))
    security_class = Column(String(16))
    clearance_required = Column(Integer)
    was_allowed = Column(Boolean, default=True)
    granted_role = Column(String(32))
    access_basis = Column(String(32))
    denial_reason = Column(Text)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    request_path = Column(Text)
    request_method = Column(String(10))
    details = Column(JSON, default={})
