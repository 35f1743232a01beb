"""
FAERS CORE - Database Models
============================
SQLAlchemy ORM models for the access-control, audit and workflow core.

Models:
- User, Role, Permission (Authentication / RBAC)
- UserSession, PasswordHistory (Credentials and sessions)
- AuditLog, ElectronicSignature (Compliance - 21 CFR Part 11, append-only)
- Case, CaseAssignment, CaseComment, CaseNote (Workflow)
"""

from datetime import datetime
from typing import List, Optional
import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Boolean, Index, Table, event
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..exceptions import ImmutableRecordError
from ..utils.timeutils import utcnow, to_naive_utc


def _now() -> datetime:
    return to_naive_utc(utcnow())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# ASSOCIATION TABLES (Many-to-Many)
# =============================================================================

user_roles = Table(
    'user_roles',
    Base.metadata,
    Column('user_id', String(36), ForeignKey('users.user_id'), primary_key=True),
    Column('role_id', String(50), ForeignKey('roles.role_id'), primary_key=True),
    Column('assigned_at', DateTime, default=_now),
)

role_permissions = Table(
    'role_permissions',
    Base.metadata,
    Column('role_id', String(50), ForeignKey('roles.role_id'), primary_key=True),
    Column('permission_id', String(100), ForeignKey('permissions.permission_id'), primary_key=True),
)


# =============================================================================
# AUTHENTICATION
# =============================================================================

class User(Base):
    """User accounts."""
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Credentials
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # Profile
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    must_change_password: Mapped[bool] = mapped_column(Boolean, default=True)
    password_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Lockout
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Lifecycle
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deactivated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    roles: Mapped[List["Role"]] = relationship(secondary=user_roles, back_populates="users")


class Role(Base):
    """Named permission sets."""
    __tablename__ = "roles"

    role_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    permissions: Mapped[List["Permission"]] = relationship(secondary=role_permissions)
    users: Mapped[List["User"]] = relationship(secondary=user_roles, back_populates="roles")


class Permission(Base):
    """Permission catalog."""
    __tablename__ = "permissions"

    permission_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class UserSession(Base):
    """Authenticated sessions. The durable store is the source of truth."""
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.user_id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index('idx_sessions_user_active', 'user_id', 'is_active'),
        Index('idx_sessions_expires', 'expires_at'),
    )


class PasswordHistory(Base):
    """Previous password hashes, newest kept."""
    __tablename__ = "password_history"

    history_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey('users.user_id'), nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# =============================================================================
# COMPLIANCE (21 CFR Part 11)
# =============================================================================

class AuditLog(Base):
    """Immutable audit trail for compliance."""
    __tablename__ = "audit_log"

    audit_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Actor
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Action
    action_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Entity
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Change details
    field_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Indexes for compliance queries
    __table_args__ = (
        Index('idx_audit_user_time', 'user_id', 'timestamp'),
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


class ElectronicSignature(Base):
    """
    Electronic signature records.

    ``timestamp`` is stored as the exact ISO-8601 string that was hashed so
    verification can reproduce the hash byte for byte.
    """
    __tablename__ = "electronic_signatures"

    signature_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    meaning: Mapped[str] = mapped_column(Text, nullable=False)
    record_version: Mapped[int] = mapped_column(Integer, nullable=False)
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index('idx_signature_entity', 'entity_type', 'entity_id'),
    )


# =============================================================================
# WORKFLOW
# =============================================================================

class Case(Base):
    """Workflow-relevant case fields. Clinical content lives elsewhere."""
    __tablename__ = "cases"

    case_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    workflow_status: Mapped[str] = mapped_column(String(40), nullable=False, default="Draft", index=True)
    current_owner: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    current_assignee: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_expedited: Mapped[bool] = mapped_column(Boolean, default=False)
    rejection_count: Mapped[int] = mapped_column(Integer, default=0)
    last_exported_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    assignments: Mapped[List["CaseAssignment"]] = relationship(
        back_populates="case", order_by="CaseAssignment.assignment_id"
    )


class CaseAssignment(Base):
    """Assignment history for a case."""
    __tablename__ = "case_assignments"

    assignment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(String(50), ForeignKey('cases.case_id'), nullable=False, index=True)
    assigned_to: Mapped[str] = mapped_column(String(36), nullable=False)
    assigned_by: Mapped[str] = mapped_column(String(36), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    priority: Mapped[str] = mapped_column(String(10), default="normal")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True)

    case: Mapped["Case"] = relationship(back_populates="assignments")


class CaseComment(Base):
    """Workflow and discussion comments on a case."""
    __tablename__ = "case_comments"

    comment_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(String(50), ForeignKey('cases.case_id'), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    comment_type: Mapped[str] = mapped_column(String(20), nullable=False, default="general")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    mentions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON list of user ids
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class CaseNote(Base):
    """Internal notes. Personal notes are visible to their author only."""
    __tablename__ = "case_notes"

    note_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    case_id: Mapped[str] = mapped_column(String(50), ForeignKey('cases.case_id'), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    visibility: Mapped[str] = mapped_column(String(10), nullable=False, default="team")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)


# =============================================================================
# APPEND-ONLY ENFORCEMENT
# =============================================================================

def _reject_mutation(mapper, connection, target):
    raise ImmutableRecordError(
        f"{target.__tablename__} records are append-only and cannot be modified or deleted"
    )


for _model in (AuditLog, ElectronicSignature):
    event.listen(_model, 'before_update', _reject_mutation)
    event.listen(_model, 'before_delete', _reject_mutation)
