"""
FAERS CORE - Domain Models
==========================
Plain dataclasses returned by repositories and services. ORM objects never
leave the database layer.
"""

import json
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Union
from dataclasses import dataclass, field

from .database.enums import AuditAction, EntityType


# =============================================================================
# USERS & ROLES
# =============================================================================

@dataclass
class User:
    """User account (never carries the password hash)."""
    id: str
    username: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    must_change_password: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    roles: List[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked_at(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'is_active': self.is_active,
            'must_change_password': self.must_change_password,
            'last_login_at': self.last_login_at.isoformat() if self.last_login_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'roles': list(self.roles),
        }

    def to_session_dict(self) -> Dict[str, Any]:
        """Minimal data for session storage."""
        return {
            'id': self.id,
            'username': self.username,
            'full_name': self.full_name,
            'roles': list(self.roles),
        }


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    is_system: bool = False
    permissions: List[str] = field(default_factory=list)


@dataclass
class Session:
    """Authenticated session."""
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired_at(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
            'last_activity_at': self.last_activity_at.isoformat(),
            'ip_address': self.ip_address,
            'is_active': self.is_active,
        }


# =============================================================================
# AUTHENTICATION RESULTS
# =============================================================================

@dataclass
class LoginResult:
    user: User
    session: Session
    permissions: FrozenSet[str]
    password_expired: bool = False
    password_expires_in_days: Optional[int] = None
    superseded_sessions: List[str] = field(default_factory=list)

    @property
    def must_change_password(self) -> bool:
        return self.user.must_change_password or self.password_expired


@dataclass
class SessionValidation:
    valid: bool
    session: Optional[Session] = None
    user: Optional[User] = None
    permissions: FrozenSet[str] = frozenset()


@dataclass
class AuthContext:
    """Identity of the caller behind a validated session."""
    user: User
    session_id: str
    permissions: FrozenSet[str]
    ip_address: Optional[str] = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def username(self) -> str:
        return self.user.username


@dataclass
class PolicyValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


# =============================================================================
# AUDIT TRAIL
# =============================================================================

@dataclass
class AuditEvent:
    """An audit entry to be appended. Timestamp and id are assigned on write."""
    action_type: AuditAction
    entity_type: EntityType
    user_id: Optional[str] = None
    username: Optional[str] = None
    session_id: Optional[str] = None
    entity_id: Optional[str] = None
    field_name: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None


@dataclass
class AuditLogEntry:
    """21 CFR Part 11 compliant audit log entry, as stored."""
    id: int
    timestamp: datetime
    action_type: str
    entity_type: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    session_id: Optional[str] = None
    entity_id: Optional[str] = None
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None

    @property
    def details_dict(self) -> Dict[str, Any]:
        return json.loads(self.details) if self.details else {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'user_id': self.user_id,
            'username': self.username,
            'session_id': self.session_id,
            'action_type': self.action_type,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'field_name': self.field_name,
            'old_value': self.old_value,
            'new_value': self.new_value,
            'details': self.details,
            'ip_address': self.ip_address,
        }


@dataclass
class FieldChange:
    field: str
    old_value: Any
    new_value: Any


@dataclass
class AuditLogFilter:
    """
    Audit trail query filter. ``limit`` of None means the default page size.

    ``action_types`` takes one action or a sequence of them.
    """
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    user_id: Optional[str] = None
    action_types: Union[AuditAction, str, Sequence[Union[AuditAction, str]]] = ()
    entity_type: Optional[Union[EntityType, str]] = None
    entity_id: Optional[str] = None
    search: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class AuditLogPage:
    entries: List[AuditLogEntry]
    total: int
    has_more: bool


# =============================================================================
# ELECTRONIC SIGNATURES
# =============================================================================

@dataclass
class SignatureData:
    """What is being signed."""
    user_id: str
    username: str
    entity_type: Union[EntityType, str]
    entity_id: str
    action: str
    meaning: str
    record_version: int


@dataclass
class ElectronicSignature:
    id: int
    user_id: str
    username: str
    timestamp: str
    entity_type: str
    entity_id: str
    action: str
    meaning: str
    record_version: int
    signature_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'username': self.username,
            'timestamp': self.timestamp,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'action': self.action,
            'meaning': self.meaning,
            'record_version': self.record_version,
            'signature_hash': self.signature_hash,
        }
