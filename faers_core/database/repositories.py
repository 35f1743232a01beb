"""
FAERS CORE - Data Repositories
==============================
Data access layer for users, roles, sessions, password history, the audit
trail and electronic signatures.

Every write method accepts an optional ``session`` so several writes can
share one transaction; without it each call runs in its own transaction.
Repositories return domain dataclasses, never ORM rows.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Generator, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import and_, case, func, or_, update
from sqlalchemy.orm import Session

from .. import models as domain
from ..utils.timeutils import ensure_utc, to_naive_utc
from .connection import DatabaseManager, get_db_manager
from .enums import AuditAction, EntityType
from .models import (
    User, Role, Permission, UserSession, PasswordHistory, AuditLog, ElectronicSignature,
)

logger = logging.getLogger(__name__)


def _like_pattern(text: str) -> str:
    """Substring LIKE pattern with the wildcards in ``text`` escaped."""
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


class BaseRepository:
    """Base repository with transaction scoping."""

    def __init__(self, db: Optional[DatabaseManager] = None):
        """
        Initialize repository.

        Args:
            db: Database manager (uses the singleton if not provided)
        """
        self._db = db or get_db_manager()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """Open a transaction that several repository calls can share."""
        with self._db.session() as session:
            yield session

    @contextmanager
    def _scope(self, session: Optional[Session] = None) -> Generator[Session, None, None]:
        if session is not None:
            yield session
        else:
            with self._db.session() as own:
                yield own


# =============================================================================
# ROW MAPPING
# =============================================================================

def _to_user(row: User) -> domain.User:
    return domain.User(
        id=row.user_id,
        username=row.username,
        email=row.email,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        is_active=row.is_active,
        must_change_password=row.must_change_password,
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=ensure_utc(row.locked_until),
        last_login_at=ensure_utc(row.last_login_at),
        password_changed_at=ensure_utc(row.password_changed_at),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        roles=sorted(role.role_id for role in row.roles),
    )


def _to_role(row: Role) -> domain.Role:
    return domain.Role(
        id=row.role_id,
        name=row.name,
        description=row.description,
        is_system=row.is_system,
        permissions=sorted(p.permission_id for p in row.permissions),
    )


def _to_session(row: UserSession) -> domain.Session:
    return domain.Session(
        id=row.session_id,
        user_id=row.user_id,
        created_at=ensure_utc(row.created_at),
        expires_at=ensure_utc(row.expires_at),
        last_activity_at=ensure_utc(row.last_activity_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        is_active=row.is_active,
    )


def _to_audit_entry(row: AuditLog) -> domain.AuditLogEntry:
    return domain.AuditLogEntry(
        id=row.audit_id,
        timestamp=ensure_utc(row.timestamp),
        action_type=row.action_type,
        entity_type=row.entity_type,
        user_id=row.user_id,
        username=row.username,
        session_id=row.session_id,
        entity_id=row.entity_id,
        field_name=row.field_name,
        old_value=row.old_value,
        new_value=row.new_value,
        details=row.details,
        ip_address=row.ip_address,
    )


def _to_signature(row: ElectronicSignature) -> domain.ElectronicSignature:
    return domain.ElectronicSignature(
        id=row.signature_id,
        user_id=row.user_id,
        username=row.username,
        timestamp=row.timestamp,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        action=row.action,
        meaning=row.meaning,
        record_version=row.record_version,
        signature_hash=row.signature_hash,
    )


# =============================================================================
# USERS & ROLES
# =============================================================================

class UserRepository(BaseRepository):
    """Repository for user accounts. Usernames and emails are stored lower-cased."""

    def create(
        self,
        username: str,
        email: str,
        password_hash: str,
        now: datetime,
        first_name: str = "",
        last_name: str = "",
        role_ids: Iterable[str] = (),
        created_by: Optional[str] = None,
        must_change_password: bool = True,
        session: Optional[Session] = None,
    ) -> domain.User:
        """Create a new user with the given roles."""
        role_ids = list(role_ids)
        with self._scope(session) as s:
            roles = s.query(Role).filter(Role.role_id.in_(role_ids)).all() if role_ids else []
            row = User(
                username=username.lower(),
                email=email.lower(),
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                must_change_password=must_change_password,
                password_changed_at=to_naive_utc(now),
                created_at=to_naive_utc(now),
                updated_at=to_naive_utc(now),
                created_by=created_by,
                roles=roles,
            )
            s.add(row)
            s.flush()
            return _to_user(row)

    def find_by_id(self, user_id: str) -> Optional[domain.User]:
        with self._scope() as s:
            row = s.get(User, user_id)
            return _to_user(row) if row else None

    def find_by_username(self, username: str) -> Optional[domain.User]:
        with self._scope() as s:
            row = s.query(User).filter(User.username == username.lower()).first()
            return _to_user(row) if row else None

    def find_by_email(self, email: str) -> Optional[domain.User]:
        with self._scope() as s:
            row = s.query(User).filter(User.email == email.lower()).first()
            return _to_user(row) if row else None

    def username_exists(self, username: str) -> bool:
        return self.find_by_username(username) is not None

    def email_exists(self, email: str, exclude_user_id: Optional[str] = None) -> bool:
        with self._scope() as s:
            query = s.query(User.user_id).filter(User.email == email.lower())
            if exclude_user_id:
                query = query.filter(User.user_id != exclude_user_id)
            return query.first() is not None

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._scope() as s:
            row = s.get(User, user_id)
            return row.password_hash if row else None

    def list_users(self, is_active: Optional[bool] = None, search: Optional[str] = None) -> List[domain.User]:
        """List users, optionally filtered by status or a name/email search."""
        with self._scope() as s:
            query = s.query(User)
            if is_active is not None:
                query = query.filter(User.is_active == is_active)
            if search:
                term = _like_pattern(search.lower())
                query = query.filter(or_(
                    User.username.like(term, escape='\\'),
                    User.email.like(term, escape='\\'),
                    func.lower(User.first_name).like(term, escape='\\'),
                    func.lower(User.last_name).like(term, escape='\\'),
                ))
            return [_to_user(row) for row in query.order_by(User.username).all()]

    def count_admins(self) -> int:
        with self._scope() as s:
            return s.query(func.count(User.user_id)).select_from(User).join(User.roles).filter(Role.role_id == 'admin').scalar()

    def register_failed_attempt(
        self, user_id: str, now: datetime, max_attempts: int, lockout_duration: timedelta
    ) -> Tuple[int, Optional[datetime]]:
        """
        Count one failed password attempt and lock the account at the limit.

        The increment runs as a single UPDATE, so concurrent failures are
        never lost, and the lock decision is made in the same transaction.
        A lock that has already run out restarts the count at 1.

        Returns:
            (failed attempts now stored, locked_until or None)
        """
        naive_now = to_naive_utc(now)
        lock_expired = and_(User.locked_until.is_not(None), User.locked_until <= naive_now)
        with self._scope() as s:
            s.execute(
                update(User)
                .where(User.user_id == user_id)
                .values(
                    failed_login_attempts=case(
                        (lock_expired, 1),
                        else_=func.coalesce(User.failed_login_attempts, 0) + 1,
                    ),
                    locked_until=case((lock_expired, None), else_=User.locked_until),
                    updated_at=naive_now,
                )
                .execution_options(synchronize_session=False)
            )
            row = s.get(User, user_id)
            if row is None:
                return 0, None
            if row.failed_login_attempts >= max_attempts and row.locked_until is None:
                row.locked_until = to_naive_utc(now + lockout_duration)
            return row.failed_login_attempts, ensure_utc(row.locked_until)

    def record_successful_login(self, user_id: str, now: datetime) -> None:
        """Reset the lockout counter and stamp the login time."""
        with self._scope() as s:
            row = s.get(User, user_id)
            if row is None:
                return
            row.failed_login_attempts = 0
            row.locked_until = None
            row.last_login_at = to_naive_utc(now)
            row.updated_at = to_naive_utc(now)

    def update_password(
        self,
        user_id: str,
        password_hash: str,
        now: datetime,
        must_change_password: bool = False,
        session: Optional[Session] = None,
    ) -> None:
        with self._scope(session) as s:
            row = s.get(User, user_id)
            if row is None:
                return
            row.password_hash = password_hash
            row.password_changed_at = to_naive_utc(now)
            row.must_change_password = must_change_password
            row.updated_at = to_naive_utc(now)

    def update_profile(self, user_id: str, now: datetime, **fields) -> Optional[domain.User]:
        """Update first_name, last_name and/or email."""
        with self._scope() as s:
            row = s.get(User, user_id)
            if row is None:
                return None
            for name in ('first_name', 'last_name', 'email'):
                if name in fields and fields[name] is not None:
                    value = fields[name].lower() if name == 'email' else fields[name]
                    setattr(row, name, value)
            row.updated_at = to_naive_utc(now)
            s.flush()
            return _to_user(row)

    def set_active(self, user_id: str, is_active: bool, now: datetime, actor_id: Optional[str] = None) -> None:
        """Deactivate or reactivate. Reactivation also clears any lockout."""
        with self._scope() as s:
            row = s.get(User, user_id)
            if row is None:
                return
            row.is_active = is_active
            row.updated_at = to_naive_utc(now)
            if is_active:
                row.deactivated_at = None
                row.deactivated_by = None
                row.failed_login_attempts = 0
                row.locked_until = None
            else:
                row.deactivated_at = to_naive_utc(now)
                row.deactivated_by = actor_id

    def set_roles(self, user_id: str, role_ids: Iterable[str], now: datetime) -> Tuple[List[str], List[str]]:
        """Replace the user's roles. Returns (added, removed) role ids."""
        wanted = set(role_ids)
        with self._scope() as s:
            row = s.get(User, user_id)
            if row is None:
                return [], []
            current = {role.role_id for role in row.roles}
            row.roles = s.query(Role).filter(Role.role_id.in_(list(wanted))).all() if wanted else []
            row.updated_at = to_naive_utc(now)
            found = {role.role_id for role in row.roles}
            return sorted(found - current), sorted(current - found)


class RoleRepository(BaseRepository):
    """Repository for roles and their permissions."""

    def find_by_id(self, role_id: str) -> Optional[domain.Role]:
        with self._scope() as s:
            row = s.get(Role, role_id)
            return _to_role(row) if row else None

    def find_all(self) -> List[domain.Role]:
        with self._scope() as s:
            return [_to_role(row) for row in s.query(Role).order_by(Role.role_id).all()]

    def existing_ids(self, role_ids: Iterable[str]) -> Set[str]:
        ids = list(role_ids)
        if not ids:
            return set()
        with self._scope() as s:
            return {rid for (rid,) in s.query(Role.role_id).filter(Role.role_id.in_(ids)).all()}

    def get_user_role_ids(self, user_id: str) -> List[str]:
        with self._scope() as s:
            row = s.get(User, user_id)
            return sorted(role.role_id for role in row.roles) if row else []

    def get_user_permission_names(self, user_id: str) -> Set[str]:
        """Union of permission names over all of the user's roles."""
        with self._scope() as s:
            rows = (
                s.query(Permission.permission_id)
                .select_from(Role)
                .join(Role.permissions)
                .join(Role.users)
                .filter(User.user_id == user_id)
                .distinct()
                .all()
            )
            return {name for (name,) in rows}

    def user_has_role(self, user_id: str, role_id: str) -> bool:
        return role_id in self.get_user_role_ids(user_id)


# =============================================================================
# SESSIONS & PASSWORD HISTORY
# =============================================================================

class SessionRepository(BaseRepository):
    """Durable session store. Source of truth for session liveness."""

    def create(
        self,
        session_id: str,
        user_id: str,
        now: datetime,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> domain.Session:
        with self._scope(session) as s:
            row = UserSession(
                session_id=session_id,
                user_id=user_id,
                created_at=to_naive_utc(now),
                expires_at=to_naive_utc(expires_at),
                last_activity_at=to_naive_utc(now),
                ip_address=ip_address,
                user_agent=user_agent,
                is_active=True,
            )
            s.add(row)
            s.flush()
            return _to_session(row)

    def find_by_id(self, session_id: str) -> Optional[domain.Session]:
        with self._scope() as s:
            row = s.get(UserSession, session_id)
            return _to_session(row) if row else None

    def find_active_by_user_id(self, user_id: str, now: datetime) -> List[domain.Session]:
        with self._scope() as s:
            rows = (
                s.query(UserSession)
                .filter(
                    UserSession.user_id == user_id,
                    UserSession.is_active.is_(True),
                    UserSession.expires_at > to_naive_utc(now),
                )
                .order_by(UserSession.created_at.desc())
                .all()
            )
            return [_to_session(row) for row in rows]

    def count_active_for_user(self, user_id: str, now: datetime) -> int:
        return len(self.find_active_by_user_id(user_id, now))

    def update_activity(self, session_id: str, now: datetime) -> Optional[domain.Session]:
        """Stamp last activity on an active session. Inactive rows are returned untouched."""
        with self._scope() as s:
            row = s.get(UserSession, session_id)
            if row is None:
                return None
            if row.is_active:
                row.last_activity_at = to_naive_utc(now)
            return _to_session(row)

    def extend(self, session_id: str, expires_at: datetime, now: datetime) -> Optional[domain.Session]:
        """Move expiry forward on an active session. Expiry never moves backwards."""
        with self._scope() as s:
            row = s.get(UserSession, session_id)
            if row is None or not row.is_active:
                return None
            new_expiry = to_naive_utc(expires_at)
            if new_expiry > row.expires_at:
                row.expires_at = new_expiry
            row.last_activity_at = to_naive_utc(now)
            return _to_session(row)

    def invalidate(self, session_id: str, session: Optional[Session] = None) -> bool:
        with self._scope(session) as s:
            row = s.get(UserSession, session_id)
            if row is None or not row.is_active:
                return False
            row.is_active = False
            return True

    def invalidate_all_for_user(self, user_id: str, session: Optional[Session] = None) -> List[str]:
        """Deactivate every active session of a user. Returns the affected ids."""
        with self._scope(session) as s:
            rows = (
                s.query(UserSession)
                .filter(UserSession.user_id == user_id, UserSession.is_active.is_(True))
                .all()
            )
            for row in rows:
                row.is_active = False
            return [row.session_id for row in rows]

    def cleanup_expired(self, now: datetime) -> int:
        """Delete sessions whose expiry has passed."""
        with self._scope() as s:
            count = (
                s.query(UserSession)
                .filter(UserSession.expires_at <= to_naive_utc(now))
                .delete(synchronize_session=False)
            )
            return count


class PasswordHistoryRepository(BaseRepository):
    """Previous password hashes per user."""

    def add(
        self,
        user_id: str,
        password_hash: str,
        now: datetime,
        keep: int,
        session: Optional[Session] = None,
    ) -> None:
        """Record a hash and prune so only the newest ``keep`` remain."""
        with self._scope(session) as s:
            s.add(PasswordHistory(user_id=user_id, password_hash=password_hash, created_at=to_naive_utc(now)))
            s.flush()
            stale = (
                s.query(PasswordHistory)
                .filter(PasswordHistory.user_id == user_id)
                .order_by(PasswordHistory.created_at.desc(), PasswordHistory.history_id.desc())
                .offset(keep)
                .all()
            )
            for row in stale:
                s.delete(row)

    def recent(self, user_id: str, limit: int) -> List[str]:
        with self._scope() as s:
            rows = (
                s.query(PasswordHistory.password_hash)
                .filter(PasswordHistory.user_id == user_id)
                .order_by(PasswordHistory.created_at.desc(), PasswordHistory.history_id.desc())
                .limit(limit)
                .all()
            )
            return [h for (h,) in rows]


# =============================================================================
# AUDIT TRAIL & SIGNATURES
# =============================================================================

class AuditRepository(BaseRepository):
    """Append-only audit log storage. There is no update or delete."""

    def append(self, timestamp: datetime, session: Optional[Session] = None, **columns) -> domain.AuditLogEntry:
        with self._scope(session) as s:
            row = AuditLog(timestamp=to_naive_utc(timestamp), **columns)
            s.add(row)
            s.flush()
            return _to_audit_entry(row)

    def get(self, audit_id: int) -> Optional[domain.AuditLogEntry]:
        with self._scope() as s:
            row = s.get(AuditLog, audit_id)
            return _to_audit_entry(row) if row else None

    def _filtered(self, s: Session, audit_filter: domain.AuditLogFilter):
        query = s.query(AuditLog)
        f = audit_filter
        if f.start_date is not None:
            query = query.filter(AuditLog.timestamp >= to_naive_utc(f.start_date))
        if f.end_date is not None:
            query = query.filter(AuditLog.timestamp <= to_naive_utc(f.end_date))
        if f.user_id:
            query = query.filter(AuditLog.user_id == f.user_id)
        if f.action_types:
            actions = f.action_types
            if isinstance(actions, (str, AuditAction)):
                actions = [actions]
            query = query.filter(AuditLog.action_type.in_([AuditAction(a).value for a in actions]))
        if f.entity_type:
            query = query.filter(AuditLog.entity_type == EntityType(f.entity_type).value)
        if f.entity_id:
            query = query.filter(AuditLog.entity_id == f.entity_id)
        if f.search:
            term = _like_pattern(f.search)
            query = query.filter(or_(
                AuditLog.username.like(term, escape='\\'),
                AuditLog.details.like(term, escape='\\'),
                AuditLog.old_value.like(term, escape='\\'),
                AuditLog.new_value.like(term, escape='\\'),
            ))
        return query

    def query(self, audit_filter: domain.AuditLogFilter, limit: int) -> Tuple[List[domain.AuditLogEntry], int]:
        """One page of matching entries (newest first) and the total match count."""
        with self._scope() as s:
            query = self._filtered(s, audit_filter)
            total = query.count()
            rows = (
                query.order_by(AuditLog.timestamp.desc(), AuditLog.audit_id.desc())
                .offset(audit_filter.offset)
                .limit(limit)
                .all()
            )
            return [_to_audit_entry(row) for row in rows], total

    def iter_matching(self, audit_filter: domain.AuditLogFilter, batch_size: int) -> Iterator[domain.AuditLogEntry]:
        """
        Yield every matching entry, newest first, in batches.

        Entries appended after iteration starts are not included.
        """
        with self._scope() as s:
            ceiling = s.query(func.max(AuditLog.audit_id)).scalar()
        if ceiling is None:
            return
        last_id = ceiling + 1
        while True:
            with self._scope() as s:
                rows = (
                    self._filtered(s, audit_filter)
                    .filter(AuditLog.audit_id < last_id)
                    .order_by(AuditLog.audit_id.desc())
                    .limit(batch_size)
                    .all()
                )
                batch = [_to_audit_entry(row) for row in rows]
            if not batch:
                return
            for entry in batch:
                yield entry
            last_id = batch[-1].id

    def count_by_action(self, start: datetime, end: datetime) -> Dict[str, int]:
        with self._scope() as s:
            rows = (
                s.query(AuditLog.action_type, func.count(AuditLog.audit_id))
                .filter(AuditLog.timestamp >= to_naive_utc(start), AuditLog.timestamp <= to_naive_utc(end))
                .group_by(AuditLog.action_type)
                .all()
            )
            return {action: count for action, count in rows}

    def count_by_user(self, start: datetime, end: datetime) -> Dict[str, int]:
        with self._scope() as s:
            rows = (
                s.query(AuditLog.username, func.count(AuditLog.audit_id))
                .filter(
                    AuditLog.timestamp >= to_naive_utc(start),
                    AuditLog.timestamp <= to_naive_utc(end),
                    AuditLog.username.isnot(None),
                )
                .group_by(AuditLog.username)
                .all()
            )
            return {username: count for username, count in rows}


class SignatureRepository(BaseRepository):
    """Append-only electronic signature storage."""

    def insert(self, session: Optional[Session] = None, **columns) -> domain.ElectronicSignature:
        with self._scope(session) as s:
            row = ElectronicSignature(**columns)
            s.add(row)
            s.flush()
            return _to_signature(row)

    def get(self, signature_id: int) -> Optional[domain.ElectronicSignature]:
        with self._scope() as s:
            row = s.get(ElectronicSignature, signature_id)
            return _to_signature(row) if row else None

    def for_entity(self, entity_type: str, entity_id: str) -> List[domain.ElectronicSignature]:
        with self._scope() as s:
            rows = (
                s.query(ElectronicSignature)
                .filter(ElectronicSignature.entity_type == entity_type, ElectronicSignature.entity_id == entity_id)
                .order_by(ElectronicSignature.signature_id)
                .all()
            )
            return [_to_signature(row) for row in rows]

    def count(self) -> int:
        with self._scope() as s:
            return s.query(func.count(ElectronicSignature.signature_id)).scalar()
