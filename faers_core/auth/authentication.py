"""
FAERS CORE - Authentication Service
===================================
Login, logout, session validation and password management with
21 CFR Part 11 compliant audit logging.

Every failure is written to the audit trail before the error is raised.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from ..config import PasswordPolicyConfig, SecurityConfig, get_settings
from ..database.connection import DatabaseManager, get_db_manager
from ..database.enums import AuditAction, EntityType
from ..database.repositories import (
    PasswordHistoryRepository, RoleRepository, SessionRepository, UserRepository,
)
from ..compliance.audit_trail import AuditTrail
from ..events import EventDispatcher, SessionExpiryWarning, get_event_dispatcher
from ..exceptions import (
    AccountDeactivated, AccountLocked, AuditWriteError, FaersCoreError, InvalidCredentials,
    NotAuthenticated, NotFound, PasswordReuse, PermissionDenied, PolicyViolation,
)
from ..models import AuditEvent, AuthContext, LoginResult, Session, SessionValidation, User
from ..permissions import Permission, satisfies
from ..utils.timeutils import minutes_until, utcnow
from .authorization import PermissionResolver
from .password import CredentialStore, PasswordPolicy
from .session_cache import SessionCache
from .sessions import SessionStore

logger = logging.getLogger(__name__)


class AuthService:
    """
    Authentication service.

    Only this service touches the credential store and the session store.

    Usage:
        auth = AuthService(db)
        result = auth.login("jdoe", "S3cure!Passw0rd")
        validation = auth.validate_session(result.session.id)
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        config: Optional[SecurityConfig] = None,
        password_policy: Optional[PasswordPolicyConfig] = None,
        audit: Optional[AuditTrail] = None,
        session_cache: Optional[SessionCache] = None,
        events: Optional[EventDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db or get_db_manager()
        self.config = config or get_settings().security
        self._clock = clock

        self._users = UserRepository(self._db)
        self._roles = RoleRepository(self._db)
        self._credentials = CredentialStore(
            self._users,
            PasswordHistoryRepository(self._db),
            policy=PasswordPolicy(password_policy),
            rounds=self.config.bcrypt_rounds,
            clock=clock,
        )
        self._sessions = SessionStore(
            SessionRepository(self._db),
            cache=session_cache or SessionCache(clock),
            clock=clock,
        )
        self.resolver = PermissionResolver(self._roles)
        self.audit = audit or AuditTrail(self._db, clock=clock)
        self.events = events or get_event_dispatcher()

    @property
    def db(self) -> DatabaseManager:
        return self._db

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail(self, event: AuditEvent, error: FaersCoreError):
        """Audit a failure, then raise it."""
        try:
            self.audit.log(event)
        except AuditWriteError as e:
            e.original_error = error
            raise
        raise error

    def _login_failed(self, user: Optional[User], ip_address: Optional[str], error: FaersCoreError, **details):
        if user is None:
            logger.warning(f"Login failed for unknown user: {details.get('reason')}")
        else:
            logger.warning(f"Login failed for {user.username}: {details.get('reason')}")
        self._fail(AuditEvent(
            action_type=AuditAction.LOGIN_FAILED,
            entity_type=EntityType.SESSION,
            user_id=user.id if user else None,
            username=user.username if user else None,
            details=details,
            ip_address=ip_address,
        ), error)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """
        Authenticate a user and open a session.

        Raises:
            InvalidCredentials: unknown user or wrong password
            AccountDeactivated: the account is deactivated
            AccountLocked: the account is locked, or this attempt locked it
        """
        user = self._users.find_by_username(username)
        if user is None:
            self._login_failed(None, ip_address, InvalidCredentials(), username=username, reason='User not found')

        if not user.is_active:
            self._login_failed(user, ip_address, AccountDeactivated(), reason='Account deactivated')

        now = self._clock()
        if user.is_locked_at(now):
            self._login_failed(
                user, ip_address, AccountLocked(minutes_until(user.locked_until, now)),
                reason='Account locked', lock_expires_at=user.locked_until.isoformat(),
            )

        password_hash = self._users.get_password_hash(user.id)
        if not password_hash or not self._credentials.verify_password(password, password_hash):
            self._register_failed_password(user, now, ip_address)

        if self.config.single_session_per_user:
            session, superseded = self._sessions.replace_for_user(
                user.id, now + self.config.session_timeout, ip_address, user_agent,
            )
        else:
            session = self._sessions.create(user.id, now + self.config.session_timeout, ip_address, user_agent)
            superseded = []

        self._users.record_successful_login(user.id, now)
        permissions = self.resolver.effective_permissions(user.id)

        self.audit.log(AuditEvent(
            action_type=AuditAction.LOGIN,
            entity_type=EntityType.SESSION,
            user_id=user.id,
            username=user.username,
            session_id=session.id,
            entity_id=session.id,
            details={'superseded_sessions': len(superseded)} if superseded else None,
            ip_address=ip_address,
        ))
        logger.info(f"User {user.username} logged in")

        fresh = self._users.find_by_id(user.id)
        return LoginResult(
            user=fresh,
            session=session,
            permissions=permissions,
            password_expired=self._credentials.is_expired(fresh.password_changed_at),
            password_expires_in_days=self._credentials.days_until_expiration(fresh.password_changed_at),
            superseded_sessions=superseded,
        )

    def _register_failed_password(self, user: User, now: datetime, ip_address: Optional[str]):
        attempts, locked_until = self._users.register_failed_attempt(
            user.id, now, self.config.max_failed_attempts, self.config.lockout_duration,
        )

        if locked_until is not None:
            error = AccountLocked(
                self.config.lockout_minutes,
                f"Account locked due to too many failed attempts. "
                f"Try again in {self.config.lockout_minutes} minutes.",
            )
        else:
            remaining = self.config.max_failed_attempts - attempts
            error = InvalidCredentials(
                f"Invalid username or password. {remaining} attempts remaining.",
                attempts_remaining=remaining,
            )

        self._login_failed(
            user, ip_address, error,
            reason='Invalid password', failed_attempts=attempts, locked=locked_until is not None,
        )

    def logout(self, session_id: str) -> bool:
        """Invalidate a session. Returns False if it did not exist."""
        session = self._sessions.find_by_id(session_id)
        if session is None:
            return False

        self._sessions.invalidate(session_id)
        user = self._users.find_by_id(session.user_id)
        self.audit.log(AuditEvent(
            action_type=AuditAction.LOGOUT,
            entity_type=EntityType.SESSION,
            user_id=session.user_id,
            username=user.username if user else None,
            session_id=session_id,
            entity_id=session_id,
        ))
        logger.info(f"Session closed for user {session.user_id}")
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def validate_session(self, session_id: str) -> SessionValidation:
        """
        Check that a session is live and its user active.

        Never raises for an invalid session; returns ``valid=False`` instead.

        A live cache entry skips the separate durable lookup: the activity
        stamp is written straight away and the row it returns is checked.
        On a miss the durable row is read first. Either way the durable row
        decides liveness.
        """
        now = self._clock()
        cache_hit = self._sessions.is_cached(session_id)
        if cache_hit:
            session = self._sessions.touch(session_id)
        else:
            session = self._sessions.find_by_id(session_id)
        if session is None or not session.is_active:
            self._sessions.evict(session_id)
            return SessionValidation(valid=False)

        if session.is_expired_at(now):
            self._sessions.invalidate(session_id)
            self.audit.log(AuditEvent(
                action_type=AuditAction.SESSION_TIMEOUT,
                entity_type=EntityType.SESSION,
                user_id=session.user_id,
                session_id=session_id,
                entity_id=session_id,
            ))
            logger.info(f"Session expired for user {session.user_id}")
            return SessionValidation(valid=False)

        user = self._users.find_by_id(session.user_id)
        if user is None or not user.is_active:
            self._sessions.invalidate(session_id)
            return SessionValidation(valid=False)

        touched = session if cache_hit else self._sessions.touch(session_id)
        if touched is None or not touched.is_valid_at(now):
            return SessionValidation(valid=False)

        return SessionValidation(
            valid=True,
            session=touched,
            user=user,
            permissions=self.resolver.effective_permissions(user.id),
        )

    def require_session(self, session_id: str, ip_address: Optional[str] = None) -> AuthContext:
        """Validate a session or raise NotAuthenticated."""
        validation = self.validate_session(session_id)
        if not validation.valid:
            raise NotAuthenticated()
        return AuthContext(
            user=validation.user,
            session_id=session_id,
            permissions=validation.permissions,
            ip_address=ip_address,
        )

    def get_current_user(self, session_id: str) -> Optional[User]:
        validation = self.validate_session(session_id)
        return validation.user if validation.valid else None

    def extend_session(self, session_id: str) -> Optional[Session]:
        """Push a live session's expiry to now + timeout."""
        validation = self.validate_session(session_id)
        if not validation.valid:
            return None

        session = self._sessions.extend(session_id, self._clock() + self.config.session_timeout)
        if session is None:
            return None

        self.audit.log(AuditEvent(
            action_type=AuditAction.SESSION_EXTENDED,
            entity_type=EntityType.SESSION,
            user_id=session.user_id,
            username=validation.user.username,
            session_id=session_id,
            entity_id=session_id,
        ))
        return session

    def get_timeout_config(self) -> Tuple[int, int]:
        """(session timeout minutes, warning minutes)"""
        return self.config.session_timeout_minutes, self.config.session_warning_minutes

    def check_session_warning(self, session_id: str) -> Optional[SessionExpiryWarning]:
        """Publish and return a warning if the session expires within the warning window."""
        session = self._sessions.find_by_id(session_id)
        now = self._clock()
        if session is None or not session.is_valid_at(now):
            return None

        remaining = session.expires_at - now
        if remaining > self.config.session_warning:
            return None

        warning = SessionExpiryWarning(
            session_id=session_id,
            user_id=session.user_id,
            expires_at=session.expires_at,
            seconds_remaining=int(remaining.total_seconds()),
        )
        self.events.publish(warning)
        return warning

    def revoke_user_sessions(self, user_id: str) -> int:
        """Invalidate every session of a user (account deactivation)."""
        return len(self._sessions.invalidate_all_for_user(user_id))

    def active_session_count(self, user_id: str) -> int:
        return self._sessions.count_active_for_user(user_id)

    def cleanup_expired_sessions(self) -> int:
        return self._sessions.cleanup_expired()

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def _password_event(self, user: User, session_id: Optional[str], success: bool, **details) -> AuditEvent:
        details['success'] = success
        return AuditEvent(
            action_type=AuditAction.PASSWORD_CHANGE,
            entity_type=EntityType.USER,
            user_id=user.id,
            username=user.username,
            session_id=session_id,
            entity_id=user.id,
            details=details,
        )

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        session_id: Optional[str] = None,
    ) -> None:
        """
        Change a user's own password.

        Failures here do not count toward login lockout.

        Raises:
            NotFound, InvalidCredentials, PolicyViolation, PasswordReuse
        """
        user = self._users.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")

        current_hash = self._users.get_password_hash(user_id)
        if not self._credentials.verify_password(current_password, current_hash):
            self._fail(
                self._password_event(user, session_id, False, reason='Invalid current password'),
                InvalidCredentials("Current password is incorrect"),
            )

        validation = self._credentials.validate_policy(new_password, user.username)
        if not validation.valid:
            self._fail(
                self._password_event(user, session_id, False, reason='Policy violation', errors=validation.errors),
                PolicyViolation(validation.errors),
            )

        if self._credentials.check_history(user_id, new_password):
            self._fail(
                self._password_event(user, session_id, False, reason='Password reuse'),
                PasswordReuse(),
            )

        new_hash = self._credentials.hash_password(new_password)
        now = self._clock()
        with self._users.transaction() as tx:
            self._credentials.record_history(user_id, current_hash, session=tx)
            self._users.update_password(user_id, new_hash, now, must_change_password=False, session=tx)

        self.audit.log(self._password_event(user, session_id, True))
        logger.info(f"Password changed for {user.username}")

    def reset_password(self, user_id: str, admin_user_id: str, session_id: Optional[str] = None) -> str:
        """
        Administrator password reset.

        Returns the temporary password; the user must change it at next login.
        The temporary password is never logged.
        """
        user = self._users.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        admin = self._users.find_by_id(admin_user_id)
        if admin is None:
            raise NotFound("Administrator not found")

        if not satisfies(self.resolver.effective_permissions(admin.id), Permission.USER_EDIT):
            logger.warning(f"Password reset for {user.username} denied to {admin.username}")
            try:
                self.audit.log_permission_denied(
                    admin.id, admin.username, session_id, Permission.USER_EDIT.value,
                    action='reset_password', entity_type=EntityType.USER, entity_id=user.id,
                )
            except AuditWriteError as e:
                e.original_error = PermissionDenied(required_permission=Permission.USER_EDIT.value)
                raise
            raise PermissionDenied(required_permission=Permission.USER_EDIT.value)

        temporary = self._credentials.generate_temporary_password(user.username)
        current_hash = self._users.get_password_hash(user_id)
        now = self._clock()
        with self._users.transaction() as tx:
            self._credentials.record_history(user_id, current_hash, session=tx)
            self._users.update_password(
                user_id, self._credentials.hash_password(temporary), now,
                must_change_password=True, session=tx,
            )

        self.audit.log(AuditEvent(
            action_type=AuditAction.PASSWORD_RESET_ADMIN,
            entity_type=EntityType.USER,
            user_id=admin.id,
            username=admin.username,
            session_id=session_id,
            entity_id=user.id,
            details={'target_user': user.username},
        ))
        logger.info(f"Password reset for {user.username} by {admin.username}")
        return temporary

    def reauthenticate(self, user_id: str, password: str) -> bool:
        """Re-check a user's password for an electronic signature. Does not affect lockout."""
        user = self._users.find_by_id(user_id)
        if user is None or not user.is_active:
            return False
        password_hash = self._users.get_password_hash(user_id)
        return bool(password_hash) and self._credentials.verify_password(password, password_hash)

    # ------------------------------------------------------------------
    # Credential helpers for user administration
    # ------------------------------------------------------------------

    def validate_password(self, password: str, username: Optional[str] = None):
        return self._credentials.validate_policy(password, username)

    def hash_new_password(self, password: str, username: str) -> str:
        """Validate against policy and hash. Raises PolicyViolation."""
        validation = self._credentials.validate_policy(password, username)
        if not validation.valid:
            raise PolicyViolation(validation.errors)
        return self._credentials.hash_password(password)

    def generate_temporary_password(self, username: Optional[str] = None) -> str:
        return self._credentials.generate_temporary_password(username)

    def password_requirements(self):
        return self._credentials.requirements()


# Singleton instance
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """Get singleton authentication service."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service
