"""
FAERS CORE - User Administration
================================
Account creation, profile and role changes, deactivation, and the default
administrator bootstrap. Every operation is permission-checked and audited.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from ..database.connection import DatabaseManager
from ..database.enums import AuditAction, EntityType
from ..database.repositories import RoleRepository, UserRepository
from ..exceptions import AuditWriteError, NotFound, PermissionDenied, PolicyViolation
from ..models import AuditEvent, AuthContext, FieldChange, User
from ..permissions import ADMIN_ROLE_ID, Permission
from .authentication import AuthService
from .authorization import require_permission

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = 'admin'
DEFAULT_ADMIN_EMAIL = 'admin@localhost'


class UserAdministration:
    """Administrative user management on behalf of an authenticated caller."""

    def __init__(
        self,
        auth: AuthService,
        db: Optional[DatabaseManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._auth = auth
        self._db = db or auth.db
        self._users = UserRepository(self._db)
        self._roles = RoleRepository(self._db)
        self._clock = clock or auth.clock

    def _permission_denied(self, context: AuthContext, required: str, action: str):
        error = PermissionDenied(required_permission=required)
        try:
            self._auth.audit.log_permission_denied(
                context.user_id, context.username, context.session_id, required,
                action=action, entity_type=EntityType.USER, ip_address=context.ip_address,
            )
        except AuditWriteError as e:
            e.original_error = error
            raise
        raise error

    def _require_user(self, user_id: str) -> User:
        user = self._users.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def _audit(self, context: AuthContext, action: AuditAction, entity_id: str, details=None):
        return self._auth.audit.log(AuditEvent(
            action_type=action,
            entity_type=EntityType.USER,
            user_id=context.user_id,
            username=context.username,
            session_id=context.session_id,
            entity_id=entity_id,
            details=details,
            ip_address=context.ip_address,
        ))

    def _check_roles(self, role_ids: Iterable[str]) -> List[str]:
        role_ids = sorted(set(role_ids))
        unknown = set(role_ids) - self._roles.existing_ids(role_ids)
        if unknown:
            raise PolicyViolation([f"Unknown role: {role_id}" for role_id in sorted(unknown)])
        return role_ids

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @require_permission(Permission.USER_VIEW)
    def list_users(self, context: AuthContext, is_active: Optional[bool] = None,
                   search: Optional[str] = None) -> List[User]:
        return self._users.list_users(is_active=is_active, search=search)

    @require_permission(Permission.USER_VIEW)
    def get_user(self, context: AuthContext, user_id: str) -> User:
        return self._require_user(user_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @require_permission(Permission.USER_CREATE)
    def create_user(
        self,
        context: AuthContext,
        username: str,
        email: str,
        role_ids: Iterable[str],
        password: Optional[str] = None,
        first_name: str = "",
        last_name: str = "",
    ) -> Tuple[User, Optional[str]]:
        """
        Create an account that must change its password at first login.

        Returns:
            Tuple of (user, temporary password or None when one was supplied)
        """
        errors = []
        if self._users.username_exists(username):
            errors.append("Username already exists")
        if self._users.email_exists(email):
            errors.append("Email already exists")
        if errors:
            raise PolicyViolation(errors)
        role_ids = self._check_roles(role_ids)

        temporary = None
        if password is None:
            temporary = password = self._auth.generate_temporary_password(username)
        password_hash = self._auth.hash_new_password(password, username)

        user = self._users.create(
            username=username,
            email=email,
            password_hash=password_hash,
            now=self._clock(),
            first_name=first_name,
            last_name=last_name,
            role_ids=role_ids,
            created_by=context.user_id,
            must_change_password=True,
        )
        self._audit(context, AuditAction.USER_CREATE, user.id, {
            'username': user.username,
            'email': user.email,
            'roles': role_ids,
        })
        logger.info(f"User {user.username} created by {context.username}")
        return user, temporary

    @require_permission(Permission.USER_EDIT)
    def update_user(
        self,
        context: AuthContext,
        user_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        """Update profile fields. Each changed field gets its own audit entry."""
        before = self._require_user(user_id)
        if email is not None and self._users.email_exists(email, exclude_user_id=user_id):
            raise PolicyViolation(["Email already exists"])

        after = self._users.update_profile(
            user_id, self._clock(), first_name=first_name, last_name=last_name, email=email,
        )
        changes = [
            FieldChange(name, getattr(before, name), getattr(after, name))
            for name in ('first_name', 'last_name', 'email')
            if getattr(before, name) != getattr(after, name)
        ]
        self._auth.audit.log_field_changes(
            context.user_id, context.username, context.session_id,
            EntityType.USER, user_id, changes, context.ip_address,
        )
        return after

    @require_permission(Permission.USER_EDIT)
    def assign_roles(self, context: AuthContext, user_id: str, role_ids: Iterable[str]) -> User:
        """Replace a user's roles, auditing each addition and removal."""
        self._require_user(user_id)
        role_ids = self._check_roles(role_ids)
        if user_id == context.user_id and ADMIN_ROLE_ID not in role_ids \
                and ADMIN_ROLE_ID in self._roles.get_user_role_ids(user_id):
            raise PolicyViolation(["You cannot remove your own administrator role"])

        added, removed = self._users.set_roles(user_id, role_ids, self._clock())
        for role_id in added:
            self._audit(context, AuditAction.ROLE_ASSIGN, user_id, {'role': role_id})
        for role_id in removed:
            self._audit(context, AuditAction.ROLE_REMOVE, user_id, {'role': role_id})
        return self._require_user(user_id)

    @require_permission(Permission.USER_DEACTIVATE)
    def deactivate_user(self, context: AuthContext, user_id: str) -> User:
        """Deactivate an account and end all of its sessions."""
        user = self._require_user(user_id)
        if user_id == context.user_id:
            raise PolicyViolation(["You cannot deactivate your own account"])

        self._users.set_active(user_id, False, self._clock(), actor_id=context.user_id)
        revoked = self._auth.revoke_user_sessions(user_id)
        self._audit(context, AuditAction.USER_DEACTIVATE, user_id, {
            'username': user.username,
            'sessions_revoked': revoked,
        })
        logger.info(f"User {user.username} deactivated by {context.username}")
        return self._require_user(user_id)

    @require_permission(Permission.USER_DEACTIVATE)
    def reactivate_user(self, context: AuthContext, user_id: str) -> User:
        user = self._require_user(user_id)
        self._users.set_active(user_id, True, self._clock(), actor_id=context.user_id)
        self._audit(context, AuditAction.USER_REACTIVATE, user_id, {'username': user.username})
        logger.info(f"User {user.username} reactivated by {context.username}")
        return self._require_user(user_id)

    @require_permission(Permission.USER_EDIT)
    def reset_password(self, context: AuthContext, user_id: str) -> str:
        """Reset to a temporary password, returned once to the administrator."""
        return self._auth.reset_password(user_id, context.user_id, context.session_id)


def ensure_default_admin(auth: AuthService, password: Optional[str] = None) -> Optional[str]:
    """
    Make sure an administrator account exists.

    An existing ``admin`` user is given the admin role if it lacks it. If no
    administrator exists at all, one is created with ``password`` or a
    generated temporary password and must change it at first login.

    Returns:
        The initial password when an account was created, else None
    """
    users = UserRepository(auth.db)
    roles = RoleRepository(auth.db)
    now = auth.clock()

    existing = users.find_by_username(DEFAULT_ADMIN_USERNAME)
    if existing is not None:
        if not roles.user_has_role(existing.id, ADMIN_ROLE_ID):
            users.set_roles(existing.id, set(existing.roles) | {ADMIN_ROLE_ID}, now)
            logger.warning("Default admin user was missing the admin role; role assigned")
        return None

    if users.count_admins() > 0:
        return None

    initial = password or auth.generate_temporary_password(DEFAULT_ADMIN_USERNAME)
    admin = users.create(
        username=DEFAULT_ADMIN_USERNAME,
        email=DEFAULT_ADMIN_EMAIL,
        password_hash=auth.hash_new_password(initial, DEFAULT_ADMIN_USERNAME),
        now=now,
        first_name="System",
        last_name="Administrator",
        role_ids=[ADMIN_ROLE_ID],
        must_change_password=True,
    )
    auth.audit.log(AuditEvent(
        action_type=AuditAction.USER_CREATE,
        entity_type=EntityType.USER,
        entity_id=admin.id,
        details={'username': admin.username, 'roles': [ADMIN_ROLE_ID], 'bootstrap': True},
    ))
    logger.warning("Default administrator account created; password must be changed at first login")
    return initial
