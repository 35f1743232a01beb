"""
FAERS CORE - RBAC Authorization
===============================
Resolves a user's effective permission set and checks permissions.
"""

import logging
from functools import wraps
from typing import Callable, FrozenSet, Optional, Union

from ..database.repositories import RoleRepository
from ..models import AuthContext
from ..permissions import ADMIN_ROLE_ID, WILDCARD, Permission, permission_value, satisfies

logger = logging.getLogger(__name__)


class PermissionResolver:
    """
    Role-Based Access Control resolver.

    Effective permissions are the union of the user's role permissions.
    Holders of the administrator role also receive the ``*`` wildcard, even
    if the role's own permission list is empty.
    """

    def __init__(self, roles: Optional[RoleRepository] = None):
        self._roles = roles or RoleRepository()

    def effective_permissions(self, user_id: str) -> FrozenSet[str]:
        permissions = set(self._roles.get_user_permission_names(user_id))
        if self.is_administrator(user_id):
            permissions.add(WILDCARD)
        return frozenset(permissions)

    def is_administrator(self, user_id: str) -> bool:
        return self._roles.user_has_role(user_id, ADMIN_ROLE_ID)

    @staticmethod
    def has_permission(permissions, required: Union[Permission, str]) -> bool:
        return satisfies(permissions, required)

    def check_permission(self, user_id: str, permission: Union[Permission, str]) -> bool:
        """
        Check if user has a specific permission.

        Args:
            user_id: The user to check
            permission: Permission name (e.g., 'case.assign')

        Returns:
            True if permitted
        """
        return satisfies(self.effective_permissions(user_id), permission)


def require_permission(permission: Union[Permission, str]):
    """
    Decorator for service methods taking an AuthContext as first argument.

    On failure the owning service's ``_permission_denied`` hook records the
    denial and raises.

    Usage:
        @require_permission(Permission.USER_CREATE)
        def create_user(self, context, ...):
            ...
    """
    required = permission_value(permission)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, context: AuthContext, *args, **kwargs):
            if not satisfies(context.permissions, required):
                logger.warning(f"Permission '{required}' denied to {context.username} for {func.__name__}")
                self._permission_denied(context, required, func.__name__)
            return func(self, context, *args, **kwargs)
        return wrapper
    return decorator
