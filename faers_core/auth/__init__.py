"""
FAERS CORE - Authentication & Authorization
===========================================
21 CFR Part 11 compliant authentication, sessions and RBAC.

Components:
- CredentialStore: bcrypt hashing, password policy and reuse history
- SessionStore / SessionCache: durable sessions with an in-process fast path
- PermissionResolver: effective permissions with administrator wildcard
- AuthService: login, logout, session validation, password management
- UserAdministration: audited account management
"""

from .password import CredentialStore, PasswordPolicy
from .session_cache import SessionCache, CachedSession
from .sessions import SessionStore
from .authorization import PermissionResolver, require_permission
from .authentication import AuthService, get_auth_service
from .users import UserAdministration, ensure_default_admin

__all__ = [
    'CredentialStore',
    'PasswordPolicy',
    'SessionCache',
    'CachedSession',
    'SessionStore',
    'PermissionResolver',
    'require_permission',
    'AuthService',
    'get_auth_service',
    'UserAdministration',
    'ensure_default_admin',
]
