"""
FAERS CORE - Database Enums
===========================
Closed vocabularies stored in the audit trail and case tables.
"""

from enum import Enum


# =============================================================================
# AUDIT ENUMS
# =============================================================================

class AuditAction(str, Enum):
    """Audit trail action types."""
    # Authentication
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    SESSION_TIMEOUT = "session_timeout"
    SESSION_EXTENDED = "session_extended"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_ADMIN = "password_reset_admin"

    # User administration
    USER_CREATE = "user_create"
    USER_UPDATE = "user_update"
    USER_DEACTIVATE = "user_deactivate"
    USER_REACTIVATE = "user_reactivate"
    ROLE_ASSIGN = "role_assign"
    ROLE_REMOVE = "role_remove"

    # Case data
    CASE_CREATE = "case_create"
    CASE_UPDATE = "case_update"
    CASE_DELETE = "case_delete"
    CASE_VIEW = "case_view"
    CASE_EXPORT = "case_export"

    # Workflow
    WORKFLOW_TRANSITION = "workflow_transition"
    CASE_ASSIGN = "case_assign"
    CASE_REASSIGN = "case_reassign"
    CASE_APPROVE = "case_approve"
    CASE_REJECT = "case_reject"
    COMMENT_ADD = "comment_add"
    NOTE_ADD = "note_add"
    NOTE_RESOLVE = "note_resolve"

    # Compliance
    ELECTRONIC_SIGNATURE = "electronic_signature"
    SUBMISSION_RECORD = "submission_record"
    ACKNOWLEDGMENT_RECORD = "acknowledgment_record"
    CONFIG_CHANGE = "config_change"
    PERMISSION_DENIED = "permission_denied"
    SIGNATURE_VERIFICATION_FAILED = "signature_verification_failed"


class EntityType(str, Enum):
    """Auditable entity types."""
    USER = "user"
    ROLE = "role"
    CASE = "case"
    SESSION = "session"
    COMMENT = "comment"
    NOTE = "note"
    ASSIGNMENT = "assignment"
    SUBMISSION = "submission"
    SYSTEM = "system"
    PSR = "psr"


# =============================================================================
# ASSIGNMENT ENUMS
# =============================================================================

class AssignmentPriority(str, Enum):
    """Case assignment priority."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


# =============================================================================
# COMMENT / NOTE ENUMS
# =============================================================================

class CommentType(str, Enum):
    """Case comment categories."""
    GENERAL = "general"
    QUERY = "query"
    RESPONSE = "response"
    REJECTION = "rejection"
    WORKFLOW = "workflow"


class NoteVisibility(str, Enum):
    """Who can read a case note."""
    PERSONAL = "personal"
    TEAM = "team"
