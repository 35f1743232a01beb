"""
FAERS CORE - Permission Catalog
===============================
Named permissions, built-in roles and the permission check used everywhere.

The administrator role carries the ``*`` wildcard, which satisfies any
required permission.
"""

from enum import Enum
from typing import Dict, Iterable, Tuple, Union


class Permission(str, Enum):
    """System permissions."""
    # Case
    CASE_CREATE = "case.create"
    CASE_VIEW_OWN = "case.view.own"
    CASE_VIEW_ALL = "case.view.all"
    CASE_EDIT_OWN = "case.edit.own"
    CASE_EDIT_ALL = "case.edit.all"
    CASE_DELETE = "case.delete"
    CASE_ASSIGN = "case.assign"

    # Workflow
    WORKFLOW_SUBMIT_REVIEW = "workflow.submit_review"
    WORKFLOW_APPROVE = "workflow.approve"
    WORKFLOW_REJECT = "workflow.reject"
    WORKFLOW_SUBMIT_FDA = "workflow.submit_fda"

    # User administration
    USER_VIEW = "user.view"
    USER_CREATE = "user.create"
    USER_EDIT = "user.edit"
    USER_DEACTIVATE = "user.deactivate"

    # System
    SYSTEM_CONFIGURE = "system.configure"
    SYSTEM_AUDIT_VIEW = "system.audit.view"
    SYSTEM_REPORTS = "system.reports"

    ALL = "*"


WILDCARD = Permission.ALL.value
ADMIN_ROLE_ID = "admin"

# name -> (category, description)
PERMISSION_CATALOG: Dict[Permission, Tuple[str, str]] = {
    Permission.CASE_CREATE: ("case", "Create new cases"),
    Permission.CASE_VIEW_OWN: ("case", "View cases owned by or assigned to the user"),
    Permission.CASE_VIEW_ALL: ("case", "View all cases"),
    Permission.CASE_EDIT_OWN: ("case", "Edit cases owned by or assigned to the user"),
    Permission.CASE_EDIT_ALL: ("case", "Edit any case"),
    Permission.CASE_DELETE: ("case", "Delete cases"),
    Permission.CASE_ASSIGN: ("case", "Assign cases to users"),
    Permission.WORKFLOW_SUBMIT_REVIEW: ("workflow", "Submit cases for review"),
    Permission.WORKFLOW_APPROVE: ("workflow", "Approve cases in review"),
    Permission.WORKFLOW_REJECT: ("workflow", "Reject cases in review"),
    Permission.WORKFLOW_SUBMIT_FDA: ("workflow", "Submit cases to FDA"),
    Permission.USER_VIEW: ("user", "View user accounts"),
    Permission.USER_CREATE: ("user", "Create user accounts"),
    Permission.USER_EDIT: ("user", "Edit user accounts and reset passwords"),
    Permission.USER_DEACTIVATE: ("user", "Deactivate and reactivate user accounts"),
    Permission.SYSTEM_CONFIGURE: ("system", "Change system configuration"),
    Permission.SYSTEM_AUDIT_VIEW: ("system", "View and export the audit trail"),
    Permission.SYSTEM_REPORTS: ("system", "View system reports"),
}

# role id -> (name, description, permissions)
BUILTIN_ROLES: Dict[str, Tuple[str, str, Tuple[Permission, ...]]] = {
    ADMIN_ROLE_ID: (
        "Administrator",
        "Full system access",
        tuple(PERMISSION_CATALOG),
    ),
    "manager": (
        "Manager",
        "Oversees case processing and assignments",
        (
            Permission.CASE_VIEW_ALL,
            Permission.CASE_ASSIGN,
            Permission.SYSTEM_REPORTS,
            Permission.USER_VIEW,
        ),
    ),
    "data_entry": (
        "Data Entry",
        "Creates and completes case data entry",
        (
            Permission.CASE_CREATE,
            Permission.CASE_VIEW_OWN,
            Permission.CASE_EDIT_OWN,
            Permission.WORKFLOW_SUBMIT_REVIEW,
        ),
    ),
    "medical_reviewer": (
        "Medical Reviewer",
        "Performs medical review of assigned cases",
        (
            Permission.CASE_VIEW_OWN,
            Permission.CASE_EDIT_OWN,
            Permission.WORKFLOW_APPROVE,
            Permission.WORKFLOW_REJECT,
        ),
    ),
    "qc_reviewer": (
        "QC Reviewer",
        "Performs quality control review of assigned cases",
        (
            Permission.CASE_VIEW_OWN,
            Permission.CASE_EDIT_OWN,
            Permission.WORKFLOW_APPROVE,
            Permission.WORKFLOW_REJECT,
        ),
    ),
    "submitter": (
        "Submitter",
        "Submits approved cases to FDA",
        (
            Permission.CASE_VIEW_ALL,
            Permission.WORKFLOW_SUBMIT_FDA,
        ),
    ),
    "read_only": (
        "Read Only",
        "View-only access to cases",
        (
            Permission.CASE_VIEW_ALL,
        ),
    ),
}


def permission_value(permission: Union[Permission, str]) -> str:
    """Plain string form of a permission."""
    if isinstance(permission, Permission):
        return permission.value
    return str(permission)


def satisfies(held: Iterable[Union[Permission, str]], required: Union[Permission, str]) -> bool:
    """True if the held permission set grants ``required``. ``*`` grants everything."""
    held_values = {permission_value(p) for p in held}
    return WILDCARD in held_values or permission_value(required) in held_values
