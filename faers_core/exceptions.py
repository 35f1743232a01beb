"""
FAERS CORE - Exceptions
=======================
Error taxonomy shared by the auth, compliance and workflow layers.

Every error carries a ``user_message`` that is safe to show to an end user.
Security-relevant failures are written to the audit trail before the
exception is raised.
"""

from typing import List, Optional


class FaersCoreError(Exception):
    """Base class for all core errors."""

    default_message = "The operation could not be completed"

    def __init__(self, user_message: Optional[str] = None):
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class NotFound(FaersCoreError):
    default_message = "Record not found"


class InvalidCredentials(FaersCoreError):
    default_message = "Invalid username or password"

    def __init__(self, user_message: Optional[str] = None, attempts_remaining: Optional[int] = None):
        super().__init__(user_message)
        self.attempts_remaining = attempts_remaining


class AccountDeactivated(FaersCoreError):
    default_message = "Account is deactivated. Please contact your administrator."


class AccountLocked(FaersCoreError):
    def __init__(self, remaining_minutes: int, user_message: Optional[str] = None):
        self.remaining_minutes = remaining_minutes
        super().__init__(
            user_message or f"Account is locked. Please try again in {remaining_minutes} minutes."
        )


class PermissionDenied(FaersCoreError):
    default_message = "You do not have permission to perform this action"

    def __init__(self, user_message: Optional[str] = None, required_permission: Optional[str] = None):
        super().__init__(user_message)
        self.required_permission = required_permission


class IllegalTransition(FaersCoreError):
    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition from {from_status} to {to_status}")


class PolicyViolation(FaersCoreError):
    """A business rule was not met. ``errors`` lists every unmet rule."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) if self.errors else "Policy requirements not met")


class PasswordReuse(FaersCoreError):
    default_message = "Cannot reuse any of your recent passwords"


class SignatureIntegrityFailure(FaersCoreError):
    default_message = "Electronic signature failed integrity verification"

    def __init__(self, signature_id: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(user_message)
        self.signature_id = signature_id


class NotAuthenticated(FaersCoreError):
    default_message = "Session is invalid or has expired"


class ImmutableRecordError(FaersCoreError):
    default_message = "Audit records cannot be modified or deleted"


class AuditWriteError(FaersCoreError):
    """
    The audit trail could not be written.

    Never downgraded to a warning. ``original_error`` holds the error that
    was being reported when the write failed, if any.
    """

    default_message = "Audit trail write failed"

    def __init__(self, user_message: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(user_message)
        self.original_error = original_error
