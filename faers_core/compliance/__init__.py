"""
FAERS CORE - Compliance
=======================
Append-only audit trail and 21 CFR Part 11 electronic signatures.
"""

from .audit_trail import AuditTrail, get_audit_trail
from .electronic_signature import (
    SignatureMeaning,
    VerificationResult,
    compute_signature_hash,
    verify_signature_record,
)

__all__ = [
    'AuditTrail',
    'get_audit_trail',
    'SignatureMeaning',
    'VerificationResult',
    'compute_signature_hash',
    'verify_signature_record',
]
