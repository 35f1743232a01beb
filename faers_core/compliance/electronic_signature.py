"""
FAERS CORE - 21 CFR Part 11 Electronic Signatures
=================================================
Signature hash computation and integrity verification.

The hash is SHA-256 over the pipe-joined fields
``user_id|entity_type|entity_id|action|meaning|record_version|timestamp``
where timestamp is the exact ISO-8601 string stored with the signature.
Any change to a stored field makes verification fail.
"""

import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum

from ..models import ElectronicSignature
from ..utils.timeutils import utcnow


class SignatureMeaning(Enum):
    """Standard signature meanings per 21 CFR Part 11."""
    AUTHORED = "I authored this record"
    REVIEWED = "I reviewed this record"
    APPROVED = "I approve this record"
    VERIFIED = "I verified the accuracy"
    SUBMITTED = "I submit this report to FDA"


@dataclass
class VerificationResult:
    """Result of signature verification."""
    is_valid: bool
    signature_id: Optional[int]
    verified_at: datetime
    verification_method: str = "sha256_recompute"
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "signature_id": self.signature_id,
            "verified_at": self.verified_at.isoformat(),
            "verification_method": self.verification_method,
            "warnings": self.warnings,
            "errors": self.errors,
        }


def compute_signature_hash(
    user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    meaning: str,
    record_version: int,
    timestamp: str,
) -> str:
    """
    Generate the SHA-256 hash binding a signer to a record version.

    Returns:
        64 character hex digest
    """
    data = f"{user_id}|{entity_type}|{entity_id}|{action}|{meaning}|{record_version}|{timestamp}"
    return hashlib.sha256(data.encode('utf-8')).hexdigest()


def expected_hash(signature: ElectronicSignature) -> str:
    return compute_signature_hash(
        user_id=signature.user_id,
        entity_type=signature.entity_type,
        entity_id=signature.entity_id,
        action=signature.action,
        meaning=signature.meaning,
        record_version=signature.record_version,
        timestamp=signature.timestamp,
    )


def verify_signature_record(
    signature: Optional[ElectronicSignature],
    signature_id: Optional[int] = None,
    now: Optional[datetime] = None,
    retention_years: int = 7,
) -> VerificationResult:
    """
    Verify signature integrity by recomputing its hash.

    Checks:
    1. Signature exists
    2. Hash matches recorded hash
    3. Timestamp is parseable and within the retention period (warning only)
    """
    now = now or utcnow()

    if signature is None:
        return VerificationResult(
            is_valid=False,
            signature_id=signature_id,
            verified_at=now,
            errors=["Signature not found"],
        )

    warnings = []
    errors = []

    if not hmac.compare_digest(signature.signature_hash, expected_hash(signature)):
        errors.append("Signature hash does not match - possible tampering")

    try:
        signed_at = datetime.fromisoformat(signature.timestamp)
    except ValueError:
        errors.append("Signature timestamp is not a valid ISO-8601 value")
    else:
        if signed_at.tzinfo is not None and now - signed_at > timedelta(days=365 * retention_years):
            warnings.append("Signature older than standard retention period")

    return VerificationResult(
        is_valid=not errors,
        signature_id=signature.id,
        verified_at=now,
        warnings=warnings,
        errors=errors,
    )
