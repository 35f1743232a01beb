"""
Tests for electronic signatures.

Tests cover:
- The pure hash function and record verification
- Signature capture with its audit entry
- Tamper detection after a direct database edit
"""
import hashlib
from datetime import timedelta

import pytest
from sqlalchemy import text

from faers_core.compliance.electronic_signature import (
    SignatureMeaning, compute_signature_hash, verify_signature_record,
)
from faers_core.database.enums import AuditAction, EntityType
from faers_core.database.models import ElectronicSignature as SignatureRow
from faers_core.exceptions import ImmutableRecordError, SignatureIntegrityFailure
from faers_core.models import AuditLogFilter, ElectronicSignature, SignatureData


def _data(**overrides):
    values = dict(
        user_id="u-1",
        username="jdoe",
        entity_type=EntityType.CASE,
        entity_id="CASE-1",
        action="workflow_approved",
        meaning=SignatureMeaning.APPROVED.value,
        record_version=3,
    )
    values.update(overrides)
    return SignatureData(**values)


class TestSignatureHash:
    """Tests for compute_signature_hash."""

    def test_pipe_joined_sha256(self):
        """Should hash the pipe-joined fields with SHA-256."""
        expected = hashlib.sha256(b"u-1|case|CASE-1|approve|I approve|2|2026-01-01T00:00:00+00:00").hexdigest()
        assert compute_signature_hash(
            "u-1", "case", "CASE-1", "approve", "I approve", 2, "2026-01-01T00:00:00+00:00",
        ) == expected

    def test_every_field_matters(self):
        """Should change when any field changes."""
        base = ("u-1", "case", "CASE-1", "approve", "I approve", 2, "2026-01-01T00:00:00+00:00")
        reference = compute_signature_hash(*base)
        for i in range(len(base)):
            changed = list(base)
            changed[i] = f"{changed[i]}x"
            assert compute_signature_hash(*changed) != reference


class TestVerifySignatureRecord:
    """Tests for the pure verification function."""

    def _record(self, **overrides):
        values = dict(
            id=1, user_id="u-1", username="jdoe", timestamp="2026-03-02T09:00:00+00:00",
            entity_type="case", entity_id="CASE-1", action="workflow_approved",
            meaning="I approve this record", record_version=1,
        )
        values["signature_hash"] = compute_signature_hash(
            values["user_id"], values["entity_type"], values["entity_id"], values["action"],
            values["meaning"], values["record_version"], values["timestamp"],
        )
        values.update(overrides)
        return ElectronicSignature(**values)

    def test_unaltered_is_valid(self, clock):
        """Should accept an unaltered record."""
        assert verify_signature_record(self._record(), now=clock()).is_valid

    def test_altered_meaning_is_invalid(self, clock):
        """Should reject a record whose meaning changed."""
        result = verify_signature_record(self._record(meaning="I reviewed this record"), now=clock())
        assert not result.is_valid
        assert result.errors == ["Signature hash does not match - possible tampering"]

    def test_missing_record(self, clock):
        """Should report a missing signature."""
        result = verify_signature_record(None, signature_id=42, now=clock())
        assert not result.is_valid
        assert result.errors == ["Signature not found"]

    def test_retention_warning(self, clock):
        """Should warn, not fail, beyond the retention period."""
        result = verify_signature_record(self._record(), now=clock() + timedelta(days=1), retention_years=0)
        assert result.is_valid
        assert result.warnings


class TestSignatureCapture:
    """Tests for AuditTrail signature operations."""

    def test_create_records_signature_and_audit(self, audit, clock):
        """Should store the signature with its audit entry."""
        signature = audit.create_signature(_data(), session_id="s-1")
        assert signature.timestamp == clock().isoformat()
        assert signature.entity_type == "case"
        assert len(signature.signature_hash) == 64

        entries = audit.query(AuditLogFilter(action_types=[AuditAction.ELECTRONIC_SIGNATURE])).entries
        assert len(entries) == 1
        assert entries[0].details_dict["signature_id"] == signature.id
        assert entries[0].details_dict["meaning"] == SignatureMeaning.APPROVED.value

    def test_verify_unaltered(self, audit):
        """Should verify an untouched signature."""
        signature = audit.create_signature(_data())
        assert audit.verify_signature(signature.id).is_valid
        assert audit.require_intact_signature(signature.id) == signature

    def test_tampered_meaning_detected(self, db, audit):
        """Should detect a meaning edited behind the ORM and audit the failure."""
        signature = audit.create_signature(_data())
        with db.session() as s:
            s.execute(
                text("UPDATE electronic_signatures SET meaning = :meaning WHERE signature_id = :id"),
                {"meaning": SignatureMeaning.REVIEWED.value, "id": signature.id},
            )

        result = audit.verify_signature(signature.id, verified_by="u-9", verified_by_username="auditor")
        assert not result.is_valid
        failures = audit.query(AuditLogFilter(action_types=[AuditAction.SIGNATURE_VERIFICATION_FAILED])).entries
        assert len(failures) == 1
        assert failures[0].username == "auditor"

        with pytest.raises(SignatureIntegrityFailure) as exc:
            audit.require_intact_signature(signature.id)
        assert exc.value.signature_id == signature.id

    def test_missing_signature(self, audit):
        """Should report an unknown signature id as invalid."""
        assert not audit.verify_signature(999).is_valid

    def test_orm_update_rejected(self, db, audit):
        """Should refuse ORM modification of a signature row."""
        signature = audit.create_signature(_data())
        with pytest.raises(ImmutableRecordError):
            with db.session() as s:
                s.get(SignatureRow, signature.id).meaning = "changed"

    def test_signatures_for_entity(self, audit):
        """Should list signatures of one entity in order."""
        first = audit.create_signature(_data())
        second = audit.create_signature(_data(action="workflow_submitted"))
        audit.create_signature(_data(entity_id="CASE-2"))
        assert audit.signatures_for_entity(EntityType.CASE, "CASE-1") == [first, second]
