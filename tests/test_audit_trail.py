"""
Tests for the audit trail.

Tests cover:
- Append-only storage
- Field changes per entity type
- Query filters, literal search wildcards, paging and has_more
- CSV and JSON export without truncation or ambiguous escapes
- Statistics
"""
import csv
import io
import json
from datetime import timedelta

import pytest

from faers_core.database.enums import AuditAction, EntityType
from faers_core.database.models import AuditLog
from faers_core.exceptions import ImmutableRecordError
from faers_core.models import AuditEvent, AuditLogFilter, FieldChange


def _event(action=AuditAction.CASE_VIEW, entity_id="CASE-1", username="jdoe", **kwargs):
    return AuditEvent(
        action_type=action,
        entity_type=kwargs.pop("entity_type", EntityType.CASE),
        user_id=kwargs.pop("user_id", "u-1"),
        username=username,
        entity_id=entity_id,
        **kwargs,
    )


class TestAppendOnly:
    """Tests for the append-only contract."""

    def test_public_contract_has_no_mutation(self, audit):
        """Should expose no update or delete operation."""
        names = [name for name in dir(audit) if not name.startswith("_")]
        assert not [name for name in names if "update" in name or "delete" in name]

    def test_orm_update_rejected(self, db, audit):
        """Should refuse to flush a modified audit row."""
        entry = audit.log(_event())
        with pytest.raises(ImmutableRecordError):
            with db.session() as s:
                row = s.get(AuditLog, entry.id)
                row.username = "mallory"

    def test_orm_delete_rejected(self, db, audit):
        """Should refuse to flush a deleted audit row."""
        entry = audit.log(_event())
        with pytest.raises(ImmutableRecordError):
            with db.session() as s:
                s.delete(s.get(AuditLog, entry.id))
        assert audit.get_entry(entry.id) is not None

    def test_repeated_reads_identical(self, audit, clock):
        """Should return byte-identical content for the same entry later on."""
        entry = audit.log(_event(details={"b": 2, "a": [1, "x"]}))
        first = json.dumps(audit.get_entry(entry.id).to_dict())
        clock.advance(days=3)
        audit.log(_event(entity_id="CASE-2"))
        assert json.dumps(audit.get_entry(entry.id).to_dict()) == first

    def test_details_stored_as_sorted_json(self, audit):
        """Should store details as JSON with sorted keys."""
        entry = audit.log(_event(details={"zeta": 1, "alpha": 2}))
        assert entry.details == '{"alpha": 2, "zeta": 1}'
        assert entry.details_dict == {"alpha": 2, "zeta": 1}

    def test_field_changes(self, audit):
        """Should write one <entity>_update entry per change."""
        entries = audit.log_field_changes(
            "u-1", "jdoe", "s-1", EntityType.CASE, "CASE-1",
            [FieldChange("seriousness", None, "death"), FieldChange("version", 1, 2)],
        )
        assert [e.action_type for e in entries] == ["case_update", "case_update"]
        assert entries[0].old_value is None
        assert entries[1].new_value == "2"

    def test_field_changes_on_other_entities(self, audit):
        """Should record role changes as config_change unless an action is given."""
        entries = audit.log_field_changes(
            "u-1", "admin", "s-1", EntityType.ROLE, "qc_reviewer",
            [FieldChange("description", "QC", "Quality control review")],
        )
        assert [(e.action_type, e.entity_type) for e in entries] == [("config_change", "role")]

        entries = audit.log_field_changes(
            "u-1", "admin", "s-1", EntityType.USER, "u-2", [FieldChange("email", "a@example.com", "b@example.com")],
        )
        assert entries[0].action_type == "user_update"

        entries = audit.log_field_changes(
            "u-1", "admin", "s-1", EntityType.ROLE, "qc_reviewer",
            [FieldChange("role_ids", None, "qc_reviewer")], action=AuditAction.ROLE_ASSIGN,
        )
        assert entries[0].action_type == "role_assign"


class TestQuery:
    """Tests for AuditTrail.query."""

    def test_newest_first(self, audit, clock):
        """Should order entries newest first."""
        for case_id in ("CASE-1", "CASE-2", "CASE-3"):
            audit.log(_event(entity_id=case_id))
            clock.advance(seconds=1)
        page = audit.query()
        assert [e.entity_id for e in page.entries] == ["CASE-3", "CASE-2", "CASE-1"]

    def test_filters(self, audit, clock):
        """Should combine user, action, entity and date filters."""
        start = clock()
        audit.log(_event(action=AuditAction.CASE_VIEW, entity_id="CASE-1"))
        audit.log(_event(action=AuditAction.CASE_UPDATE, entity_id="CASE-1", user_id="u-2", username="alice"))
        clock.advance(hours=2)
        audit.log(_event(action=AuditAction.CASE_VIEW, entity_id="CASE-2"))

        assert audit.query(AuditLogFilter(user_id="u-2")).total == 1
        assert audit.query(AuditLogFilter(action_types=["case_view"])).total == 2
        assert audit.query(AuditLogFilter(entity_type=EntityType.CASE, entity_id="CASE-1")).total == 2
        assert audit.query(AuditLogFilter(start_date=start, end_date=start + timedelta(hours=1))).total == 2

    def test_search(self, audit):
        """Should search usernames, values and details."""
        audit.log(_event(username="alice"))
        audit.log(_event(new_value="Hepatotoxicity"))
        audit.log(_event(details={"note": "follow-up hepatic panel"}))
        assert audit.query(AuditLogFilter(search="alice")).total == 1
        assert audit.query(AuditLogFilter(search="Hepato")).total == 1
        assert audit.query(AuditLogFilter(search="hepatic")).total == 1

    def test_single_action_type(self, audit):
        """Should accept one action instead of a list."""
        audit.log(_event(action=AuditAction.CASE_VIEW))
        audit.log(_event(action=AuditAction.CASE_UPDATE))
        assert audit.query(AuditLogFilter(action_types=AuditAction.CASE_UPDATE)).total == 1
        assert audit.query(AuditLogFilter(action_types="case_view")).total == 1

    def test_search_wildcards_are_literal(self, audit):
        """Should match % and _ in a search term literally."""
        audit.log(_event(new_value="dose 100%"))
        audit.log(_event(new_value="dose 1000"))
        audit.log(_event(new_value="lot_7"))
        audit.log(_event(new_value="lotA7"))
        audit.log(_event(new_value="C:\\temp"))
        assert [e.new_value for e in audit.query(AuditLogFilter(search="100%")).entries] == ["dose 100%"]
        assert [e.new_value for e in audit.query(AuditLogFilter(search="lot_")).entries] == ["lot_7"]
        assert audit.query(AuditLogFilter(search="%")).total == 1
        assert [e.new_value for e in audit.query(AuditLogFilter(search="C:\\t")).entries] == ["C:\\temp"]

    def test_paging(self, audit):
        """Should page results and report has_more."""
        for i in range(5):
            audit.log(_event(entity_id=f"CASE-{i}"))
        first = audit.query(AuditLogFilter(limit=2))
        assert len(first.entries) == 2
        assert first.total == 5
        assert first.has_more

        last = audit.query(AuditLogFilter(limit=2, offset=4))
        assert len(last.entries) == 1
        assert not last.has_more

    def test_case_audit_trail(self, audit):
        """Should return every entry of one case."""
        for _ in range(7):
            audit.log(_event(entity_id="CASE-9"))
        audit.log(_event(entity_id="CASE-10"))
        assert len(audit.case_audit_trail("CASE-9")) == 7


class TestExport:
    """Tests for CSV and JSON export."""

    def test_csv_exports_every_row(self, audit):
        """Should export every matching row, beyond the internal batch size."""
        for i in range(8):
            audit.log(_event(entity_id=f"CASE-{i}"))
        rows = list(csv.reader(io.StringIO(audit.export_to_csv().decode("utf-8"))))
        assert rows[0][0] == "ID"
        assert rows[0][-1] == "IP Address"
        assert len(rows) == 9

    def test_csv_quoting_and_escapes(self, audit):
        """Should quote every field, double quotes and escape line breaks."""
        audit.log(_event(new_value='said "no"\r\nthen left'))
        text = audit.export_to_csv().decode("utf-8")
        lines = text.strip("\n").split("\n")
        assert len(lines) == 2
        assert lines[0].startswith('"ID","Timestamp"')
        assert '"said ""no""\\r\\nthen left"' in lines[1]

    def test_csv_backslash_escaped_before_line_breaks(self, audit):
        """Should export a real line break and a literal backslash-n differently."""
        audit.log(_event(entity_id="CASE-1", new_value="x\ny"))
        audit.log(_event(entity_id="CASE-2", new_value="x\\ny"))
        rows = list(csv.reader(io.StringIO(audit.export_to_csv().decode("utf-8"))))
        values = {row[7]: row[10] for row in rows[1:]}
        assert values["CASE-1"] == "x\\ny"
        assert values["CASE-2"] == "x\\\\ny"
        assert values["CASE-1"] != values["CASE-2"]

    def test_csv_respects_limit(self, audit):
        """Should export only one page when the filter sets a limit."""
        for i in range(5):
            audit.log(_event(entity_id=f"CASE-{i}"))
        rows = list(csv.reader(io.StringIO(audit.export_to_csv(AuditLogFilter(limit=2)).decode("utf-8"))))
        assert len(rows) == 3

    def test_json_export(self, audit):
        """Should export entries as a JSON array."""
        audit.log(_event(entity_id="CASE-1"))
        audit.log(_event(entity_id="CASE-2"))
        data = json.loads(audit.export_to_json(AuditLogFilter(entity_id="CASE-2")))
        assert len(data) == 1
        assert data[0]["entity_id"] == "CASE-2"
        assert data[0]["action_type"] == "case_view"

    def test_record_export(self, audit):
        """Should audit the export itself."""
        entry = audit.record_export("u-1", "jdoe", "s-1", "csv", 8)
        assert entry.action_type == AuditAction.CASE_EXPORT.value
        assert entry.details_dict == {"export_type": "audit_log", "format": "csv", "record_count": 8}


class TestStatistics:
    """Tests for AuditTrail.statistics."""

    def test_counts_by_action_and_user(self, audit, clock):
        """Should count entries per action and per user."""
        start = clock()
        audit.log(_event(action=AuditAction.CASE_VIEW))
        audit.log(_event(action=AuditAction.CASE_VIEW, username="alice"))
        audit.log(_event(action=AuditAction.CASE_UPDATE))
        stats = audit.statistics(start, clock() + timedelta(minutes=1))
        assert stats["total_entries"] == 3
        assert stats["by_action"] == {"case_view": 2, "case_update": 1}
        assert stats["by_user"] == {"jdoe": 2, "alice": 1}
        assert stats["unique_users"] == 2
