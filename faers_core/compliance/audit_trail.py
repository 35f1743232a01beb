"""
FAERS CORE - Audit Trail (21 CFR Part 11)
=========================================
Append-only audit log, electronic signature capture and verification,
compliance queries and exports.

Features:
- Every write is a single INSERT; there is no update or delete path
- Signatures and their audit entry commit in one transaction
- Audit writes can join a caller's transaction
- Tamper detection by hash recomputation
- CSV / JSON export of every matching entry, read in bounded batches
"""

import csv
import io
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Generator, Iterable, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import AuditConfig, get_settings
from ..database.connection import DatabaseManager, get_db_manager
from ..database.enums import AuditAction, EntityType
from ..database.repositories import AuditRepository, SignatureRepository
from ..exceptions import AuditWriteError, SignatureIntegrityFailure
from ..models import (
    AuditEvent, AuditLogEntry, AuditLogFilter, AuditLogPage, ElectronicSignature, FieldChange,
    SignatureData,
)
from ..utils.timeutils import isoformat_utc, utcnow
from .electronic_signature import VerificationResult, compute_signature_hash, verify_signature_record

logger = logging.getLogger(__name__)

# Entities with a dedicated field-change action; others need an explicit one
FIELD_CHANGE_ACTIONS = {
    EntityType.USER: AuditAction.USER_UPDATE,
    EntityType.CASE: AuditAction.CASE_UPDATE,
}

CSV_HEADERS = [
    'ID',
    'Timestamp',
    'User ID',
    'Username',
    'Session ID',
    'Action Type',
    'Entity Type',
    'Entity ID',
    'Field Name',
    'Old Value',
    'New Value',
    'Details',
    'IP Address',
]


def serialize_value(value: Any) -> Optional[str]:
    """Audit columns hold text: structures become sorted-key JSON, scalars their string form."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return isoformat_utc(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _csv_cell(value: Any) -> str:
    if value is None:
        return ''
    text = str(value).replace('\\', '\\\\')
    return text.replace('\r', '\\r').replace('\n', '\\n')


class AuditTrail:
    """
    21 CFR Part 11 compliant audit trail.

    Usage:
        trail = AuditTrail(db)
        trail.log(AuditEvent(AuditAction.LOGIN, EntityType.SESSION, user_id=...))
        page = trail.query(AuditLogFilter(entity_type=EntityType.CASE, entity_id="CASE-1"))
    """

    def __init__(
        self,
        db: Optional[DatabaseManager] = None,
        config: Optional[AuditConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = db or get_db_manager()
        self.config = config or get_settings().audit
        self._clock = clock
        self._entries = AuditRepository(self._db)
        self._signatures = SignatureRepository(self._db)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """Open a transaction that audit writes and domain writes can share."""
        with self._entries.transaction() as session:
            yield session

    @staticmethod
    def _columns(event: AuditEvent) -> Dict[str, Any]:
        return {
            'action_type': AuditAction(event.action_type).value,
            'entity_type': EntityType(event.entity_type).value,
            'user_id': event.user_id,
            'username': event.username,
            'session_id': event.session_id,
            'entity_id': event.entity_id,
            'field_name': event.field_name,
            'old_value': serialize_value(event.old_value),
            'new_value': serialize_value(event.new_value),
            'details': json.dumps(event.details, sort_keys=True, default=str) if event.details else None,
            'ip_address': event.ip_address,
        }

    def log(self, event: AuditEvent, session=None) -> AuditLogEntry:
        """
        Append one audit entry.

        Raises:
            AuditWriteError: the entry could not be persisted
        """
        columns = self._columns(event)
        try:
            entry = self._entries.append(self._clock(), session=session, **columns)
        except SQLAlchemyError as e:
            logger.critical(f"CRITICAL: Failed to write audit log ({columns['action_type']}): {e}")
            raise AuditWriteError() from e

        logger.info(
            f"AUDIT: {entry.action_type} by {entry.username or 'system'} "
            f"on {entry.entity_type}/{entry.entity_id or '-'}"
        )
        return entry

    def log_field_changes(
        self,
        user_id: str,
        username: str,
        session_id: Optional[str],
        entity_type: EntityType,
        entity_id: str,
        changes: Iterable[FieldChange],
        ip_address: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ) -> List[AuditLogEntry]:
        """
        One entry per changed field.

        Users and cases default to ``user_update`` and ``case_update``; any
        other entity is recorded as ``config_change`` unless ``action`` is given.
        """
        entity = EntityType(entity_type)
        if action is None:
            action = FIELD_CHANGE_ACTIONS.get(entity, AuditAction.CONFIG_CHANGE)
        return [
            self.log(AuditEvent(
                action_type=AuditAction(action),
                entity_type=entity,
                user_id=user_id,
                username=username,
                session_id=session_id,
                entity_id=entity_id,
                field_name=change.field,
                old_value=change.old_value,
                new_value=change.new_value,
                ip_address=ip_address,
            ))
            for change in changes
        ]

    def log_workflow_transition(
        self,
        user_id: str,
        username: str,
        session_id: Optional[str],
        case_id: str,
        from_status: str,
        to_status: str,
        comment: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> AuditLogEntry:
        payload = dict(details or {})
        if comment:
            payload['comment'] = comment
        return self.log(AuditEvent(
            action_type=AuditAction.WORKFLOW_TRANSITION,
            entity_type=EntityType.CASE,
            user_id=user_id,
            username=username,
            session_id=session_id,
            entity_id=case_id,
            old_value=from_status,
            new_value=to_status,
            details=payload or None,
            ip_address=ip_address,
        ), session=session)

    def log_permission_denied(
        self,
        user_id: str,
        username: str,
        session_id: Optional[str],
        required_permission: str,
        action: str,
        entity_type: EntityType = EntityType.SYSTEM,
        entity_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AuditLogEntry:
        details = {'action': action, 'required_permission': required_permission}
        if reason:
            details['reason'] = reason
        return self.log(AuditEvent(
            action_type=AuditAction.PERMISSION_DENIED,
            entity_type=entity_type,
            user_id=user_id,
            username=username,
            session_id=session_id,
            entity_id=entity_id,
            details=details,
            ip_address=ip_address,
        ))

    # ------------------------------------------------------------------
    # Electronic signatures
    # ------------------------------------------------------------------

    def create_signature(
        self,
        data: SignatureData,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> ElectronicSignature:
        """
        Record an electronic signature and its ``electronic_signature`` audit entry.

        The caller must have re-authenticated the signer already. When
        ``session`` is given both rows join that transaction.
        """
        timestamp = isoformat_utc(self._clock())
        entity_type = EntityType(data.entity_type).value
        signature_hash = compute_signature_hash(
            user_id=data.user_id,
            entity_type=entity_type,
            entity_id=data.entity_id,
            action=data.action,
            meaning=data.meaning,
            record_version=data.record_version,
            timestamp=timestamp,
        )

        try:
            with self._signature_scope(session) as tx:
                signature = self._signatures.insert(
                    session=tx,
                    user_id=data.user_id,
                    username=data.username,
                    timestamp=timestamp,
                    entity_type=entity_type,
                    entity_id=data.entity_id,
                    action=data.action,
                    meaning=data.meaning,
                    record_version=data.record_version,
                    signature_hash=signature_hash,
                )
                self.log(AuditEvent(
                    action_type=AuditAction.ELECTRONIC_SIGNATURE,
                    entity_type=entity_type,
                    user_id=data.user_id,
                    username=data.username,
                    session_id=session_id,
                    entity_id=data.entity_id,
                    details={
                        'action': data.action,
                        'meaning': data.meaning,
                        'record_version': data.record_version,
                        'signature_id': signature.id,
                    },
                    ip_address=ip_address,
                ), session=tx)
        except SQLAlchemyError as e:
            logger.critical(f"CRITICAL: Failed to record electronic signature: {e}")
            raise AuditWriteError() from e

        logger.info(f"Electronic signature {signature.id} recorded for {entity_type}/{data.entity_id}")
        return signature

    @contextmanager
    def _signature_scope(self, session: Optional[Session]) -> Generator[Session, None, None]:
        if session is not None:
            yield session
        else:
            with self._signatures.transaction() as tx:
                yield tx

    def get_signature(self, signature_id: int) -> Optional[ElectronicSignature]:
        return self._signatures.get(signature_id)

    def signatures_for_entity(self, entity_type: EntityType, entity_id: str) -> List[ElectronicSignature]:
        return self._signatures.for_entity(EntityType(entity_type).value, entity_id)

    def verify_signature(
        self,
        signature_id: int,
        verified_by: Optional[str] = None,
        verified_by_username: Optional[str] = None,
    ) -> VerificationResult:
        """
        Verify signature integrity and record any failure.

        Checks:
        1. Signature exists
        2. Hash matches recorded hash
        """
        signature = self._signatures.get(signature_id)
        result = verify_signature_record(
            signature,
            signature_id=signature_id,
            now=self._clock(),
            retention_years=self.config.retention_years,
        )

        if signature is not None and not result.is_valid:
            logger.critical(
                f"CRITICAL: Signature {signature_id} failed integrity verification: {'; '.join(result.errors)}"
            )
            self.log(AuditEvent(
                action_type=AuditAction.SIGNATURE_VERIFICATION_FAILED,
                entity_type=signature.entity_type,
                user_id=verified_by,
                username=verified_by_username,
                entity_id=signature.entity_id,
                details={'signature_id': signature_id, 'errors': result.errors},
            ))
        return result

    def require_intact_signature(self, signature_id: int) -> ElectronicSignature:
        """Return the signature, or raise if it is missing or was altered."""
        result = self.verify_signature(signature_id)
        if not result.is_valid:
            raise SignatureIntegrityFailure(signature_id=signature_id)
        return self._signatures.get(signature_id)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: int) -> Optional[AuditLogEntry]:
        return self._entries.get(entry_id)

    def query(self, audit_filter: Optional[AuditLogFilter] = None) -> AuditLogPage:
        """
        Query audit log entries, newest first.

        Returns:
            AuditLogPage with the page, the total match count and has_more
        """
        audit_filter = audit_filter or AuditLogFilter()
        limit = audit_filter.limit if audit_filter.limit is not None else self.config.default_page_size
        entries, total = self._entries.query(audit_filter, limit)
        return AuditLogPage(
            entries=entries,
            total=total,
            has_more=audit_filter.offset + len(entries) < total,
        )

    def case_audit_trail(self, case_id: str) -> List[AuditLogEntry]:
        """Complete history of one case, newest first."""
        return list(self._entries.iter_matching(
            AuditLogFilter(entity_type=EntityType.CASE, entity_id=case_id),
            self.config.export_batch_size,
        ))

    def user_audit_trail(self, user_id: str, limit: int = 100) -> List[AuditLogEntry]:
        return self.query(AuditLogFilter(user_id=user_id, limit=limit)).entries

    def statistics(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """Audit log statistics for a period."""
        by_action = self._entries.count_by_action(start, end)
        by_user = self._entries.count_by_user(start, end)
        return {
            'total_entries': sum(by_action.values()),
            'unique_users': len(by_user),
            'by_action': by_action,
            'by_user': by_user,
            'signature_count': self._signatures.count(),
            'period_start': isoformat_utc(start),
            'period_end': isoformat_utc(end),
        }

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _export_entries(self, audit_filter: Optional[AuditLogFilter]) -> Iterator[AuditLogEntry]:
        audit_filter = audit_filter or AuditLogFilter()
        if audit_filter.limit is not None:
            return iter(self.query(audit_filter).entries)
        return self._entries.iter_matching(audit_filter, self.config.export_batch_size)

    def export_to_csv(self, audit_filter: Optional[AuditLogFilter] = None) -> bytes:
        """
        Export matching entries as CSV.

        Every field is quoted and embedded quotes are doubled. Backslashes are
        doubled before CR/LF are written as literal \\r and \\n, so each entry
        stays on one line and the original text can be recovered.
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
        writer.writerow(CSV_HEADERS)
        for entry in self._export_entries(audit_filter):
            writer.writerow([
                _csv_cell(entry.id),
                _csv_cell(entry.timestamp.isoformat()),
                _csv_cell(entry.user_id),
                _csv_cell(entry.username),
                _csv_cell(entry.session_id),
                _csv_cell(entry.action_type),
                _csv_cell(entry.entity_type),
                _csv_cell(entry.entity_id),
                _csv_cell(entry.field_name),
                _csv_cell(entry.old_value),
                _csv_cell(entry.new_value),
                _csv_cell(entry.details),
                _csv_cell(entry.ip_address),
            ])
        return buffer.getvalue().encode('utf-8')

    def export_to_json(self, audit_filter: Optional[AuditLogFilter] = None) -> bytes:
        entries = [entry.to_dict() for entry in self._export_entries(audit_filter)]
        return json.dumps(entries, indent=2).encode('utf-8')

    def record_export(
        self,
        user_id: str,
        username: str,
        session_id: Optional[str],
        export_format: str,
        record_count: int,
        ip_address: Optional[str] = None,
    ) -> AuditLogEntry:
        """Audit an audit-log export handed to the export layer."""
        return self.log(AuditEvent(
            action_type=AuditAction.CASE_EXPORT,
            entity_type=EntityType.SYSTEM,
            user_id=user_id,
            username=username,
            session_id=session_id,
            details={
                'export_type': 'audit_log',
                'format': export_format,
                'record_count': record_count,
            },
            ip_address=ip_address,
        ))


# Singleton instance
_audit_trail: Optional[AuditTrail] = None


def get_audit_trail() -> AuditTrail:
    """Get singleton audit trail."""
    global _audit_trail
    if _audit_trail is None:
        _audit_trail = AuditTrail()
    return _audit_trail
