"""
FAERS CORE - Case Store
=======================
The case-storage collaborator used by the workflow engine, and its default
SQLAlchemy implementation over the ``cases``, ``case_assignments``,
``case_comments`` and ``case_notes`` tables.

The engine only reads workflow-relevant fields and asks the store to apply a
status or assignee change. Status changes are compare-and-set against the
status the caller validated, so two racing approvers cannot both win.
Clinical case content is not part of this core.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Union

from sqlalchemy import case, func, or_, update
from sqlalchemy.orm import Session

from ..database.connection import DatabaseManager, get_db_manager
from ..database.enums import AssignmentPriority, CommentType, NoteVisibility
from ..database.models import Case, CaseAssignment, CaseComment, CaseNote
from ..exceptions import IllegalTransition, NotFound
from ..utils.timeutils import ensure_utc, to_naive_utc, utcnow
from .states import REVIEW_STATES, WorkflowStatus, parse_status

logger = logging.getLogger(__name__)


@dataclass
class CaseSnapshot:
    """Workflow view of a case."""
    case_id: str
    workflow_status: str
    current_owner: Optional[str]
    current_assignee: Optional[str]
    version: int
    is_expedited: bool = False
    rejection_count: int = 0
    last_exported_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'case_id': self.case_id,
            'workflow_status': self.workflow_status,
            'current_owner': self.current_owner,
            'current_assignee': self.current_assignee,
            'version': self.version,
            'is_expedited': self.is_expedited,
            'rejection_count': self.rejection_count,
            'last_exported_at': self.last_exported_at.isoformat() if self.last_exported_at else None,
        }


@dataclass
class CaseAssignmentRecord:
    id: int
    case_id: str
    assigned_to: str
    assigned_by: str
    assigned_at: datetime
    due_date: Optional[datetime]
    priority: str
    notes: Optional[str]
    is_current: bool


@dataclass
class CaseCommentRecord:
    id: int
    case_id: str
    user_id: str
    comment_type: str
    content: str
    created_at: datetime
    mentions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'case_id': self.case_id,
            'user_id': self.user_id,
            'comment_type': self.comment_type,
            'content': self.content,
            'created_at': self.created_at.isoformat(),
            'mentions': list(self.mentions),
        }


@dataclass
class CaseNoteRecord:
    id: int
    case_id: str
    user_id: str
    visibility: str
    content: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'case_id': self.case_id,
            'user_id': self.user_id,
            'visibility': self.visibility,
            'content': self.content,
            'created_at': self.created_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
            'resolved_by': self.resolved_by,
        }


@dataclass
class AssignedCase:
    """One row of a user's work queue."""
    case_id: str
    workflow_status: str
    due_date: Optional[datetime]
    priority: str
    assigned_at: datetime


class CaseStore(ABC):
    """
    What the workflow engine needs from case storage.

    Methods that take ``session`` join the caller's transaction when one is
    given. Stores that are not backed by the core database may ignore it.
    """

    @abstractmethod
    def get_case(self, case_id: str) -> Optional[CaseSnapshot]:
        ...

    @abstractmethod
    def set_status(
        self,
        case_id: str,
        status: WorkflowStatus,
        expected_from: Optional[WorkflowStatus] = None,
        assignee: Optional[str] = None,
        assigned_by: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> CaseSnapshot:
        """
        Apply a workflow status, optionally with a new current assignee.

        With ``expected_from`` the change only applies while the case is still
        in that status; otherwise ``IllegalTransition`` is raised.
        """

    @abstractmethod
    def set_assignee(
        self,
        case_id: str,
        assignee: str,
        assigned_by: str,
        due_date: Optional[datetime] = None,
        priority: Union[AssignmentPriority, str] = AssignmentPriority.NORMAL,
        notes: Optional[str] = None,
    ) -> CaseSnapshot:
        ...

    @abstractmethod
    def has_successful_export(self, case_id: str) -> bool:
        """True once the export layer has produced a submission file for the case."""

    @abstractmethod
    def add_comment(
        self,
        case_id: str,
        user_id: str,
        comment_type: Union[CommentType, str],
        content: str,
        mentions: Optional[List[str]] = None,
        session: Optional[Session] = None,
    ) -> CaseCommentRecord:
        ...

    @abstractmethod
    def comments_for_case(self, case_id: str) -> List[CaseCommentRecord]:
        """Comments on a case, newest first."""

    @abstractmethod
    def add_note(
        self,
        case_id: str,
        user_id: str,
        visibility: Union[NoteVisibility, str],
        content: str,
        session: Optional[Session] = None,
    ) -> CaseNoteRecord:
        ...

    @abstractmethod
    def get_note(self, note_id: int) -> Optional[CaseNoteRecord]:
        ...

    @abstractmethod
    def notes_for_case(self, case_id: str, user_id: str) -> List[CaseNoteRecord]:
        """Team notes plus ``user_id``'s personal notes, newest first."""

    @abstractmethod
    def resolve_note(self, note_id: int, resolved_by: str, session: Optional[Session] = None) -> CaseNoteRecord:
        ...

    @abstractmethod
    def cases_assigned_to(self, user_id: str, limit: int = 50) -> List[AssignedCase]:
        """Current assignments of a user, overdue first."""


def _to_snapshot(row: Case) -> CaseSnapshot:
    return CaseSnapshot(
        case_id=row.case_id,
        workflow_status=row.workflow_status or WorkflowStatus.DRAFT.value,
        current_owner=row.current_owner,
        current_assignee=row.current_assignee,
        version=row.version,
        is_expedited=bool(row.is_expedited),
        rejection_count=row.rejection_count or 0,
        last_exported_at=ensure_utc(row.last_exported_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _to_assignment(row: CaseAssignment) -> CaseAssignmentRecord:
    return CaseAssignmentRecord(
        id=row.assignment_id,
        case_id=row.case_id,
        assigned_to=row.assigned_to,
        assigned_by=row.assigned_by,
        assigned_at=ensure_utc(row.assigned_at),
        due_date=ensure_utc(row.due_date),
        priority=row.priority,
        notes=row.notes,
        is_current=bool(row.is_current),
    )


def _to_comment(row: CaseComment) -> CaseCommentRecord:
    return CaseCommentRecord(
        id=row.comment_id,
        case_id=row.case_id,
        user_id=row.user_id,
        comment_type=row.comment_type,
        content=row.content,
        created_at=ensure_utc(row.created_at),
        mentions=json.loads(row.mentions) if row.mentions else [],
    )


def _to_note(row: CaseNote) -> CaseNoteRecord:
    return CaseNoteRecord(
        id=row.note_id,
        case_id=row.case_id,
        user_id=row.user_id,
        visibility=row.visibility,
        content=row.content,
        created_at=ensure_utc(row.created_at),
        resolved_at=ensure_utc(row.resolved_at),
        resolved_by=row.resolved_by,
    )


# Work-queue ordering, most urgent first
_PRIORITY_RANK = case(
    (CaseAssignment.priority == AssignmentPriority.URGENT.value, 0),
    (CaseAssignment.priority == AssignmentPriority.HIGH.value, 1),
    (CaseAssignment.priority == AssignmentPriority.NORMAL.value, 2),
    else_=3,
)


class SqlCaseStore(CaseStore):
    """Case store backed by the core database."""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Callable[[], datetime] = utcnow):
        self._db = db or get_db_manager()
        self._clock = clock

    @contextmanager
    def _scope(self, session: Optional[Session] = None) -> Generator[Session, None, None]:
        if session is not None:
            yield session
        else:
            with self._db.session() as s:
                yield s

    def _require(self, s, case_id: str) -> Case:
        row = s.get(Case, case_id)
        if row is None:
            raise NotFound("Case not found")
        return row

    def _assign(self, s, row: Case, assignee: str, assigned_by: str, now: datetime,
                due_date=None, priority=AssignmentPriority.NORMAL, notes=None) -> None:
        for current in row.assignments:
            if current.is_current:
                current.is_current = False
        s.add(CaseAssignment(
            case_id=row.case_id,
            assigned_to=assignee,
            assigned_by=assigned_by,
            assigned_at=to_naive_utc(now),
            due_date=to_naive_utc(due_date),
            priority=AssignmentPriority(priority).value,
            notes=notes,
            is_current=True,
        ))
        row.current_assignee = assignee

    def create_case(
        self,
        case_id: str,
        owner_id: Optional[str],
        is_expedited: bool = False,
        status: WorkflowStatus = WorkflowStatus.DRAFT,
    ) -> CaseSnapshot:
        now = to_naive_utc(self._clock())
        with self._scope() as s:
            row = Case(
                case_id=case_id,
                workflow_status=WorkflowStatus(status).value,
                current_owner=owner_id,
                version=1,
                is_expedited=is_expedited,
                rejection_count=0,
                created_at=now,
                updated_at=now,
            )
            s.add(row)
            s.flush()
            return _to_snapshot(row)

    def get_case(self, case_id: str) -> Optional[CaseSnapshot]:
        with self._scope() as s:
            row = s.get(Case, case_id)
            return _to_snapshot(row) if row else None

    def set_status(
        self,
        case_id: str,
        status: WorkflowStatus,
        expected_from: Optional[WorkflowStatus] = None,
        assignee: Optional[str] = None,
        assigned_by: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> CaseSnapshot:
        """
        Apply a status change.

        The status column is written with a single conditional UPDATE. With
        ``expected_from`` the row only changes while it still holds that
        status; when no row changes ``IllegalTransition`` is raised with the
        status found in the store.

        With an assignee a new current assignment is recorded. Without one,
        leaving the review states clears the current assignee. Entering
        ``Rejected`` increments the rejection count.
        """
        status = WorkflowStatus(status)
        now = self._clock()
        with self._scope(session) as s:
            statement = update(Case).where(Case.case_id == case_id)
            if expected_from is not None:
                statement = statement.where(Case.workflow_status == WorkflowStatus(expected_from).value)
            values = {'workflow_status': status.value, 'updated_at': to_naive_utc(now)}
            if status == WorkflowStatus.REJECTED:
                values['rejection_count'] = func.coalesce(Case.rejection_count, 0) + 1
            result = s.execute(statement.values(**values).execution_options(synchronize_session=False))

            if result.rowcount == 0:
                current = self._require(s, case_id)
                logger.warning(
                    f"Case {case_id} is '{current.workflow_status}', expected "
                    f"'{WorkflowStatus(expected_from).value}'; '{status.value}' not applied"
                )
                raise IllegalTransition(current.workflow_status, status.value)

            row = s.get(Case, case_id, populate_existing=True)
            if assignee:
                self._assign(s, row, assignee, assigned_by or assignee, now)
            elif status not in REVIEW_STATES:
                row.current_assignee = None
                for current in row.assignments:
                    current.is_current = False

            s.flush()
            logger.info(f"Case {case_id} status set to '{status.value}'")
            return _to_snapshot(row)

    def set_assignee(
        self,
        case_id: str,
        assignee: str,
        assigned_by: str,
        due_date: Optional[datetime] = None,
        priority: Union[AssignmentPriority, str] = AssignmentPriority.NORMAL,
        notes: Optional[str] = None,
    ) -> CaseSnapshot:
        now = self._clock()
        with self._scope() as s:
            row = self._require(s, case_id)
            self._assign(s, row, assignee, assigned_by, now, due_date, priority, notes)
            row.updated_at = to_naive_utc(now)
            s.flush()
            return _to_snapshot(row)

    def has_successful_export(self, case_id: str) -> bool:
        with self._scope() as s:
            row = s.get(Case, case_id)
            return row is not None and row.last_exported_at is not None

    def record_export(self, case_id: str, exported_at: Optional[datetime] = None) -> CaseSnapshot:
        """Mark a successful export of the case's submission file."""
        with self._scope() as s:
            row = self._require(s, case_id)
            row.last_exported_at = to_naive_utc(exported_at or self._clock())
            s.flush()
            return _to_snapshot(row)

    def current_assignment(self, case_id: str) -> Optional[CaseAssignmentRecord]:
        with self._scope() as s:
            row = (
                s.query(CaseAssignment)
                .filter(CaseAssignment.case_id == case_id, CaseAssignment.is_current.is_(True))
                .order_by(CaseAssignment.assignment_id.desc())
                .first()
            )
            return _to_assignment(row) if row else None

    def assignment_history(self, case_id: str) -> List[CaseAssignmentRecord]:
        with self._scope() as s:
            rows = (
                s.query(CaseAssignment)
                .filter(CaseAssignment.case_id == case_id)
                .order_by(CaseAssignment.assignment_id)
                .all()
            )
            return [_to_assignment(row) for row in rows]

    def status_of(self, case_id: str) -> Optional[WorkflowStatus]:
        snapshot = self.get_case(case_id)
        return parse_status(snapshot.workflow_status) if snapshot else None

    # ------------------------------------------------------------------
    # Comments and notes
    # ------------------------------------------------------------------

    def add_comment(
        self,
        case_id: str,
        user_id: str,
        comment_type: Union[CommentType, str],
        content: str,
        mentions: Optional[List[str]] = None,
        session: Optional[Session] = None,
    ) -> CaseCommentRecord:
        with self._scope(session) as s:
            self._require(s, case_id)
            row = CaseComment(
                case_id=case_id,
                user_id=user_id,
                comment_type=CommentType(comment_type).value,
                content=content,
                mentions=json.dumps(list(mentions)) if mentions else None,
                created_at=to_naive_utc(self._clock()),
            )
            s.add(row)
            s.flush()
            return _to_comment(row)

    def comments_for_case(self, case_id: str) -> List[CaseCommentRecord]:
        with self._scope() as s:
            rows = (
                s.query(CaseComment)
                .filter(CaseComment.case_id == case_id)
                .order_by(CaseComment.created_at.desc(), CaseComment.comment_id.desc())
                .all()
            )
            return [_to_comment(row) for row in rows]

    def add_note(
        self,
        case_id: str,
        user_id: str,
        visibility: Union[NoteVisibility, str],
        content: str,
        session: Optional[Session] = None,
    ) -> CaseNoteRecord:
        with self._scope(session) as s:
            self._require(s, case_id)
            row = CaseNote(
                case_id=case_id,
                user_id=user_id,
                visibility=NoteVisibility(visibility).value,
                content=content,
                created_at=to_naive_utc(self._clock()),
            )
            s.add(row)
            s.flush()
            return _to_note(row)

    def get_note(self, note_id: int) -> Optional[CaseNoteRecord]:
        with self._scope() as s:
            row = s.get(CaseNote, note_id)
            return _to_note(row) if row else None

    def notes_for_case(self, case_id: str, user_id: str) -> List[CaseNoteRecord]:
        with self._scope() as s:
            rows = (
                s.query(CaseNote)
                .filter(
                    CaseNote.case_id == case_id,
                    or_(CaseNote.visibility == NoteVisibility.TEAM.value, CaseNote.user_id == user_id),
                )
                .order_by(CaseNote.created_at.desc(), CaseNote.note_id.desc())
                .all()
            )
            return [_to_note(row) for row in rows]

    def resolve_note(self, note_id: int, resolved_by: str, session: Optional[Session] = None) -> CaseNoteRecord:
        with self._scope(session) as s:
            row = s.get(CaseNote, note_id)
            if row is None:
                raise NotFound("Note not found")
            row.resolved_at = to_naive_utc(self._clock())
            row.resolved_by = resolved_by
            s.flush()
            return _to_note(row)

    def cases_assigned_to(self, user_id: str, limit: int = 50) -> List[AssignedCase]:
        now = to_naive_utc(self._clock())
        overdue = case(
            (CaseAssignment.due_date.is_not(None) & (CaseAssignment.due_date < now), 0),
            else_=1,
        )
        with self._scope() as s:
            rows = (
                s.query(Case.case_id, Case.workflow_status, CaseAssignment.due_date,
                        CaseAssignment.priority, CaseAssignment.assigned_at)
                .join(CaseAssignment, CaseAssignment.case_id == Case.case_id)
                .filter(CaseAssignment.assigned_to == user_id, CaseAssignment.is_current.is_(True))
                .order_by(
                    overdue,
                    CaseAssignment.due_date.is_(None),
                    CaseAssignment.due_date.asc(),
                    _PRIORITY_RANK,
                    CaseAssignment.assigned_at.asc(),
                )
                .limit(limit)
                .all()
            )
            return [
                AssignedCase(
                    case_id=case_id,
                    workflow_status=status or WorkflowStatus.DRAFT.value,
                    due_date=ensure_utc(due_date),
                    priority=priority,
                    assigned_at=ensure_utc(assigned_at),
                )
                for case_id, status, due_date, priority, assigned_at in rows
            ]
