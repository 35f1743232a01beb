"""
FAERS CORE - Workflow Engine
============================
Case workflow state machine on top of the case store.

Every transition goes through ``attempt_transition``:

1. The (from, to) pair must be in the transition table
2. The caller must hold the transition's permission (or ``*``)
3. Transition preconditions must hold (comment, assignee, export, ...)
4. Approved / Submitted require an electronic signature

The signer re-authenticates before anything is written. The status change is
then applied as a compare-and-set against the validated from-status, and the
signature, any comment and exactly one ``workflow_transition`` audit entry
commit in that same transaction. A ``WorkflowTransitioned`` event is
published after the commit.

Comments, notes and the personal work queue live here too.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..auth.authentication import AuthService
from ..compliance.audit_trail import AuditTrail
from ..database.enums import AssignmentPriority, AuditAction, CommentType, EntityType, NoteVisibility
from ..database.repositories import UserRepository
from ..events import EventDispatcher, WorkflowTransitioned
from ..exceptions import (
    AuditWriteError, FaersCoreError, IllegalTransition, InvalidCredentials, NotFound,
    PermissionDenied, PolicyViolation,
)
from ..models import AuditEvent, AuthContext, ElectronicSignature, SignatureData
from ..permissions import Permission, permission_value, satisfies
from .case_store import (
    AssignedCase, CaseCommentRecord, CaseNoteRecord, CaseSnapshot, CaseStore, SqlCaseStore,
)
from .states import Transition, WorkflowStatus, find_transition, parse_status, successors

logger = logging.getLogger(__name__)


@dataclass
class SignatureCredentials:
    """Password re-entry plus the stated meaning of the signature."""
    password: str
    meaning: str


@dataclass
class TransitionRequest:
    case_id: str
    to_status: Union[WorkflowStatus, str]
    comment: Optional[str] = None
    assign_to: Optional[str] = None
    signature: Optional[SignatureCredentials] = None


@dataclass
class TransitionResult:
    case: CaseSnapshot
    from_status: WorkflowStatus
    to_status: WorkflowStatus
    audit_entry_id: int
    signature: Optional[ElectronicSignature] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'case': self.case.to_dict(),
            'from_status': self.from_status.value,
            'to_status': self.to_status.value,
            'audit_entry_id': self.audit_entry_id,
            'signature': self.signature.to_dict() if self.signature else None,
        }


@dataclass
class CaseHistoryEntry:
    id: int
    case_id: str
    timestamp: datetime
    user_id: Optional[str]
    username: str
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    comment: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class WorkflowEngine:
    """
    Case workflow engine.

    Usage:
        engine = WorkflowEngine(auth)
        engine.attempt_transition(
            TransitionRequest(case_id, WorkflowStatus.QC_COMPLETE),
            session_id,
        )
    """

    def __init__(
        self,
        auth: AuthService,
        case_store: Optional[CaseStore] = None,
        audit: Optional[AuditTrail] = None,
        events: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._auth = auth
        self._clock = clock or auth.clock
        self.cases = case_store or SqlCaseStore(auth.db, clock=self._clock)
        self.audit = audit or auth.audit
        self.events = events or auth.events
        self._users = UserRepository(auth.db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_case(self, case_id: str) -> CaseSnapshot:
        case = self.cases.get_case(case_id)
        if case is None:
            raise NotFound("Case not found")
        return case

    def _deny(self, context: AuthContext, required, case_id: str, action: str, reason: Optional[str] = None):
        """Audit a permission denial on a case, then raise it."""
        required = permission_value(required)
        logger.warning(f"Permission '{required}' denied to {context.username} for {action} on case {case_id}")
        error = PermissionDenied(required_permission=required)
        try:
            self.audit.log_permission_denied(
                context.user_id, context.username, context.session_id, required,
                action=action, entity_type=EntityType.CASE, entity_id=case_id,
                ip_address=context.ip_address, reason=reason,
            )
        except AuditWriteError as e:
            e.original_error = error
            raise
        raise error

    def _fail(self, event: AuditEvent, error: FaersCoreError):
        try:
            self.audit.log(event)
        except AuditWriteError as e:
            e.original_error = error
            raise
        raise error

    @staticmethod
    def _is_assignee(context: AuthContext, case: CaseSnapshot) -> bool:
        return case.current_assignee == context.user_id or satisfies(context.permissions, Permission.CASE_VIEW_ALL)

    @staticmethod
    def _is_owner(context: AuthContext, case: CaseSnapshot) -> bool:
        return case.current_owner == context.user_id or satisfies(context.permissions, Permission.CASE_EDIT_ALL)

    def _check_assignee(self, user_id: Optional[str]) -> Optional[str]:
        user = self._users.find_by_id(user_id) if user_id else None
        if user is None or not user.is_active:
            return "Assignee must be an active user"
        return None

    def _resolve(self, case: CaseSnapshot, to_status) -> Transition:
        from_status = parse_status(case.workflow_status)
        target = parse_status(to_status)
        transition = find_transition(from_status, target) if from_status and target else None
        if transition is None:
            requested = to_status.value if isinstance(to_status, WorkflowStatus) else str(to_status)
            logger.warning(f"Illegal transition for case {case.case_id}: '{case.workflow_status}' -> '{requested}'")
            raise IllegalTransition(case.workflow_status, requested)
        return transition

    def _check_preconditions(
        self,
        context: AuthContext,
        case: CaseSnapshot,
        transition: Transition,
        request: TransitionRequest,
    ) -> None:
        action = transition.action_name
        if transition.assignee_only and not self._is_assignee(context, case):
            self._deny(context, Permission.CASE_VIEW_ALL, case.case_id, action,
                       reason="Only the assigned reviewer can complete this review")
        if transition.owner_only and not self._is_owner(context, case):
            self._deny(context, Permission.CASE_EDIT_ALL, case.case_id, action,
                       reason="Only the case owner can start rework")

        errors = []
        if transition.requires_comment and not (request.comment or "").strip():
            errors.append("Comment is required for this action")
        if transition.requires_assignment:
            if not request.assign_to:
                errors.append("Assignment is required for this action")
            else:
                problem = self._check_assignee(request.assign_to)
                if problem:
                    errors.append(problem)
        if transition.requires_export and not self.cases.has_successful_export(case.case_id):
            errors.append("Case must be exported before it can be marked as submitted")
        if transition.non_expedited_only and case.is_expedited:
            errors.append("Expedited cases cannot be included in a periodic safety report")
        if transition.requires_signature:
            if request.signature is None:
                errors.append("Electronic signature is required for this action")
            elif not (request.signature.meaning or "").strip():
                errors.append("Signature meaning is required")
        if errors:
            raise PolicyViolation(errors)

    def _reauthenticate(
        self,
        context: AuthContext,
        case: CaseSnapshot,
        transition: Transition,
        credentials: SignatureCredentials,
    ) -> None:
        if not self._auth.reauthenticate(context.user_id, credentials.password):
            logger.warning(f"Signature re-authentication failed for {context.username} on case {case.case_id}")
            self._fail(AuditEvent(
                action_type=AuditAction.ELECTRONIC_SIGNATURE,
                entity_type=EntityType.CASE,
                user_id=context.user_id,
                username=context.username,
                session_id=context.session_id,
                entity_id=case.case_id,
                details={
                    'success': False,
                    'action': transition.action_name,
                    'reason': 'password_verification_failed',
                },
                ip_address=context.ip_address,
            ), InvalidCredentials("Invalid signature - password verification failed"))

    def _sign(
        self,
        context: AuthContext,
        case: CaseSnapshot,
        transition: Transition,
        credentials: SignatureCredentials,
        session,
    ) -> ElectronicSignature:
        return self.audit.create_signature(
            SignatureData(
                user_id=context.user_id,
                username=context.username,
                entity_type=EntityType.CASE,
                entity_id=case.case_id,
                action=transition.action_name,
                meaning=credentials.meaning,
                record_version=case.version,
            ),
            session_id=context.session_id,
            ip_address=context.ip_address,
            session=session,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def attempt_transition(
        self,
        request: TransitionRequest,
        session_id: str,
        ip_address: Optional[str] = None,
    ) -> TransitionResult:
        """
        Validate and apply one workflow transition.

        Raises:
            NotAuthenticated: session is not valid
            NotFound: unknown case
            IllegalTransition: the pair is not in the transition table, or the
                case left the from-status before the change committed
            PermissionDenied: missing permission, or not assignee / owner (audited)
            PolicyViolation: every failed precondition
            InvalidCredentials: signature password did not verify (audited)
        """
        context = self._auth.require_session(session_id, ip_address)
        case = self._require_case(request.case_id)
        transition = self._resolve(case, request.to_status)

        if not satisfies(context.permissions, transition.permission):
            self._deny(context, transition.permission, case.case_id, transition.action_name)

        self._check_preconditions(context, case, transition, request)

        if request.signature is not None:
            self._reauthenticate(context, case, transition, request.signature)

        signature = None
        comment = None
        with self.audit.transaction() as tx:
            updated = self.cases.set_status(
                case.case_id,
                transition.to_status,
                expected_from=transition.from_status,
                assignee=request.assign_to,
                assigned_by=context.user_id,
                session=tx,
            )
            if request.signature is not None:
                signature = self._sign(context, case, transition, request.signature, session=tx)
            if (request.comment or "").strip():
                comment = self.cases.add_comment(
                    case.case_id,
                    context.user_id,
                    CommentType.REJECTION if transition.to_status == WorkflowStatus.REJECTED else CommentType.WORKFLOW,
                    request.comment,
                    session=tx,
                )

            details: Dict[str, Any] = {'label': transition.label}
            if request.assign_to:
                details['assigned_to'] = request.assign_to
            if signature is not None:
                details['signature_id'] = signature.id
                details['meaning'] = signature.meaning
            if comment is not None:
                details['comment_id'] = comment.id
            entry = self.audit.log_workflow_transition(
                context.user_id,
                context.username,
                context.session_id,
                case.case_id,
                transition.from_status.value,
                transition.to_status.value,
                comment=request.comment,
                ip_address=context.ip_address,
                details=details,
                session=tx,
            )
        logger.info(
            f"Case {case.case_id} moved '{transition.from_status.value}' -> "
            f"'{transition.to_status.value}' by {context.username}"
        )

        self.events.publish(WorkflowTransitioned(
            case_id=case.case_id,
            from_status=transition.from_status.value,
            to_status=transition.to_status.value,
            actor_id=context.user_id,
            actor_username=context.username,
            occurred_at=entry.timestamp,
            assignee=request.assign_to,
            comment=request.comment,
            signature_id=signature.id if signature else None,
        ))

        return TransitionResult(
            case=updated,
            from_status=transition.from_status,
            to_status=transition.to_status,
            audit_entry_id=entry.id,
            signature=signature,
        )

    def start_rework(self, case_id: str, session_id: str, comment: Optional[str] = None,
                     ip_address: Optional[str] = None) -> TransitionResult:
        """Return a rejected case to Draft."""
        return self.attempt_transition(
            TransitionRequest(case_id=case_id, to_status=WorkflowStatus.DRAFT, comment=comment),
            session_id,
            ip_address,
        )

    def available_actions(self, case_id: str, session_id: str) -> List[Transition]:
        """Transitions the session's user could attempt from the case's current state."""
        context = self._auth.require_session(session_id)
        case = self._require_case(case_id)
        from_status = parse_status(case.workflow_status)
        if from_status is None:
            return []

        actions = []
        for transition in successors(from_status):
            if not satisfies(context.permissions, transition.permission):
                logger.debug(f"'{transition.label}' blocked: missing permission '{transition.permission.value}'")
                continue
            if transition.assignee_only and not self._is_assignee(context, case):
                continue
            if transition.owner_only and not self._is_owner(context, case):
                continue
            if transition.non_expedited_only and case.is_expedited:
                continue
            actions.append(transition)
        return actions

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_case(
        self,
        case_id: str,
        assignee_id: str,
        session_id: str,
        due_date: Optional[datetime] = None,
        priority: Union[AssignmentPriority, str] = AssignmentPriority.NORMAL,
        notes: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CaseSnapshot:
        """
        Assign a case without changing its status.

        Audited as ``case_assign``, or ``case_reassign`` when the case
        already had an assignee.
        """
        context = self._auth.require_session(session_id, ip_address)
        case = self._require_case(case_id)
        if not satisfies(context.permissions, Permission.CASE_ASSIGN):
            self._deny(context, Permission.CASE_ASSIGN, case_id, "assign_case")

        problem = self._check_assignee(assignee_id)
        if problem:
            raise PolicyViolation([problem])
        priority = AssignmentPriority(priority)

        previous = case.current_assignee
        updated = self.cases.set_assignee(
            case_id, assignee_id, context.user_id,
            due_date=due_date, priority=priority, notes=notes,
        )
        self.audit.log(AuditEvent(
            action_type=AuditAction.CASE_REASSIGN if previous else AuditAction.CASE_ASSIGN,
            entity_type=EntityType.CASE,
            user_id=context.user_id,
            username=context.username,
            session_id=context.session_id,
            entity_id=case_id,
            field_name='current_assignee',
            old_value=previous,
            new_value=assignee_id,
            details={
                'priority': priority.value,
                'due_date': due_date.isoformat() if due_date else None,
                'notes': notes,
            },
            ip_address=context.ip_address,
        ))
        logger.info(f"Case {case_id} assigned to {assignee_id} by {context.username}")
        return updated

    def reassign_case(
        self,
        case_id: str,
        assignee_id: str,
        session_id: str,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> CaseSnapshot:
        """Move a case that already has an assignee to someone else."""
        case = self._require_case(case_id)
        if not case.current_assignee:
            raise PolicyViolation(["Case has no current assignee to reassign from"])
        return self.assign_case(case_id, assignee_id, session_id, notes=reason, ip_address=ip_address)

    # ------------------------------------------------------------------
    # Comments and notes
    # ------------------------------------------------------------------

    def _log_case_activity(self, context: AuthContext, action: AuditAction, case_id: str,
                           details: Dict[str, Any], session) -> None:
        self.audit.log(AuditEvent(
            action_type=action,
            entity_type=EntityType.CASE,
            user_id=context.user_id,
            username=context.username,
            session_id=context.session_id,
            entity_id=case_id,
            details=details,
            ip_address=context.ip_address,
        ), session=session)

    def add_comment(
        self,
        case_id: str,
        session_id: str,
        content: str,
        comment_type: Union[CommentType, str] = CommentType.GENERAL,
        mentions: Optional[List[str]] = None,
        ip_address: Optional[str] = None,
    ) -> CaseCommentRecord:
        """Add a comment to a case, audited as ``comment_add``."""
        context = self._auth.require_session(session_id, ip_address)
        self._require_case(case_id)
        if not (content or "").strip():
            raise PolicyViolation(["Comment content is required"])
        comment_type = CommentType(comment_type)

        with self.audit.transaction() as tx:
            comment = self.cases.add_comment(
                case_id, context.user_id, comment_type, content, mentions=mentions, session=tx,
            )
            self._log_case_activity(context, AuditAction.COMMENT_ADD, case_id, {
                'comment_type': comment_type.value,
                'comment_id': comment.id,
            }, session=tx)
        logger.info(f"{comment_type.value} comment {comment.id} added to case {case_id} by {context.username}")
        return comment

    def comments_for_case(self, case_id: str, session_id: str) -> List[CaseCommentRecord]:
        self._auth.require_session(session_id)
        return self.cases.comments_for_case(case_id)

    def add_note(
        self,
        case_id: str,
        session_id: str,
        content: str,
        visibility: Union[NoteVisibility, str] = NoteVisibility.TEAM,
        ip_address: Optional[str] = None,
    ) -> CaseNoteRecord:
        """Add an internal note, audited as ``note_add``. Personal notes stay with their author."""
        context = self._auth.require_session(session_id, ip_address)
        self._require_case(case_id)
        if not (content or "").strip():
            raise PolicyViolation(["Note content is required"])
        visibility = NoteVisibility(visibility)

        with self.audit.transaction() as tx:
            note = self.cases.add_note(case_id, context.user_id, visibility, content, session=tx)
            self._log_case_activity(context, AuditAction.NOTE_ADD, case_id, {
                'visibility': visibility.value,
                'note_id': note.id,
            }, session=tx)
        return note

    def notes_for_case(self, case_id: str, session_id: str) -> List[CaseNoteRecord]:
        """Team notes and the caller's own personal notes, newest first."""
        context = self._auth.require_session(session_id)
        return self.cases.notes_for_case(case_id, context.user_id)

    def resolve_note(self, note_id: int, session_id: str, ip_address: Optional[str] = None) -> CaseNoteRecord:
        """
        Mark a note resolved, audited as ``note_resolve``.

        Raises:
            NotFound: no such note, or a personal note of another user
            PolicyViolation: the note is already resolved
        """
        context = self._auth.require_session(session_id, ip_address)
        note = self.cases.get_note(note_id)
        if note is None or (note.visibility == NoteVisibility.PERSONAL.value and note.user_id != context.user_id):
            raise NotFound("Note not found")
        if note.is_resolved:
            raise PolicyViolation(["Note is already resolved"])

        with self.audit.transaction() as tx:
            resolved = self.cases.resolve_note(note_id, context.user_id, session=tx)
            self._log_case_activity(context, AuditAction.NOTE_RESOLVE, note.case_id, {
                'note_id': note_id,
            }, session=tx)
        logger.info(f"Note {note_id} on case {note.case_id} resolved by {context.username}")
        return resolved

    def my_cases(self, session_id: str, limit: int = 50) -> List[AssignedCase]:
        """The caller's current assignments: overdue first, then by due date and priority."""
        context = self._auth.require_session(session_id)
        return self.cases.cases_assigned_to(context.user_id, limit=limit)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def case_history(self, case_id: str) -> List[CaseHistoryEntry]:
        """Workflow transitions and other audited activity on a case, newest first."""
        history = []
        for entry in self.audit.case_audit_trail(case_id):
            details = entry.details_dict
            is_transition = entry.action_type == AuditAction.WORKFLOW_TRANSITION.value
            history.append(CaseHistoryEntry(
                id=entry.id,
                case_id=case_id,
                timestamp=entry.timestamp,
                user_id=entry.user_id,
                username=entry.username or 'System',
                action=entry.action_type,
                from_status=entry.old_value if is_transition else None,
                to_status=entry.new_value if is_transition else None,
                comment=details.get('comment'),
                details=details,
            ))
        return history
