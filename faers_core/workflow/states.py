"""
FAERS CORE - Workflow States
============================
Case workflow states and the static transition table.

Adding a state or a transition is a change to ``TRANSITIONS`` only; the
engine consumes the table generically.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from ..permissions import Permission


class WorkflowStatus(str, Enum):
    """Case workflow states."""
    DRAFT = "Draft"
    DATA_ENTRY_COMPLETE = "Data Entry Complete"
    IN_MEDICAL_REVIEW = "In Medical Review"
    MEDICAL_REVIEW_COMPLETE = "Medical Review Complete"
    IN_QC_REVIEW = "In QC Review"
    QC_COMPLETE = "QC Complete"
    APPROVED = "Approved"
    SUBMITTED = "Submitted"
    ACKNOWLEDGED = "Acknowledged"
    REJECTED = "Rejected"
    PENDING_PSR = "Pending PSR"
    INCLUDED_IN_PSR = "Included in PSR"


# States in which a case has a current reviewer
REVIEW_STATES: FrozenSet[WorkflowStatus] = frozenset({
    WorkflowStatus.IN_MEDICAL_REVIEW,
    WorkflowStatus.IN_QC_REVIEW,
})


@dataclass(frozen=True)
class Transition:
    """One legal (from, to) pair with its permission and preconditions."""
    from_status: WorkflowStatus
    to_status: WorkflowStatus
    permission: Permission
    label: str
    requires_comment: bool = False
    requires_assignment: bool = False
    requires_signature: bool = False
    assignee_only: bool = False
    owner_only: bool = False
    requires_export: bool = False
    non_expedited_only: bool = False

    @property
    def action_name(self) -> str:
        """Signature action, e.g. ``workflow_qc_complete``."""
        return "workflow_" + "_".join(self.to_status.value.lower().split())

    def to_dict(self) -> dict:
        return {
            'from': self.from_status.value,
            'to': self.to_status.value,
            'permission': self.permission.value,
            'label': self.label,
            'requires_comment': self.requires_comment,
            'requires_assignment': self.requires_assignment,
            'requires_signature': self.requires_signature,
        }


S = WorkflowStatus
P = Permission

TRANSITIONS: Tuple[Transition, ...] = (
    Transition(S.DRAFT, S.DATA_ENTRY_COMPLETE, P.WORKFLOW_SUBMIT_REVIEW, "Submit for Review"),
    Transition(S.DATA_ENTRY_COMPLETE, S.IN_MEDICAL_REVIEW, P.CASE_ASSIGN, "Assign to Medical Review",
               requires_assignment=True),
    Transition(S.IN_MEDICAL_REVIEW, S.MEDICAL_REVIEW_COMPLETE, P.WORKFLOW_APPROVE, "Complete Medical Review",
               assignee_only=True),
    Transition(S.IN_MEDICAL_REVIEW, S.REJECTED, P.WORKFLOW_REJECT, "Reject",
               requires_comment=True),
    Transition(S.MEDICAL_REVIEW_COMPLETE, S.IN_QC_REVIEW, P.CASE_ASSIGN, "Assign to QC Review",
               requires_assignment=True),
    Transition(S.IN_QC_REVIEW, S.QC_COMPLETE, P.WORKFLOW_APPROVE, "Complete QC Review",
               assignee_only=True),
    Transition(S.IN_QC_REVIEW, S.REJECTED, P.WORKFLOW_REJECT, "Reject",
               requires_comment=True),
    Transition(S.QC_COMPLETE, S.APPROVED, P.WORKFLOW_APPROVE, "Approve for Submission",
               requires_signature=True),
    Transition(S.APPROVED, S.SUBMITTED, P.WORKFLOW_SUBMIT_FDA, "Mark as Submitted",
               requires_signature=True, requires_export=True),
    Transition(S.APPROVED, S.PENDING_PSR, P.WORKFLOW_SUBMIT_FDA, "Add to PSR",
               non_expedited_only=True),
    Transition(S.PENDING_PSR, S.INCLUDED_IN_PSR, P.WORKFLOW_SUBMIT_FDA, "Include in PSR",
               non_expedited_only=True),
    Transition(S.SUBMITTED, S.ACKNOWLEDGED, P.WORKFLOW_SUBMIT_FDA, "Record Acknowledgment"),
    Transition(S.REJECTED, S.DRAFT, P.CASE_EDIT_OWN, "Start Rework",
               owner_only=True),
)

del S, P


def parse_status(value) -> Optional[WorkflowStatus]:
    """Return the matching status, or None for an unknown value."""
    try:
        return WorkflowStatus(value)
    except ValueError:
        return None


def find_transition(from_status, to_status) -> Optional[Transition]:
    """Look up the legal transition for a (from, to) pair."""
    for transition in TRANSITIONS:
        if transition.from_status == from_status and transition.to_status == to_status:
            return transition
    return None


def successors(from_status) -> List[Transition]:
    """Every transition leaving ``from_status``, in table order."""
    return [t for t in TRANSITIONS if t.from_status == from_status]
