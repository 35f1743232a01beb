"""
FAERS CORE - Case Workflow
==========================
Workflow states, the transition table, the case store and the engine that
applies transitions.
"""

from .states import TRANSITIONS, Transition, WorkflowStatus, find_transition, successors
from .case_store import (
    AssignedCase,
    CaseCommentRecord,
    CaseNoteRecord,
    CaseSnapshot,
    CaseStore,
    SqlCaseStore,
)
from .engine import (
    CaseHistoryEntry,
    SignatureCredentials,
    TransitionRequest,
    TransitionResult,
    WorkflowEngine,
)

__all__ = [
    'TRANSITIONS',
    'Transition',
    'WorkflowStatus',
    'find_transition',
    'successors',
    'AssignedCase',
    'CaseCommentRecord',
    'CaseNoteRecord',
    'CaseSnapshot',
    'CaseStore',
    'SqlCaseStore',
    'CaseHistoryEntry',
    'SignatureCredentials',
    'TransitionRequest',
    'TransitionResult',
    'WorkflowEngine',
]
