"""
Tests for concurrent access to one file-backed database.

Tests cover:
- Failed-login counting and lockout under parallel wrong passwords
- One winner when two approvers sign the same transition at once
- One live session after parallel logins of the same user
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from faers_core.auth.authentication import AuthService
from faers_core.compliance.audit_trail import AuditTrail
from faers_core.config import DatabaseConfig
from faers_core.database.connection import DatabaseManager
from faers_core.database.enums import AuditAction
from faers_core.database.repositories import UserRepository
from faers_core.database.seed import seed_roles_and_permissions
from faers_core.events import EventDispatcher
from faers_core.exceptions import AccountLocked, IllegalTransition, InvalidCredentials
from faers_core.models import AuditLogFilter
from faers_core.workflow.case_store import SqlCaseStore
from faers_core.workflow.engine import SignatureCredentials, TransitionRequest, WorkflowEngine
from faers_core.workflow.states import WorkflowStatus

from conftest import DEFAULT_PASSWORD

THREADS = 10
CASE_ID = "CASE-2026-0042"


@pytest.fixture
def file_db(tmp_path):
    manager = DatabaseManager(DatabaseConfig(url=f"sqlite:///{tmp_path / 'faers.db'}", echo=False))
    manager.create_tables()
    seed_roles_and_permissions(manager)
    yield manager
    manager.close()


@pytest.fixture
def shared_auth(file_db, security_config, policy_config, audit_config, clock):
    return AuthService(
        file_db,
        config=security_config,
        password_policy=policy_config,
        audit=AuditTrail(file_db, config=audit_config, clock=clock),
        events=EventDispatcher(),
        clock=clock,
    )


@pytest.fixture
def add_user(file_db, shared_auth, clock):
    users = UserRepository(file_db)

    def _add(username, roles=()):
        return users.create(
            username=username,
            email=f"{username}@example.com",
            password_hash=shared_auth.hash_new_password(DEFAULT_PASSWORD, username),
            now=clock(),
            first_name=username.capitalize(),
            last_name="Tester",
            role_ids=list(roles),
        )

    return _add


def _run_together(calls):
    """Start every call at the same moment. Returns (result, error) per call, in order."""
    barrier = threading.Barrier(len(calls))

    def _call(fn):
        barrier.wait()
        try:
            return fn(), None
        except Exception as e:  # collected for the assertions
            return None, e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(_call, calls))


class TestParallelFailedLogins:
    """Tests for lockout under parallel wrong passwords."""

    def test_every_failure_counted(self, file_db, shared_auth, add_user):
        """Should count each failure exactly once and lock the account."""
        user = add_user("jdoe", roles=["data_entry"])

        outcomes = _run_together([
            lambda: shared_auth.login("jdoe", "Wrong#Password1") for _ in range(THREADS)
        ])

        errors = [error for _, error in outcomes]
        assert all(isinstance(e, (InvalidCredentials, AccountLocked)) for e in errors)
        assert sum(isinstance(e, InvalidCredentials) for e in errors) == 4
        assert sum(isinstance(e, AccountLocked) for e in errors) == THREADS - 4

        stored = UserRepository(file_db).find_by_id(user.id)
        assert stored.failed_login_attempts >= 5
        assert stored.locked_until is not None
        with pytest.raises(AccountLocked):
            shared_auth.login("jdoe", DEFAULT_PASSWORD)


class TestParallelTransitions:
    """Tests for simultaneous transitions on one case."""

    def test_one_approval_wins(self, file_db, shared_auth, add_user, clock):
        """Should apply one signed approval and refuse the other."""
        owner = add_user("entry", roles=["data_entry"])
        add_user("qcrev", roles=["qc_reviewer"])
        add_user("boss", roles=["admin"])
        case_store = SqlCaseStore(file_db, clock=clock)
        case_store.create_case(CASE_ID, owner.id, status=WorkflowStatus.QC_COMPLETE)
        engine = WorkflowEngine(shared_auth, case_store=case_store)

        request = TransitionRequest(
            CASE_ID, WorkflowStatus.APPROVED,
            signature=SignatureCredentials(DEFAULT_PASSWORD, "I approve this record"),
        )
        session_ids = [shared_auth.login(name, DEFAULT_PASSWORD).session.id for name in ("qcrev", "boss")]

        outcomes = _run_together([
            lambda sid=sid: engine.attempt_transition(request, sid) for sid in session_ids
        ])

        results = [result for result, _ in outcomes if result is not None]
        errors = [error for _, error in outcomes if error is not None]
        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], IllegalTransition)

        assert case_store.get_case(CASE_ID).workflow_status == "Approved"
        transitions = shared_auth.audit.query(
            AuditLogFilter(action_types=AuditAction.WORKFLOW_TRANSITION, entity_id=CASE_ID)
        )
        assert transitions.total == 1
        signatures = shared_auth.audit.signatures_for_entity("case", CASE_ID)
        assert [s.id for s in signatures] == [results[0].signature.id]


class TestParallelLogins:
    """Tests for single-session enforcement under parallel logins."""

    def test_one_live_session(self, shared_auth, add_user):
        """Should leave exactly one live session after simultaneous logins."""
        user = add_user("medrev", roles=["medical_reviewer"])

        outcomes = _run_together([
            lambda: shared_auth.login("medrev", DEFAULT_PASSWORD) for _ in range(THREADS)
        ])

        assert [error for _, error in outcomes] == [None] * THREADS
        assert shared_auth.active_session_count(user.id) == 1
        session_ids = [result.session.id for result, _ in outcomes]
        assert sum(shared_auth.validate_session(sid).valid for sid in session_ids) == 1
