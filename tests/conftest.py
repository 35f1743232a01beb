"""
Pytest fixtures for FAERS core tests.

Every test gets a fresh in-memory SQLite database with the built-in roles
seeded, and a controllable clock shared by all services.
"""
from datetime import datetime, timedelta, timezone

import pytest

from faers_core.auth.authentication import AuthService
from faers_core.auth.session_cache import SessionCache
from faers_core.auth.users import UserAdministration
from faers_core.compliance.audit_trail import AuditTrail
from faers_core.config import AuditConfig, DatabaseConfig, PasswordPolicyConfig, SecurityConfig
from faers_core.database.connection import DatabaseManager
from faers_core.database.repositories import UserRepository
from faers_core.database.seed import seed_roles_and_permissions
from faers_core.events import EventDispatcher
from faers_core.workflow.case_store import SqlCaseStore
from faers_core.workflow.engine import WorkflowEngine

DEFAULT_PASSWORD = "Correct#Horse9Battery"
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    manager = DatabaseManager(DatabaseConfig(url="sqlite://", echo=False))
    manager.create_tables()
    seed_roles_and_permissions(manager)
    yield manager
    manager.close()


@pytest.fixture
def security_config():
    return SecurityConfig(
        max_failed_attempts=5,
        lockout_minutes=30,
        session_timeout_minutes=30,
        session_warning_minutes=5,
        single_session_per_user=True,
        bcrypt_rounds=4,
    )


@pytest.fixture
def policy_config():
    return PasswordPolicyConfig(min_length=12, max_length=128, history_count=5, max_age_days=90)


@pytest.fixture
def audit_config():
    return AuditConfig(retention_years=7, export_batch_size=3, default_page_size=100)


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def audit(db, audit_config, clock):
    return AuditTrail(db, config=audit_config, clock=clock)


@pytest.fixture
def session_cache(clock):
    return SessionCache(clock)


@pytest.fixture
def auth(db, security_config, policy_config, audit, session_cache, events, clock):
    return AuthService(
        db,
        config=security_config,
        password_policy=policy_config,
        audit=audit,
        session_cache=session_cache,
        events=events,
        clock=clock,
    )


@pytest.fixture
def admin_service(auth):
    return UserAdministration(auth)


@pytest.fixture
def case_store(db, clock):
    return SqlCaseStore(db, clock=clock)


@pytest.fixture
def engine(auth, case_store):
    return WorkflowEngine(auth, case_store=case_store)


@pytest.fixture
def make_user(db, auth, clock):
    """Create an active user with the given roles and DEFAULT_PASSWORD."""
    users = UserRepository(db)

    def _make(username, roles=(), password=DEFAULT_PASSWORD, email=None, must_change_password=False):
        return users.create(
            username=username,
            email=email or f"{username}@example.com",
            password_hash=auth.hash_new_password(password, username),
            now=clock(),
            first_name=username.capitalize(),
            last_name="Tester",
            role_ids=list(roles),
            must_change_password=must_change_password,
        )

    return _make


@pytest.fixture
def login(auth):
    """Log a user in with DEFAULT_PASSWORD and return the session id."""

    def _login(username, password=DEFAULT_PASSWORD):
        return auth.login(username, password).session.id

    return _login
