"""
Tests for the credential store.

Tests cover:
- Policy validation and the full list of failed rules
- bcrypt hashing and verification
- Password history and expiry
- Temporary password generation
"""
from datetime import timedelta

import pytest

from faers_core.auth.password import CredentialStore, PasswordPolicy
from faers_core.database.repositories import PasswordHistoryRepository, UserRepository

from conftest import DEFAULT_PASSWORD


@pytest.fixture
def policy(policy_config):
    return PasswordPolicy(policy_config)


@pytest.fixture
def credentials(db, policy, clock):
    return CredentialStore(
        UserRepository(db),
        PasswordHistoryRepository(db),
        policy=policy,
        rounds=4,
        clock=clock,
    )


class TestPasswordPolicy:
    """Tests for PasswordPolicy.validate."""

    def test_accepts_compliant_password(self, policy):
        """Should accept a password meeting every rule."""
        result = policy.validate(DEFAULT_PASSWORD, "jdoe")
        assert result.valid
        assert result.errors == []

    def test_reports_length_violation(self, policy):
        """Should report the length rule for short passwords."""
        result = policy.validate("Sh0rt!pw", "jdoe")
        assert not result.valid
        assert "Password must be at least 12 characters long" in result.errors

    def test_reports_every_failed_rule(self, policy):
        """Should list all unmet rules, not just the first."""
        result = policy.validate("abc", None)
        assert "Password must be at least 12 characters long" in result.errors
        assert "Password must contain at least one uppercase letter" in result.errors
        assert "Password must contain at least one number" in result.errors
        assert "Password must contain at least one special character" in result.errors
        assert "Password must contain at least one lowercase letter" not in result.errors

    def test_rejects_username_case_insensitively(self, policy):
        """Should reject passwords that contain the username in any case."""
        result = policy.validate("Xx#JDOE2026yy", "jdoe")
        assert "Password cannot contain your username" in result.errors

    def test_reports_maximum_length(self, policy):
        """Should reject passwords beyond the maximum length."""
        result = policy.validate("Aa1!" * 40, None)
        assert "Password cannot exceed 128 characters" in result.errors

    def test_rejects_common_password(self, policy):
        """Should reject a well-known password whatever its case."""
        result = policy.validate("Password123!", None)
        assert result.errors == ["Password is too common"]
        assert "Cannot be a commonly used password" in policy.requirements()

    def test_requirements_mention_history(self, policy):
        """Should describe the reuse rule in the requirement list."""
        assert "Cannot reuse your last 5 passwords" in policy.requirements()


class TestPasswordExpiry:
    """Tests for PasswordPolicy.check_expiry."""

    def test_fresh_password_not_expired(self, policy, clock):
        """Should report the full max age for a password changed now."""
        expired, days = policy.check_expiry(clock(), clock())
        assert not expired
        assert days == 90

    def test_old_password_expired(self, policy, clock):
        """Should expire a password older than the max age."""
        expired, days = policy.check_expiry(clock() - timedelta(days=91), clock())
        assert expired
        assert days == 0

    def test_missing_change_date_is_expired(self, policy, clock):
        """Should treat an unknown change date as expired."""
        assert policy.check_expiry(None, clock()) == (True, 0)


class TestHashing:
    """Tests for CredentialStore hashing."""

    def test_hash_verifies(self, credentials):
        """Should verify a password against its own hash."""
        hashed = credentials.hash_password(DEFAULT_PASSWORD)
        assert credentials.verify_password(DEFAULT_PASSWORD, hashed)
        assert not credentials.verify_password("Wrong#Password1", hashed)

    def test_hashes_are_salted(self, credentials):
        """Should produce different hashes for the same password."""
        first = credentials.hash_password(DEFAULT_PASSWORD)
        second = credentials.hash_password(DEFAULT_PASSWORD)
        assert first != second
        assert credentials.verify_password(DEFAULT_PASSWORD, first)
        assert credentials.verify_password(DEFAULT_PASSWORD, second)

    def test_malformed_hash_does_not_verify(self, credentials):
        """Should return False rather than raise for a malformed hash."""
        assert not credentials.verify_password(DEFAULT_PASSWORD, "not-a-bcrypt-hash")

    def test_long_passwords_are_accepted(self, credentials):
        """Should hash passwords longer than bcrypt's 72 byte input."""
        password = "Aa1!" * 25
        assert credentials.verify_password(password, credentials.hash_password(password))


class TestHistory:
    """Tests for password reuse detection."""

    def test_current_password_counts_as_reuse(self, credentials, make_user):
        """Should treat the current password as reused."""
        user = make_user("jdoe")
        assert credentials.check_history(user.id, DEFAULT_PASSWORD)

    def test_recorded_password_counts_as_reuse(self, credentials, make_user):
        """Should detect passwords in the recorded history."""
        user = make_user("jdoe")
        old = "Older#Secret2025"
        credentials.record_history(user.id, credentials.hash_password(old))
        assert credentials.check_history(user.id, old)
        assert not credentials.check_history(user.id, "Brand#NewSecret77")

    def test_history_is_pruned(self, db, credentials, make_user):
        """Should keep only history_count + 1 archived hashes."""
        user = make_user("jdoe")
        for i in range(10):
            credentials.record_history(user.id, credentials.hash_password(f"Archived#{i}Secret"))
        assert len(PasswordHistoryRepository(db).recent(user.id, 100)) == 6


class TestTemporaryPassword:
    """Tests for generate_temporary_password."""

    def test_satisfies_policy(self, credentials, policy):
        """Should always satisfy the policy."""
        for _ in range(20):
            password = credentials.generate_temporary_password("jdoe")
            assert policy.validate(password, "jdoe").valid
            assert len(password) >= 16

    def test_is_random(self, credentials):
        """Should not repeat between calls."""
        assert credentials.generate_temporary_password() != credentials.generate_temporary_password()
