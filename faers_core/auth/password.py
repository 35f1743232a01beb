"""
FAERS CORE - Credential Store
=============================
Password hashing, policy validation, reuse history and expiry for
21 CFR Part 11 compliance.

Policy defaults:
- Minimum 12 characters
- At least 1 uppercase letter, 1 lowercase letter, 1 digit, 1 special character
- Must not contain the username
- Must not be a well-known password
- Cannot be the current password or any of the last 5
- Must be changed every 90 days
"""

import re
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import bcrypt

from ..config import PasswordPolicyConfig, get_settings
from ..database.repositories import PasswordHistoryRepository, UserRepository
from ..models import PolicyValidation
from ..utils.timeutils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# bcrypt only consumes the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72

TEMP_PASSWORD_SPECIALS = "!@#$%^&*"

# Compared case-insensitively against the whole password
COMMON_PASSWORDS = frozenset([
    "password", "password123", "password1234", "password123!", "passw0rd1234",
    "administrator", "administrator1", "welcome12345", "qwertyuiop12", "letmein12345",
    "faerspassword", "faers1234567",
])


class PasswordPolicy:
    """Password complexity and expiry rules."""

    def __init__(self, config: Optional[PasswordPolicyConfig] = None):
        self.config = config or get_settings().password_policy

    def validate(self, password: str, username: Optional[str] = None) -> PolicyValidation:
        """
        Validate password against policy.

        Returns:
            PolicyValidation listing every unmet rule
        """
        cfg = self.config
        errors = []

        if len(password) < cfg.min_length:
            errors.append(f"Password must be at least {cfg.min_length} characters long")

        if len(password) > cfg.max_length:
            errors.append(f"Password cannot exceed {cfg.max_length} characters")

        if cfg.require_uppercase and not re.search(r'[A-Z]', password):
            errors.append("Password must contain at least one uppercase letter")

        if cfg.require_lowercase and not re.search(r'[a-z]', password):
            errors.append("Password must contain at least one lowercase letter")

        if cfg.require_digit and not re.search(r'\d', password):
            errors.append("Password must contain at least one number")

        if cfg.require_special and not any(c in cfg.special_characters for c in password):
            errors.append("Password must contain at least one special character")

        if username and username.lower() in password.lower():
            errors.append("Password cannot contain your username")

        if password.lower() in COMMON_PASSWORDS:
            errors.append("Password is too common")

        return PolicyValidation(valid=not errors, errors=errors)

    def check_expiry(self, password_changed_at: Optional[datetime], now: datetime) -> Tuple[bool, int]:
        """
        Check if password has expired.

        Returns:
            Tuple of (is_expired, days_until_expiry)
        """
        if password_changed_at is None:
            return True, 0

        age_days = (ensure_utc(now) - ensure_utc(password_changed_at)).days
        days_remaining = max(0, self.config.max_age_days - age_days)
        return age_days >= self.config.max_age_days, days_remaining

    def requirements(self) -> List[str]:
        """Human-readable policy requirements."""
        cfg = self.config
        requirements = [f"At least {cfg.min_length} characters"]
        if cfg.require_uppercase:
            requirements.append("At least one uppercase letter")
        if cfg.require_lowercase:
            requirements.append("At least one lowercase letter")
        if cfg.require_digit:
            requirements.append("At least one number")
        if cfg.require_special:
            requirements.append("At least one special character")
        requirements.append("Cannot contain your username")
        requirements.append("Cannot be a commonly used password")
        requirements.append(f"Cannot reuse your last {cfg.history_count} passwords")
        requirements.append(f"Expires every {cfg.max_age_days} days")
        return requirements


class CredentialStore:
    """Secure password hashing, verification and reuse history."""

    def __init__(
        self,
        users: UserRepository,
        history: PasswordHistoryRepository,
        policy: Optional[PasswordPolicy] = None,
        rounds: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._users = users
        self._history = history
        self.policy = policy or PasswordPolicy()
        self.rounds = rounds  # bcrypt work factor
        self._clock = clock

    @staticmethod
    def _encode(password: str) -> bytes:
        return password.encode('utf-8')[:BCRYPT_MAX_BYTES]

    def hash_password(self, password: str) -> str:
        """
        Hash a password with a fresh salt.

        Returns:
            bcrypt hash string
        """
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(self._encode(password), salt).decode('utf-8')

    def verify_password(self, password: str, hashed: str) -> bool:
        """
        Verify a password against its hash.

        Returns:
            True if password matches
        """
        try:
            return bcrypt.checkpw(self._encode(password), hashed.encode('utf-8'))
        except ValueError as e:
            logger.error(f"Password verification error: {e}")
            return False

    def validate_policy(self, password: str, username: Optional[str] = None) -> PolicyValidation:
        return self.policy.validate(password, username)

    def check_history(self, user_id: str, password: str) -> bool:
        """
        Check if password matches the current one or any recent one.

        Returns:
            True if the password was used before (must be rejected)
        """
        hashes = self._history.recent(user_id, self.policy.config.history_count)
        current = self._users.get_password_hash(user_id)
        if current:
            hashes.insert(0, current)

        return any(self.verify_password(password, old_hash) for old_hash in hashes)

    def record_history(self, user_id: str, password_hash: str, session=None) -> None:
        """Archive a retired hash, keeping history_count + 1 entries."""
        self._history.add(
            user_id,
            password_hash,
            self._clock(),
            keep=self.policy.config.history_count + 1,
            session=session,
        )

    def is_expired(self, password_changed_at: Optional[datetime]) -> bool:
        expired, _ = self.policy.check_expiry(password_changed_at, self._clock())
        return expired

    def days_until_expiration(self, password_changed_at: Optional[datetime]) -> int:
        _, days = self.policy.check_expiry(password_changed_at, self._clock())
        return days

    def password_expires_at(self, password_changed_at: datetime) -> datetime:
        return ensure_utc(password_changed_at) + timedelta(days=self.policy.config.max_age_days)

    def generate_temporary_password(self, username: Optional[str] = None) -> str:
        """
        Generate a random password that satisfies the policy.

        Length is max(16, min_length) and one character of each required
        class is always included.
        """
        cfg = self.policy.config
        length = max(16, cfg.min_length)
        alphabet = string.ascii_letters + string.digits + TEMP_PASSWORD_SPECIALS
        rng = secrets.SystemRandom()

        while True:
            chars = []
            if cfg.require_uppercase:
                chars.append(secrets.choice(string.ascii_uppercase))
            if cfg.require_lowercase:
                chars.append(secrets.choice(string.ascii_lowercase))
            if cfg.require_digit:
                chars.append(secrets.choice(string.digits))
            if cfg.require_special:
                chars.append(secrets.choice(TEMP_PASSWORD_SPECIALS))
            while len(chars) < length:
                chars.append(secrets.choice(alphabet))
            rng.shuffle(chars)

            password = ''.join(chars)
            if self.policy.validate(password, username).valid:
                return password

    def requirements(self) -> List[str]:
        return self.policy.requirements()
