"""
FAERS CORE - Configuration
==========================
Security, password policy, database and audit settings.

Values come from environment variables (optionally loaded from a .env file
at the project root). Every setting has a compliant default.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache

from dotenv import load_dotenv

# Load environment variables
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, 'true' if default else 'false').lower() == 'true'


@dataclass
class SecurityConfig:
    """Login lockout and session timeout settings."""

    max_failed_attempts: int = field(default_factory=lambda: _env_int('FAERS_MAX_FAILED_ATTEMPTS', 5))
    lockout_minutes: int = field(default_factory=lambda: _env_int('FAERS_LOCKOUT_MINUTES', 30))
    session_timeout_minutes: int = field(default_factory=lambda: _env_int('FAERS_SESSION_TIMEOUT_MINUTES', 30))
    session_warning_minutes: int = field(default_factory=lambda: _env_int('FAERS_SESSION_WARNING_MINUTES', 5))
    single_session_per_user: bool = field(default_factory=lambda: _env_bool('FAERS_SINGLE_SESSION_PER_USER', True))
    bcrypt_rounds: int = field(default_factory=lambda: _env_int('FAERS_BCRYPT_ROUNDS', 12))

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self.session_timeout_minutes)

    @property
    def session_warning(self) -> timedelta:
        return timedelta(minutes=self.session_warning_minutes)


@dataclass
class PasswordPolicyConfig:
    """Password complexity, history and expiry settings."""

    min_length: int = field(default_factory=lambda: _env_int('FAERS_PASSWORD_MIN_LENGTH', 12))
    max_length: int = field(default_factory=lambda: _env_int('FAERS_PASSWORD_MAX_LENGTH', 128))
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True
    special_characters: str = "!@#$%^&*()_+-=[]{}|;:,.<>?"
    history_count: int = field(default_factory=lambda: _env_int('FAERS_PASSWORD_HISTORY_COUNT', 5))
    max_age_days: int = field(default_factory=lambda: _env_int('FAERS_PASSWORD_MAX_AGE_DAYS', 90))


@dataclass
class DatabaseConfig:
    """Database connection settings."""

    url: str = field(default_factory=lambda: _env_str('DATABASE_URL', 'sqlite:///faers_core.db'))

    # Connection pool settings (ignored for SQLite)
    pool_size: int = field(default_factory=lambda: _env_int('DB_POOL_SIZE', 10))
    max_overflow: int = field(default_factory=lambda: _env_int('DB_MAX_OVERFLOW', 20))
    pool_timeout: int = field(default_factory=lambda: _env_int('DB_POOL_TIMEOUT', 30))
    pool_recycle: int = field(default_factory=lambda: _env_int('DB_POOL_RECYCLE', 1800))

    # Echo SQL statements (for debugging)
    echo: bool = field(default_factory=lambda: _env_bool('DB_ECHO', False))

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (self.url in ('sqlite://', 'sqlite:///:memory:') or ':memory:' in self.url)


@dataclass
class AuditConfig:
    """Audit trail retention and export settings."""

    retention_years: int = field(default_factory=lambda: _env_int('FAERS_AUDIT_RETENTION_YEARS', 7))
    export_batch_size: int = field(default_factory=lambda: _env_int('FAERS_AUDIT_EXPORT_BATCH_SIZE', 500))
    default_page_size: int = 100


@dataclass
class Settings:
    security: SecurityConfig = field(default_factory=SecurityConfig)
    password_policy: PasswordPolicyConfig = field(default_factory=PasswordPolicyConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
