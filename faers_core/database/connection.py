"""
FAERS CORE - Database Connection Manager
========================================
Connection pool and session management.
"""

import logging
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from ..config import DatabaseConfig, get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Database connection manager with connection pooling.

    Features:
    - Connection pooling for server databases
    - Shared single connection for in-memory SQLite
    - Session management with context managers
    - Health checks
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        """
        Initialize database manager.

        Args:
            config: Database configuration (uses settings if not provided)
        """
        self.config = config or get_settings().database
        self._engine = None
        self._session_factory = None
        self._initialized = False

    def initialize(self) -> None:
        """Initialize database engine and session factory."""
        if self._initialized:
            return

        engine_kwargs = {"echo": self.config.echo}
        if self.config.is_sqlite:
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.config.is_memory:
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs.update(
                poolclass=QueuePool,
                pool_size=self.config.pool_size,
                max_overflow=self.config.max_overflow,
                pool_timeout=self.config.pool_timeout,
                pool_recycle=self.config.pool_recycle,
                pool_pre_ping=True,
            )

        try:
            self._engine = create_engine(self.config.url, **engine_kwargs)
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

        if self.config.is_sqlite:
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )

        self._initialized = True
        logger.info(f"Database connected: {self._engine.url.render_as_string(hide_password=True)}")

    @property
    def engine(self):
        """Get SQLAlchemy engine."""
        if not self._initialized:
            self.initialize()
        return self._engine

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic commit and rollback.

        Usage:
            with db_manager.session() as session:
                users = session.query(User).all()
        """
        if not self._initialized:
            self.initialize()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Session error: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        try:
            with self.session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    def close(self) -> None:
        """Close database connections."""
        if self._engine:
            self._engine.dispose()
            self._initialized = False
            logger.info("Database connections closed")

    def create_tables(self, drop_existing: bool = False) -> None:
        """Create the core tables, optionally dropping them first."""
        from .models import Base

        if drop_existing:
            Base.metadata.drop_all(self.engine)
            logger.warning("Dropped all existing tables")

        Base.metadata.create_all(self.engine)
        logger.info("Created all database tables")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Singleton instance
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get singleton database manager, configured from settings."""
    global _db_manager

    if _db_manager is None:
        _db_manager = DatabaseManager()
        _db_manager.initialize()

    return _db_manager


def reset_db_manager() -> None:
    """Dispose and forget the singleton manager."""
    global _db_manager

    if _db_manager:
        _db_manager.close()
        _db_manager = None
