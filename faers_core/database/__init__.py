"""
FAERS CORE - Database Package
=============================
SQLAlchemy models, connection management and repositories.

Repositories live in ``faers_core.database.repositories`` and are imported
from there directly.
"""

from .connection import DatabaseManager, get_db_manager, reset_db_manager
from .enums import AuditAction, EntityType, AssignmentPriority
from .models import Base

__all__ = [
    'DatabaseManager',
    'get_db_manager',
    'reset_db_manager',
    'AuditAction',
    'EntityType',
    'AssignmentPriority',
    'Base',
]
