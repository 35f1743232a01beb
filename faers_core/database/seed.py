"""
FAERS CORE - Reference Data Seeding
===================================
Idempotent seeding of the permission catalog and built-in roles.
"""

import logging
from typing import Optional

from ..permissions import BUILTIN_ROLES, PERMISSION_CATALOG
from .connection import DatabaseManager, get_db_manager
from .models import Permission, Role

logger = logging.getLogger(__name__)


def seed_roles_and_permissions(db: Optional[DatabaseManager] = None) -> None:
    """Insert or refresh every catalog permission and built-in role."""
    db = db or get_db_manager()

    with db.session() as session:
        permissions = {}
        for permission, (category, description) in PERMISSION_CATALOG.items():
            row = session.get(Permission, permission.value)
            if row is None:
                row = Permission(permission_id=permission.value, category=category, description=description)
                session.add(row)
            else:
                row.category = category
                row.description = description
            permissions[permission.value] = row

        for role_id, (name, description, granted) in BUILTIN_ROLES.items():
            row = session.get(Role, role_id)
            if row is None:
                row = Role(role_id=role_id, name=name, description=description, is_system=True)
                session.add(row)
            row.name = name
            row.description = description
            row.permissions = [permissions[p.value] for p in granted if p.value in permissions]

    logger.info(f"Seeded {len(PERMISSION_CATALOG)} permissions and {len(BUILTIN_ROLES)} roles")
