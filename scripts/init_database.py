"""
FAERS CORE - Database Initialization Script
===========================================
Creates all database tables, seeds the built-in roles and makes sure an
administrator account exists.

Usage:
    python scripts/init_database.py [--drop]

Options:
    --drop  Drop existing tables before creating (DESTRUCTIVE!)
"""

import sys
import argparse
import logging
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect

from faers_core.auth.authentication import AuthService
from faers_core.auth.users import DEFAULT_ADMIN_USERNAME, ensure_default_admin
from faers_core.database.connection import get_db_manager
from faers_core.database.seed import seed_roles_and_permissions

logging.basicConfig(level=logging.INFO, format='%(asctime)s | %(levelname)s | %(message)s')
logger = logging.getLogger(__name__)


def run_init(drop_existing: bool = False) -> bool:
    """Run full database initialization."""
    print("\n" + "=" * 60)
    print("FAERS CORE - DATABASE INITIALIZATION")
    print("=" * 60)

    db = get_db_manager()
    if not db.health_check():
        print("\n   Connection failed, see log for details")
        return False

    db.create_tables(drop_existing=drop_existing)
    tables = inspect(db.engine).get_table_names()
    print(f"\n   Created {len(tables)} tables:")
    for table in sorted(tables):
        print(f"   - {table}")

    seed_roles_and_permissions(db)
    print("\n   Seeded built-in roles and permissions")

    password = ensure_default_admin(AuthService(db))
    if password:
        # Shown once on the console only; never logged
        print(f"\n   Administrator '{DEFAULT_ADMIN_USERNAME}' created.")
        print(f"   Initial password: {password}")
        print("   The password must be changed at first login.")
    else:
        print("\n   Administrator account already present")

    print("\nDatabase ready!")
    return True


def main():
    parser = argparse.ArgumentParser(description="Initialize the FAERS core database")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables (DESTRUCTIVE)")
    args = parser.parse_args()

    if args.drop:
        confirm = input("\nThis will DELETE all existing data. Type 'yes' to confirm: ")
        if confirm.lower() != "yes":
            print("Aborted.")
            return

    success = run_init(drop_existing=args.drop)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
