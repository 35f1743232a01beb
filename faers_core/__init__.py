"""
FAERS CORE
==========
Access-control, audit-trail and case-workflow core for the FAERS
adverse-event reporting system.

Subpackages:
- auth: credentials, sessions, permissions and user administration
- compliance: append-only audit trail and electronic signatures
- workflow: case status state machine
- database: SQLAlchemy models, connection management and repositories
"""

__version__ = "1.0.0"
