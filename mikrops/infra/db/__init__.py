"""Database infrastructure module.

Key components:
- models: SQLAlchemy ORM models (devices, PPP profiles, customers, orphans)
- session: Database session management with connection pooling
"""

from mikrops.infra.db.models import Base, Customer, Device, OrphanedObject, PPPProfile
from mikrops.infra.db.session import DatabaseSessionManager

__all__ = [
    # Models
    "Base",
    "Device",
    "PPPProfile",
    "Customer",
    "OrphanedObject",
    # Session management
    "DatabaseSessionManager",
]
