"""
Database Infrastructure Package for MagnetHub Billing

Exports database utilities.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    set_db_manager,
    get_session_context,
    init_db,
    close_db,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "set_db_manager",
    "get_session_context",
    "init_db",
    "close_db",
]
