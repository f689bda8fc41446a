"""
Database Infrastructure Package for the Billing Engine

Exports the engine manager and unit-of-work helpers.
"""

from billing_engine.infrastructure.db.database import (
    DatabaseManager,
    close_db,
    get_db_manager,
    init_db,
    normalize_database_url,
    session_scope,
)


__all__ = [
    "DatabaseManager",
    "close_db",
    "get_db_manager",
    "init_db",
    "normalize_database_url",
    "session_scope",
]
