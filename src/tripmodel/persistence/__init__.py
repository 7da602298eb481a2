"""
PostgreSQL persistence for the trip table.
"""

from .config import PostgreSQLConfig, get_postgresql_config
from .database import DatabaseError, PostgresTripSource

__all__ = [
    "DatabaseError",
    "PostgreSQLConfig",
    "PostgresTripSource",
    "get_postgresql_config",
]
