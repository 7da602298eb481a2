"""
Database configuration for the PostgreSQL trip source.

Connection settings come from ``POSTGRES_*`` environment variables so the
same workflow config runs against local and deployed databases.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class PostgreSQLConfig:
    """PostgreSQL connection settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "taxi"
    username: str = "tripmodel"
    password: str = ""
    connection_timeout: int = 30
    statement_timeout: int = 300000  # 5 minutes; aggregate scans are long

    def get_connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``psycopg2.connect``."""
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connection_timeout,
            "application_name": "tripmodel",
            "options": f"-c statement_timeout={self.statement_timeout}",
        }

    def validate(self) -> List[str]:
        errors = []
        if not self.host:
            errors.append("host must be set")
        if not 0 < self.port < 65536:
            errors.append("port must be between 1 and 65535")
        if not self.database:
            errors.append("database must be set")
        if self.connection_timeout <= 0:
            errors.append("connection_timeout must be positive")
        return errors


def get_postgresql_config(environment: Optional[str] = None) -> PostgreSQLConfig:
    """PostgreSQL configuration for the current environment."""
    environment = environment or os.getenv("ENVIRONMENT", "development")

    config = PostgreSQLConfig(
        host=os.getenv("POSTGRES_HOST", "localhost"),
        port=int(os.getenv("POSTGRES_PORT", "5432")),
        database=os.getenv("POSTGRES_DB", "taxi"),
        username=os.getenv("POSTGRES_USER", "tripmodel"),
        password=os.getenv("POSTGRES_PASSWORD", ""),
        connection_timeout=int(os.getenv("POSTGRES_CONNECTION_TIMEOUT", "30")),
        statement_timeout=int(os.getenv("POSTGRES_STATEMENT_TIMEOUT", "300000")),
    )

    logging.getLogger(__name__).debug("postgres_config.loaded", extra={
        "environment": environment,
        "host": config.host,
        "port": config.port,
        "database": config.database
    })

    return config
