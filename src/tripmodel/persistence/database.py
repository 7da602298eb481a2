"""
PostgreSQL trip source.

Runs the workflow's reads (id range, id filter, aggregates, generated
prediction queries) against a live trip table through psycopg2. Only the
selected rows or aggregate results leave the database.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, List, Optional, Sequence

import numpy as np
import pandas as pd
import psycopg2

from ..data.schema import ID_COLUMN
from ..data.source import TripSource
from .config import PostgreSQLConfig, get_postgresql_config


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class PostgresTripSource(TripSource):
    """Trip table in PostgreSQL."""

    dialect = "postgres"

    def __init__(self, config: Optional[PostgreSQLConfig] = None, table: str = "trips", connection=None):
        super().__init__(table)
        self.config = config or get_postgresql_config()
        self.logger = logging.getLogger(f"{__name__}.PostgresTripSource")

        # Performance monitoring
        self._query_count = 0
        self._total_query_time = 0.0

        self._connection = connection if connection is not None else self._connect()

    def _connect(self):
        errors = self.config.validate()
        if errors:
            raise DatabaseError(f"Invalid PostgreSQL configuration: {'; '.join(errors)}")

        try:
            connection = psycopg2.connect(**self.config.get_connect_kwargs())
        except psycopg2.Error as e:
            self.logger.error(f"Failed to connect to PostgreSQL: {e}")
            raise DatabaseError(f"PostgreSQL connection failed: {e}") from e

        # reads only
        connection.set_session(readonly=True, autocommit=True)
        self.logger.info("PostgreSQL connection established", extra={
            "host": self.config.host,
            "database": self.config.database,
            "table": self.table
        })
        return connection

    @contextmanager
    def _cursor(self):
        cursor = self._connection.cursor()
        try:
            yield cursor
        except psycopg2.Error as e:
            raise DatabaseError(f"PostgreSQL operation failed: {e}") from e
        finally:
            cursor.close()

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        start_time = time.time()

        with self._cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
            names = [desc[0] for desc in cursor.description]

        self._update_metrics(time.time() - start_time)

        # NUMERIC columns arrive as Decimal
        return pd.DataFrame.from_records(rows, columns=names).infer_objects()

    def columns(self) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT * FROM {self.quoted_table} LIMIT 0")
            return [desc[0] for desc in cursor.description]

    def fetch_by_ids(self, ids: Sequence[int], id_column: str = ID_COLUMN) -> pd.DataFrame:
        col = self.quote(id_column)
        id_list = [int(i) for i in np.asarray(ids, dtype="int64")]
        return self.query(
            f"SELECT * FROM {self.quoted_table} WHERE {col} = ANY(%s) ORDER BY {col}",
            (id_list,)
        )

    def _update_metrics(self, query_time: float):
        self._query_count += 1
        self._total_query_time += query_time

    def get_performance_metrics(self):
        return {
            "query_count": self._query_count,
            "total_query_time": self._total_query_time,
            "average_query_time": self._total_query_time / max(self._query_count, 1)
        }

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self.logger.info("PostgreSQL connection closed", extra=self.get_performance_metrics())
