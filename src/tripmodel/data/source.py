"""
Trip Data Sources

Read-only access to a trip table living in a relational backend. Every
source exposes the same small surface used by the workflow: scan the schema,
count rows, read the id range, filter by a set of ids, aggregate and run
generated prediction queries.

DuckDB is the embedded backend used for local files (CSV / Parquet) and
in-memory frames; PostgreSQL lives in ``tripmodel.persistence.database``.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple, Union

import duckdb
import numpy as np
import pandas as pd

from ..ml.serving.query_generation import get_dialect
from .schema import ID_COLUMN


logger = logging.getLogger(__name__)


class TripSource:
    """Common interface of trip sources."""

    dialect: str = "ansi"

    def __init__(self, table: str):
        self.table = table

    def quote(self, name: str) -> str:
        return get_dialect(self.dialect).quote_identifier(name)

    @property
    def quoted_table(self) -> str:
        return self.quote(self.table)

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        raise NotImplementedError

    def columns(self) -> List[str]:
        raise NotImplementedError

    def fetch_by_ids(self, ids: Sequence[int], id_column: str = ID_COLUMN) -> pd.DataFrame:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def count(self) -> int:
        frame = self.query(f"SELECT COUNT(*) AS n FROM {self.quoted_table}")
        return int(frame["n"].iloc[0])

    def id_range(self, id_column: str = ID_COLUMN) -> Optional[Tuple[int, int]]:
        """(min, max) of the id column, or None when the table has no ids."""
        col = self.quote(id_column)
        frame = self.query(f"SELECT MIN({col}) AS lo, MAX({col}) AS hi FROM {self.quoted_table}")
        lo, hi = frame["lo"].iloc[0], frame["hi"].iloc[0]
        if pd.isna(lo) or pd.isna(hi):
            return None
        return int(lo), int(hi)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class DuckDBTripSource(TripSource):
    """Trip table inside a DuckDB database (in-memory by default)."""

    dialect = "duckdb"

    def __init__(self, connection: duckdb.DuckDBPyConnection, table: str = "trips", owns_connection: bool = True):
        super().__init__(table)
        self.connection = connection
        self.owns_connection = owns_connection
        self.logger = logging.getLogger(f"{__name__}.DuckDBTripSource")

    @classmethod
    def connect(cls, database: str = ":memory:", table: str = "trips", read_only: bool = False) -> "DuckDBTripSource":
        """Open an existing DuckDB database file holding the trip table."""
        return cls(duckdb.connect(database=database, read_only=read_only), table=table)

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, table: str = "trips",
                   id_column: Optional[str] = ID_COLUMN) -> "DuckDBTripSource":
        """
        Load a DataFrame into a fresh in-memory table.

        A dense 1-based id column is added when ``id_column`` is absent.
        """
        frame = frame.copy()
        if id_column and id_column not in frame.columns:
            frame.insert(0, id_column, np.arange(1, len(frame) + 1, dtype="int64"))

        source = cls(duckdb.connect(database=":memory:"), table=table)
        source.connection.register("_trip_frame", frame)
        try:
            source.connection.execute(f"CREATE TABLE {source.quoted_table} AS SELECT * FROM _trip_frame")
        finally:
            source.connection.unregister("_trip_frame")

        source.logger.info("trip_source.loaded", extra={
            "origin": "frame",
            "table": table,
            "rows": len(frame)
        })
        return source

    @classmethod
    def from_file(cls, path: Union[str, Path], table: str = "trips",
                  id_column: Optional[str] = ID_COLUMN) -> "DuckDBTripSource":
        """
        Load a CSV or Parquet file into a fresh in-memory table.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file type is not supported
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Trip data file not found: {path}")

        literal = "'" + str(path).replace("'", "''") + "'"
        suffix = path.suffix.lower()
        if suffix in (".csv", ".gz", ".txt"):
            reader = f"read_csv_auto({literal})"
        elif suffix in (".parquet", ".pq"):
            reader = f"read_parquet({literal})"
        else:
            raise ValueError(f"Unsupported trip data file type: {path.suffix}")

        source = cls(duckdb.connect(database=":memory:"), table=table)
        source.connection.execute(f"CREATE TABLE {source.quoted_table} AS SELECT * FROM {reader}")

        if id_column and id_column not in source.columns():
            source._add_id_column(id_column)

        source.logger.info("trip_source.loaded", extra={
            "origin": str(path),
            "table": table,
            "rows": source.count()
        })
        return source

    def _add_id_column(self, id_column: str) -> None:
        staging = self.quote(f"{self.table}_staging")
        self.connection.execute(
            f"CREATE TABLE {staging} AS "
            f"SELECT CAST(row_number() OVER () AS BIGINT) AS {self.quote(id_column)}, * FROM {self.quoted_table}"
        )
        self.connection.execute(f"DROP TABLE {self.quoted_table}")
        self.connection.execute(f"ALTER TABLE {staging} RENAME TO {self.quoted_table}")

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        self.logger.debug("trip_source.query", extra={"sql_length": len(sql)})
        if params is None:
            return self.connection.execute(sql).df()
        return self.connection.execute(sql, list(params)).df()

    def columns(self) -> List[str]:
        return [row[0] for row in self.connection.execute(f"DESCRIBE {self.quoted_table}").fetchall()]

    def fetch_by_ids(self, ids: Sequence[int], id_column: str = ID_COLUMN) -> pd.DataFrame:
        """Rows whose id is in ``ids``, ordered by id."""
        col = self.quote(id_column)
        ids_frame = pd.DataFrame({"sample_id": np.asarray(ids, dtype="int64")})

        self.connection.register("_sample_ids", ids_frame)
        try:
            return self.connection.execute(
                f"SELECT * FROM {self.quoted_table} "
                f"WHERE {col} IN (SELECT sample_id FROM _sample_ids) ORDER BY {col}"
            ).df()
        finally:
            self.connection.unregister("_sample_ids")

    def close(self) -> None:
        if self.owns_connection and self.connection is not None:
            self.connection.close()
            self.connection = None
