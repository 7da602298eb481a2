"""
Unit tests for the PostgreSQL trip source.

The psycopg2 connection is mocked; tests check the SQL and parameters sent
to the driver and the conversion of results and driver errors.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from tripmodel.persistence.config import PostgreSQLConfig
from tripmodel.persistence.database import DatabaseError, PostgresTripSource


class TestPostgresTripSource:
    """Reads through a mocked psycopg2 connection."""

    def setup_method(self):
        self.connection = MagicMock()
        self.cursor = self.connection.cursor.return_value
        self.source = PostgresTripSource(PostgreSQLConfig(), table="trips", connection=self.connection)

    def test_query_builds_frame(self):
        self.cursor.fetchall.return_value = [(1, 2.5), (2, 3.5)]
        self.cursor.description = [("id",), ("x",)]

        frame = self.source.query("SELECT id, x FROM trips")

        self.cursor.execute.assert_called_once_with("SELECT id, x FROM trips", None)
        assert frame.columns.tolist() == ["id", "x"]
        assert frame["x"].tolist() == [2.5, 3.5]
        self.cursor.close.assert_called_once()

    def test_fetch_by_ids_uses_any(self):
        self.cursor.fetchall.return_value = []
        self.cursor.description = [("id",)]

        self.source.fetch_by_ids([3, 1])

        sql, params = self.cursor.execute.call_args[0]
        assert sql == 'SELECT * FROM "trips" WHERE "id" = ANY(%s) ORDER BY "id"'
        assert params == ([3, 1],)

    def test_id_range(self):
        self.cursor.fetchall.return_value = [(1, 400)]
        self.cursor.description = [("lo",), ("hi",)]

        assert self.source.id_range() == (1, 400)

    def test_columns(self):
        self.cursor.description = [("id",), ("fare_amount",)]

        assert self.source.columns() == ["id", "fare_amount"]
        assert "LIMIT 0" in self.cursor.execute.call_args[0][0]

    def test_driver_errors_are_wrapped(self):
        self.cursor.execute.side_effect = psycopg2.ProgrammingError("relation does not exist")

        with pytest.raises(DatabaseError, match="relation does not exist"):
            self.source.count()
        self.cursor.close.assert_called_once()

    def test_metrics_and_close(self):
        self.cursor.fetchall.return_value = [(5,)]
        self.cursor.description = [("n",)]

        assert self.source.count() == 5
        assert self.source.get_performance_metrics()["query_count"] == 1

        self.source.close()
        self.connection.close.assert_called_once()

    def test_dialect(self):
        assert self.source.dialect == "postgres"


class TestPostgresConnect:
    """Opening connections."""

    def test_connect_failure(self):
        with patch("tripmodel.persistence.database.psycopg2.connect",
                   side_effect=psycopg2.OperationalError("could not connect")):
            with pytest.raises(DatabaseError, match="connection failed"):
                PostgresTripSource(PostgreSQLConfig())

    def test_invalid_config(self):
        with pytest.raises(DatabaseError, match="Invalid PostgreSQL configuration"):
            PostgresTripSource(PostgreSQLConfig(host=""))

    def test_session_is_read_only(self):
        connection = MagicMock()
        with patch("tripmodel.persistence.database.psycopg2.connect", return_value=connection) as connect:
            PostgresTripSource(PostgreSQLConfig(database="nyc"))

        assert connect.call_args.kwargs["dbname"] == "nyc"
        connection.set_session.assert_called_once_with(readonly=True, autocommit=True)
