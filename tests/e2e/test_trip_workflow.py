"""
End-to-end tests for the trip modelling workflow.

Covers the full path from a trip table to validated in-database
predictions: sampling, correlation, fitting, spec export, SQL generation
and scoring, on in-memory DuckDB databases and SQLite.
"""

import sqlite3
import sys
from pathlib import Path

import duckdb
import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LinearRegression

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from tripmodel.config.workflow_config import (
    CorrelationConfig,
    DataConfig,
    ModelConfig,
    WorkflowConfig,
)
from tripmodel.ml.portable.serialization import load_model_spec, save_model_spec
from tripmodel.ml.portable.translator import parse_model
from tripmodel.workflow import TripModelWorkflow


def _small_config(tmp_path, **overrides) -> WorkflowConfig:
    settings = dict(
        data=DataConfig(synthetic_rows=600, sample_size=300, seed=3),
        correlation=CorrelationConfig(output_dir=str(tmp_path / "correlation")),
        model=ModelConfig(n_estimators=10, max_depth=3, random_state=0),
        environment="testing",
        output_dir=str(tmp_path / "models"),
    )
    settings.update(overrides)
    return WorkflowConfig(**settings)


@pytest.mark.e2e
class TestLinearScenario:
    """Fit, export and score a known linear relationship."""

    def test_prediction_matches_across_engines(self, tmp_path, linear_frame):
        model = LinearRegression().fit(linear_frame[["x1", "x2"]], linear_frame["y"])
        spec = load_model_spec(save_model_spec(parse_model(model, target="y"), tmp_path / "lm.yaml"))
        point = pd.DataFrame({"x1": [3.0], "x2": [-1.5]})
        expected = model.predict(point)[0]

        duck = duckdb.connect(":memory:")
        duck.execute("CREATE TABLE t (x1 DOUBLE, x2 DOUBLE)")
        duck.execute("INSERT INTO t VALUES (3.0, -1.5)")
        duck_value = duck.execute(f"SELECT {spec.to_query_expression('duckdb')} FROM t").fetchone()[0]
        duck.close()

        lite = sqlite3.connect(":memory:")
        lite.execute("CREATE TABLE t (x1 REAL, x2 REAL)")
        lite.execute("INSERT INTO t VALUES (3.0, -1.5)")
        lite_value = lite.execute(f"SELECT {spec.to_query_expression('sqlite')} FROM t").fetchone()[0]
        lite.close()

        assert expected == pytest.approx(3.0 + 6.0 + 2.25, abs=0.05)
        assert abs(duck_value - expected) < 1e-6
        assert abs(lite_value - expected) < 1e-6
        assert spec.predict(point)[0] == pytest.approx(expected, abs=1e-9)


@pytest.mark.e2e
class TestTripModelWorkflow:
    """Full workflow runs on synthetic trips."""

    def test_full_run(self, tmp_path):
        result = TripModelWorkflow(_small_config(tmp_path)).run()

        assert result.passed
        assert result.source["rows"] == 600
        assert result.source["missing_trip_columns"] == []
        assert result.models["xgboost"]["spec"]["n_trees"] == 10
        assert result.sample["ids_drawn"] == 300
        assert set(result.models) == {"xgboost", "linear"}
        assert set(result.validation) == {"xgboost_model", "xgboost_sql", "linear_model", "linear_sql"}
        assert all(report["passed"] for report in result.validation.values())
        assert result.validation["xgboost_sql"]["n_rows"] == 300
        assert "r_squared" in result.validation["linear_sql"]["goodness_of_fit"]
        assert result.db_regression["n_observations"] == 600

        for path in list(result.spec_paths.values()) + list(result.query_paths.values()):
            assert Path(path).exists()
        assert (tmp_path / "correlation" / "correlation_heatmap.png").exists()
        assert (tmp_path / "correlation" / "correlation_network.png").exists()
        assert set(result.stage_durations) == {
            "source", "sample", "correlation", "training",
            "translation", "export", "validation", "db_regression",
        }

    def test_exported_specs_reload(self, tmp_path):
        result = TripModelWorkflow(_small_config(tmp_path)).run()

        xgb_spec = load_model_spec(result.spec_paths["xgboost"])
        linear_spec = load_model_spec(result.spec_paths["linear"])

        assert xgb_spec.n_trees == 10
        assert xgb_spec.target == "tip_amount"
        assert linear_spec.fields == tuple(ModelConfig().features)
        assert Path(result.query_paths["linear"]).read_text().startswith("SELECT *, ")

    def test_in_database_correlation_and_postgres_sql(self, tmp_path):
        config = _small_config(
            tmp_path,
            correlation=CorrelationConfig(in_database=True, output_dir=None),
            query_dialect="postgres",
        )

        result = TripModelWorkflow(config).run()

        assert result.passed
        assert result.correlation["in_database"] is True
        assert "DOUBLE PRECISION" in Path(result.query_paths["xgboost"]).read_text()
        assert not (tmp_path / "correlation").exists()

    def test_given_source_is_left_open(self, tmp_path, trip_source):
        result = TripModelWorkflow(_small_config(tmp_path), source=trip_source).run()

        assert result.passed
        assert result.source["rows"] == 400
        assert trip_source.count() == 400

    def test_result_report(self, tmp_path):
        report = TripModelWorkflow(_small_config(tmp_path)).run().to_dict()

        assert report["passed"] is True
        assert report["environment"] == "testing"
        assert np.isfinite(report["models"]["linear"]["metrics"]["test_rmse"])
