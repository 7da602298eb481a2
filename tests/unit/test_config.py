"""
Unit tests for workflow and PostgreSQL configuration.
"""

import sys
from pathlib import Path

import pytest
import yaml

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from tripmodel.config import ConfigurationError, WorkflowConfig, load_workflow_config
from tripmodel.config.workflow_config import DataConfig, ModelConfig, ValidationConfig
from tripmodel.persistence.config import PostgreSQLConfig, get_postgresql_config

SHIPPED_CONFIG = Path(__file__).parent.parent.parent / "config" / "workflow" / "base.yaml"


def _write_config(tmp_path, data) -> str:
    path = tmp_path / "workflow.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestWorkflowConfig:
    """Dataclass defaults and validation."""

    def test_defaults_are_valid(self):
        config = WorkflowConfig()

        assert config.validate() == []
        assert config.model.target == "tip_amount"
        assert config.validation.spec_threshold == 1e-6
        assert config.query_dialect == "duckdb"

    def test_invalid_values_reported(self):
        errors = DataConfig(sample_size=0, backend="oracle").validate()

        assert any("Sample size" in e for e in errors)
        assert any("Invalid backend" in e for e in errors)

    def test_target_cannot_be_a_feature(self):
        errors = ModelConfig(target="fare_amount", features=["fare_amount", "trip_distance"]).validate()

        assert errors == ["Target column listed as a feature: fare_amount"]

    def test_thresholds_must_be_positive(self):
        assert len(ValidationConfig(spec_threshold=0.0, model_threshold=-1.0).validate()) == 2

    def test_postgres_source_requires_postgres_dialect(self):
        config = WorkflowConfig(data=DataConfig(backend="postgres"), query_dialect="duckdb")

        assert "PostgreSQL sources require the postgres query dialect" in config.validate()


class TestLoadWorkflowConfig:
    """Loading YAML files with presets and environment variables."""

    def test_presets_override_file_values(self, tmp_path):
        path = _write_config(tmp_path, {
            "data": {"sample_size": 250, "seed": 9},
            "model": {"target": "fare_amount", "features": ["trip_distance"]},
            "monitoring": {"log_level": "ERROR"},
            "pipeline": {"output_dir": str(tmp_path / "out"), "query_dialect": "sqlite"},
        })

        config = load_workflow_config(path, "development")

        assert config.data.sample_size == 1000
        assert config.data.synthetic_rows == 5000
        assert config.data.seed == 9
        assert config.monitoring.log_level == "DEBUG"
        assert config.model.features == ["trip_distance"]
        assert config.query_dialect == "sqlite"
        assert config.environment == "development"

    def test_production_preset(self, tmp_path):
        config = load_workflow_config(_write_config(tmp_path, {}), "production")

        assert config.monitoring.log_format == "json"
        assert config.environment == "production"

    @pytest.mark.parametrize("environment, expected", [
        ("production", ("WARNING", "json", True, 5000)),
        ("development", ("DEBUG", "text", False, 1000)),
        ("staging", ("INFO", "text", False, 5000)),
    ])
    def test_presets_apply_to_shipped_defaults(self, environment, expected):
        config = load_workflow_config(str(SHIPPED_CONFIG), environment)
        monitoring = config.monitoring

        assert (monitoring.log_level, monitoring.log_format,
                monitoring.enable_file_logging, config.data.sample_size) == expected

    def test_environment_variables_win(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRIPMODEL_SAMPLE_SIZE", "123")
        monkeypatch.setenv("TRIPMODEL_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("TRIPMODEL_TARGET", "total_amount")

        config = load_workflow_config(_write_config(tmp_path, {"data": {"sample_size": 250}}), "development")

        assert config.data.sample_size == 123
        assert config.monitoring.log_level == "ERROR"
        assert config.model.target == "total_amount"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_workflow_config(str(tmp_path / "absent.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("data: [unclosed")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_workflow_config(str(path))

    def test_unknown_key(self, tmp_path):
        path = _write_config(tmp_path, {"data": {"sample_rows": 10}})

        with pytest.raises(ConfigurationError, match="Failed to load"):
            load_workflow_config(path)

    def test_validation_failure(self, tmp_path):
        path = _write_config(tmp_path, {"model": {"test_size": 1.5}})

        with pytest.raises(ConfigurationError, match="Test size"):
            load_workflow_config(path)

    def test_missing_source_file(self, tmp_path):
        path = _write_config(tmp_path, {"data": {"source_path": str(tmp_path / "trips.csv")}})

        with pytest.raises(ConfigurationError, match="Trip data file not found"):
            load_workflow_config(path)


class TestPostgreSQLConfig:
    """PostgreSQL connection settings."""

    def test_connect_kwargs(self):
        kwargs = PostgreSQLConfig(database="nyc", statement_timeout=1000).get_connect_kwargs()

        assert kwargs["dbname"] == "nyc"
        assert kwargs["options"] == "-c statement_timeout=1000"

    def test_validate(self):
        assert PostgreSQLConfig().validate() == []
        assert "port must be between 1 and 65535" in PostgreSQLConfig(port=0).validate()

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_HOST", "db.internal")
        monkeypatch.setenv("POSTGRES_PORT", "6543")
        monkeypatch.setenv("POSTGRES_DB", "trips")

        config = get_postgresql_config("staging")

        assert (config.host, config.port, config.database) == ("db.internal", 6543, "trips")
