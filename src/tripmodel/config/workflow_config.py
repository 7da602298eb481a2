# /tripmodel/src/tripmodel/config/workflow_config.py

"""
Workflow Configuration Management

Hierarchical configuration for the trip modelling workflow with validation
and environment-aware overrides.

Key Features:
- YAML-based configuration with environment-specific overrides
- Validation with descriptive error messages
- Immutable, type-safe configuration objects with defaults
- Environment variable overrides (TRIPMODEL_*)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


DEFAULT_FEATURES = ["trip_distance", "passenger_count", "payment_type", "tolls_amount"]


@dataclass(frozen=True)
class DataConfig:
    """
    Configuration for the trip data source and the sampler.
    """
    # Source: a csv/parquet file, or synthetic trips when no path is given
    source_path: Optional[str] = None
    table_name: str = "trips"
    synthetic_rows: int = 20000
    id_column: str = "id"

    # Sampling
    sample_size: int = 5000
    seed: int = 100

    # PostgreSQL source (used when backend == "postgres")
    backend: str = "duckdb"

    def validate(self) -> List[str]:
        """Validate data configuration parameters."""
        errors = []

        if self.source_path is not None:
            suffix = Path(self.source_path).suffix.lower()
            if suffix not in (".csv", ".parquet"):
                errors.append(f"Source file must be CSV or Parquet: {self.source_path}")

        if not self.table_name:
            errors.append("Table name cannot be empty")

        if self.synthetic_rows <= 0:
            errors.append(f"Synthetic rows must be positive: {self.synthetic_rows}")

        if self.sample_size <= 0:
            errors.append(f"Sample size must be positive: {self.sample_size}")

        valid_backends = ["duckdb", "postgres"]
        if self.backend.lower() not in valid_backends:
            errors.append(f"Invalid backend: {self.backend}")

        return errors


@dataclass(frozen=True)
class CorrelationConfig:
    """
    Configuration for the correlation step.
    """
    method: str = "pearson"
    in_database: bool = False
    network_min_correlation: float = 0.3
    output_dir: Optional[str] = "reports/correlation"

    def validate(self) -> List[str]:
        errors = []

        valid_methods = ["pearson", "spearman", "kendall"]
        if self.method.lower() not in valid_methods:
            errors.append(f"Invalid correlation method: {self.method}")

        if self.in_database and self.method.lower() != "pearson":
            errors.append("In-database correlation only supports pearson")

        if not 0 <= self.network_min_correlation <= 1:
            errors.append(f"Network min correlation must be between 0 and 1: {self.network_min_correlation}")

        return errors


@dataclass(frozen=True)
class ModelConfig:
    """
    Configuration for model fitting.
    """
    target: str = "tip_amount"
    features: List[str] = field(default_factory=lambda: list(DEFAULT_FEATURES))
    test_size: float = 0.2

    # Gradient boosting
    n_estimators: int = 50
    max_depth: int = 4
    learning_rate: float = 0.1
    objective: str = "reg:squarederror"
    random_state: int = 42

    def validate(self) -> List[str]:
        errors = []

        if not self.target:
            errors.append("Target column cannot be empty")

        if not self.features:
            errors.append("At least one feature must be specified")

        if self.target in self.features:
            errors.append(f"Target column listed as a feature: {self.target}")

        if not 0 < self.test_size < 1:
            errors.append(f"Test size must be between 0 and 1: {self.test_size}")

        if self.n_estimators <= 0:
            errors.append(f"Number of estimators must be positive: {self.n_estimators}")

        if self.max_depth <= 0:
            errors.append(f"Max depth must be positive: {self.max_depth}")

        if not 0 < self.learning_rate <= 1:
            errors.append(f"Learning rate must be in (0, 1]: {self.learning_rate}")

        return errors


@dataclass(frozen=True)
class ValidationConfig:
    """
    Thresholds for the scoring/validation step.

    ``spec_threshold`` bounds portable-spec vs database differences, both
    computed in double precision. ``model_threshold`` bounds fitted model vs
    spec differences; xgboost accumulates leaves in float32.
    """
    spec_threshold: float = 1e-6
    model_threshold: float = 1e-4

    def validate(self) -> List[str]:
        errors = []

        if self.spec_threshold <= 0:
            errors.append(f"Spec threshold must be positive: {self.spec_threshold}")

        if self.model_threshold <= 0:
            errors.append(f"Model threshold must be positive: {self.model_threshold}")

        return errors


@dataclass(frozen=True)
class MonitoringConfig:
    """
    Configuration for logging.
    """
    log_level: str = "INFO"
    log_dir: str = "logs/workflow"
    log_format: str = "text"
    enable_file_logging: bool = False

    def validate(self) -> List[str]:
        errors = []

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Invalid log level: {self.log_level}")

        valid_log_formats = ["json", "text"]
        if self.log_format.lower() not in valid_log_formats:
            errors.append(f"Invalid log format: {self.log_format}")

        return errors


@dataclass(frozen=True)
class WorkflowConfig:
    """
    Master workflow configuration combining all component configurations.
    """
    data: DataConfig = field(default_factory=DataConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    environment: str = "development"
    output_dir: str = "models/portable"
    query_dialect: str = "duckdb"

    def validate(self) -> List[str]:
        """Validate complete workflow configuration."""
        errors = []

        errors.extend(self.data.validate())
        errors.extend(self.correlation.validate())
        errors.extend(self.model.validate())
        errors.extend(self.validation.validate())
        errors.extend(self.monitoring.validate())

        valid_dialects = ["duckdb", "postgres", "sqlite"]
        if self.query_dialect.lower() not in valid_dialects:
            errors.append(f"Invalid query dialect: {self.query_dialect}")

        if self.data.backend.lower() == "postgres" and self.query_dialect.lower() != "postgres":
            errors.append("PostgreSQL sources require the postgres query dialect")

        return errors


class ConfigurationValidator:
    """
    Configuration validator with detailed error reporting.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def validate_configuration(self, config: WorkflowConfig) -> Tuple[bool, List[str]]:
        """
        Returns:
            Tuple of (is_valid, error_messages)
        """
        errors = config.validate()
        errors.extend(self._validate_file_paths(config))

        is_valid = len(errors) == 0

        if not is_valid:
            self.logger.error("configuration.validation_failed", extra={
                "error_count": len(errors),
                "errors": errors
            })

        return is_valid, errors

    def _validate_file_paths(self, config: WorkflowConfig) -> List[str]:
        errors = []

        if config.data.source_path is not None:
            source_path = Path(config.data.source_path)
            if not source_path.exists():
                errors.append(f"Trip data file not found: {source_path}")
            elif not source_path.is_file():
                errors.append(f"Trip data path is not a file: {source_path}")

        return errors


def load_workflow_config(config_path: Optional[str] = None,
                         environment: str = "development") -> WorkflowConfig:
    """
    Load workflow configuration with environment-specific overrides.

    Args:
        config_path: Path to custom configuration file
        environment: Environment name (development, staging, production)

    Returns:
        Validated WorkflowConfig object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = logging.getLogger(__name__)

    try:
        base_config = _load_base_config(config_path)
        env_config = _apply_environment_overrides(base_config, environment)
        config = _create_config_object(env_config, environment)
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as e:
        logger.error("workflow_config.load_failed", extra={
            "environment": environment,
            "config_path": config_path,
            "error": str(e)
        })
        raise ConfigurationError(f"Failed to load workflow configuration: {e}") from e

    validator = ConfigurationValidator()
    is_valid, errors = validator.validate_configuration(config)

    if not is_valid:
        raise ConfigurationError(f"Configuration validation failed: {errors}")

    logger.info("workflow_config.loaded", extra={
        "environment": environment,
        "config_path": config_path,
        "target": config.model.target
    })

    return config


def _load_base_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load base configuration from YAML file."""
    if config_path is None:
        for path in ("config/workflow/base.yaml", "workflow_config.yaml"):
            if Path(path).exists():
                config_path = path
                break
        else:
            return {}

    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML configuration: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {config_file}")

    return config


def _apply_environment_overrides(base_config: Dict[str, Any],
                                 environment: str) -> Dict[str, Any]:
    """Apply environment-specific configuration overrides."""
    env_defaults = {
        "development": {
            "data": {
                "synthetic_rows": 5000,
                "sample_size": 1000
            },
            "monitoring": {
                "log_level": "DEBUG"
            }
        },
        "production": {
            "monitoring": {
                "log_level": "WARNING",
                "log_format": "json",
                "enable_file_logging": True
            }
        }
    }

    config = _deep_merge_dicts(base_config, env_defaults.get(environment.lower(), {}))
    return _apply_environment_variables(config)


def _deep_merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value

    return result


def _apply_environment_variables(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides."""
    env_mapping = {
        "TRIPMODEL_LOG_LEVEL": ("monitoring", "log_level", str),
        "TRIPMODEL_SOURCE_PATH": ("data", "source_path", str),
        "TRIPMODEL_BACKEND": ("data", "backend", str),
        "TRIPMODEL_SAMPLE_SIZE": ("data", "sample_size", int),
        "TRIPMODEL_SEED": ("data", "seed", int),
        "TRIPMODEL_TARGET": ("model", "target", str),
    }

    for env_var, (section, key, cast) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            config.setdefault(section, {})[key] = cast(value)

    return config


def _create_config_object(config_dict: Dict[str, Any], environment: str) -> WorkflowConfig:
    """Create WorkflowConfig object from dictionary."""
    pipeline_config = config_dict.get("pipeline", {})

    return WorkflowConfig(
        data=DataConfig(**config_dict.get("data", {})),
        correlation=CorrelationConfig(**config_dict.get("correlation", {})),
        model=ModelConfig(**config_dict.get("model", {})),
        validation=ValidationConfig(**config_dict.get("validation", {})),
        monitoring=MonitoringConfig(**config_dict.get("monitoring", {})),
        environment=environment,
        **pipeline_config
    )


class ConfigurationError(Exception):
    """Raised when the workflow configuration cannot be loaded or is invalid."""
