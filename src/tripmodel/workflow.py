"""
TripModelWorkflow: End-to-End Trip Modelling

Runs the steps of the trip modelling workflow in order, each inside
``stage_logging`` so durations and failures are logged per stage:

1. source      - open the trip table (file, synthetic frame or PostgreSQL)
2. sample      - dense id range sample of the table
3. correlation - pairwise correlation, heatmap and network plots
4. training    - gradient-boosted trees and linear regression on the sample
5. translation - fitted models to portable specs
6. export      - specs to YAML (reloaded to confirm the round trip) and SQL
7. validation  - model vs spec in memory, spec vs generated SQL in the database
8. db_regression - linear regression fitted by aggregate queries

Any error aborts the run; there is no partial-progress state to retry from.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import matplotlib.pyplot as plt

from .config.workflow_config import WorkflowConfig
from .data.analysis.correlation import (
    CorrelationResult,
    correlate,
    correlate_in_database,
    plot_correlation_heatmap,
    plot_correlation_network,
)
from .data.sampler import IdRangeSampler, SampleResult
from .data.schema import missing_trip_columns
from .data.source import DuckDBTripSource, TripSource
from .data.synthetic import generate_trips
from .ml.portable.serialization import load_model_spec, save_model_spec, spec_summary
from .ml.portable.spec import ModelSpec
from .ml.portable.translator import parse_model
from .ml.serving.model_validation import PredictionValidator, compare_model_to_spec
from .ml.serving.query_generation import build_prediction_query
from .ml.training.db_regression import fit_linear_regression_db
from .ml.training.model_trainer import ModelTrainer, TrainedModel, prepare_training_data
from .persistence.database import PostgresTripSource
from .utils.logging import WorkflowLogger, stage_logging


@dataclass
class WorkflowResult:
    """Artifacts and reports of one workflow run."""
    environment: str
    source: Dict[str, Any] = field(default_factory=dict)
    sample: Dict[str, Any] = field(default_factory=dict)
    correlation: Dict[str, Any] = field(default_factory=dict)
    models: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    spec_paths: Dict[str, str] = field(default_factory=dict)
    query_paths: Dict[str, str] = field(default_factory=dict)
    validation: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    db_regression: Dict[str, Any] = field(default_factory=dict)
    stage_durations: Dict[str, float] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        """All spec vs database comparisons matched."""
        checks = [report for name, report in self.validation.items() if name.endswith("_sql")]
        return bool(checks) and all(report["passed"] for report in checks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "source": self.source,
            "sample": self.sample,
            "correlation": self.correlation,
            "models": self.models,
            "spec_paths": self.spec_paths,
            "query_paths": self.query_paths,
            "validation": self.validation,
            "db_regression": self.db_regression,
            "stage_durations": self.stage_durations,
            "passed": self.passed
        }


class TripModelWorkflow:
    """
    Sequential trip modelling workflow.

    Args:
        config: Workflow configuration
        source: Already opened trip source; opened from ``config.data`` when None
    """

    def __init__(self, config: Optional[WorkflowConfig] = None, source: Optional[TripSource] = None):
        self.config = config or WorkflowConfig()
        self.source = source
        self._owns_source = source is None
        self.logger = WorkflowLogger(__name__)
        self.output_dir = Path(self.config.output_dir)

    def run(self) -> WorkflowResult:
        """Execute all stages; raises the first stage error."""
        result = WorkflowResult(environment=self.config.environment)
        self.logger.set_context(environment=self.config.environment)

        try:
            with self._stage("source", result):
                if self.source is None:
                    self.source = self.open_source()
                result.source = {
                    "dialect": self.source.dialect,
                    "table": self.source.table,
                    "rows": self.source.count(),
                    "missing_trip_columns": missing_trip_columns(self.source.columns())
                }

            with self._stage("sample", result):
                sample = self.sample()
                result.sample = sample.to_dict()

            with self._stage("correlation", result):
                correlation = self.correlation(sample)
                result.correlation = {
                    "method": correlation.method,
                    "in_database": self.config.correlation.in_database,
                    "strongest": correlation.strongest(5).to_dict(orient="records"),
                    "target_pairs": correlation.focus([self.config.model.target]).to_dict(orient="records")
                }

            with self._stage("training", result):
                trained, test = self.train(sample)
                trainer = ModelTrainer(self.config.model)
                for name, model in trained.items():
                    result.models[name] = model.to_dict()
                    result.models[name]["metrics"].update(
                        {f"test_{k}": v for k, v in trainer.evaluate(model, test).items()}
                    )

            with self._stage("translation", result):
                specs = {
                    name: parse_model(model.model, target=model.target)
                    for name, model in trained.items()
                }

            with self._stage("export", result):
                specs = self.export(specs, result)

            with self._stage("validation", result):
                self.validate(trained, specs, sample, test, result)

            with self._stage("db_regression", result):
                regression = fit_linear_regression_db(
                    self.source, self.config.model.target, self.config.model.features
                )
                result.db_regression = regression.to_dict()
        finally:
            self.logger.clear_context()
            if self._owns_source and self.source is not None:
                self.source.close()
                self.source = None

        self.logger.info("workflow.completed", extra={
            "validation_passed": result.passed,
            "total_duration": sum(result.stage_durations.values())
        })

        return result

    @contextmanager
    def _stage(self, name: str, result: WorkflowResult):
        """``stage_logging`` plus the stage duration recorded on the result."""
        start_time = time.time()
        try:
            with stage_logging(self.logger, name):
                yield
        finally:
            result.stage_durations[name] = time.time() - start_time

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def open_source(self) -> TripSource:
        data = self.config.data

        if data.backend.lower() == "postgres":
            return PostgresTripSource(table=data.table_name)

        if data.source_path is not None:
            return DuckDBTripSource.from_file(data.source_path, table=data.table_name, id_column=data.id_column)

        frame = generate_trips(data.synthetic_rows, seed=data.seed)
        return DuckDBTripSource.from_frame(frame, table=data.table_name, id_column=data.id_column)

    def sample(self) -> SampleResult:
        sampler = IdRangeSampler(self.source, id_column=self.config.data.id_column, seed=self.config.data.seed)
        return sampler.sample(self.config.data.sample_size)

    def correlation(self, sample: SampleResult) -> CorrelationResult:
        settings = self.config.correlation

        if settings.in_database:
            result = correlate_in_database(self.source)
        else:
            result = correlate(sample.frame, method=settings.method)

        if settings.output_dir:
            output_dir = Path(settings.output_dir)
            heatmap = plot_correlation_heatmap(result, output_dir / "correlation_heatmap.png")
            network = plot_correlation_network(result, settings.network_min_correlation,
                                               output_dir / "correlation_network.png")
            plt.close(heatmap)
            plt.close(network)

        return result

    def train(self, sample: SampleResult):
        model_config = self.config.model
        dataset = prepare_training_data(sample.frame, model_config.target, model_config.features)
        train, test = dataset.get_train_test_split(model_config.test_size, model_config.random_state)

        trainer = ModelTrainer(model_config)
        trained = {
            "xgboost": trainer.train_gradient_boosting(train),
            "linear": trainer.train_linear(train),
        }
        return trained, test

    def export(self, specs: Dict[str, ModelSpec], result: WorkflowResult) -> Dict[str, ModelSpec]:
        """Write specs and SQL; returns the specs reloaded from YAML."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        dialect = self.config.query_dialect
        reloaded = {}

        for name, spec in specs.items():
            spec_path = save_model_spec(spec, self.output_dir / f"{name}_spec.yaml")
            reloaded[name] = load_model_spec(spec_path)

            query_path = self.output_dir / f"{name}_{dialect}.sql"
            query_path.write_text(
                build_prediction_query(reloaded[name], self.config.data.table_name, dialect) + "\n",
                encoding="utf-8"
            )

            result.models.setdefault(name, {})["spec"] = spec_summary(reloaded[name])
            result.spec_paths[name] = str(spec_path)
            result.query_paths[name] = str(query_path)

        return reloaded

    def validate(self, trained: Dict[str, TrainedModel], specs: Dict[str, ModelSpec],
                 sample: SampleResult, test, result: WorkflowResult) -> None:
        thresholds = self.config.validation
        validator = PredictionValidator(thresholds.spec_threshold, id_column=self.config.data.id_column)

        for name, spec in specs.items():
            model_check = compare_model_to_spec(trained[name].model, spec, test.X, thresholds.model_threshold)
            result.validation[f"{name}_model"] = model_check.to_dict()

            sql_check = validator.validate(spec, self.source, ids=sample.ids, target=self.config.model.target)
            result.validation[f"{name}_sql"] = sql_check.to_dict()

