"""
ModelTrainer: Regression Models on Sampled Trips

Fits the two model families of the workflow on locally materialized sample
rows:
- gradient-boosted trees (xgboost ``XGBRegressor``)
- ordinary least squares (scikit-learn ``LinearRegression``)

Datasets keep their feature names so fitted models carry them and the
translator can name spec fields without extra arguments.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import xgboost as xgb
from sklearn.linear_model import LinearRegression
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sklearn.model_selection import train_test_split

from ...config.workflow_config import ModelConfig


logger = logging.getLogger(__name__)


@dataclass
class TrainingDataset:
    """
    Feature matrix and target of one fit.

    Feature columns are float64; missing values stay NaN.
    """
    X: pd.DataFrame
    y: pd.Series
    feature_names: List[str]
    target: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if len(self.X) != len(self.y):
            raise ValueError(f"Feature and target length mismatch: {len(self.X)} vs {len(self.y)}")

        if list(self.X.columns) != list(self.feature_names):
            raise ValueError(f"Feature names mismatch: {self.feature_names} vs {list(self.X.columns)}")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.X.shape

    def complete_rows(self) -> "TrainingDataset":
        """Rows without missing features."""
        mask = self.X.notna().all(axis=1).to_numpy()
        metadata = dict(self.metadata, dropped_incomplete_rows=int((~mask).sum()))
        return TrainingDataset(
            X=self.X[mask].reset_index(drop=True),
            y=self.y[mask].reset_index(drop=True),
            feature_names=self.feature_names,
            target=self.target,
            metadata=metadata
        )

    def get_train_test_split(self, test_size: float = 0.2,
                             random_state: int = 42) -> Tuple["TrainingDataset", "TrainingDataset"]:
        """Split into train and test datasets."""
        X_train, X_test, y_train, y_test = train_test_split(
            self.X, self.y,
            test_size=test_size,
            random_state=random_state
        )

        train = TrainingDataset(
            X=X_train.reset_index(drop=True),
            y=y_train.reset_index(drop=True),
            feature_names=self.feature_names,
            target=self.target,
            metadata=dict(self.metadata, split_type="train", split_ratio=1.0 - test_size)
        )
        test = TrainingDataset(
            X=X_test.reset_index(drop=True),
            y=y_test.reset_index(drop=True),
            feature_names=self.feature_names,
            target=self.target,
            metadata=dict(self.metadata, split_type="test", split_ratio=test_size)
        )

        return train, test


@dataclass
class TrainedModel:
    """A fitted model with its training metadata."""
    model: Any
    model_type: str
    feature_names: List[str]
    target: str
    training_time: float
    metrics: Dict[str, float] = field(default_factory=dict)

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        return np.asarray(self.model.predict(X[self.feature_names]), dtype=np.float64)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_type": self.model_type,
            "feature_names": list(self.feature_names),
            "target": self.target,
            "training_time": self.training_time,
            "metrics": dict(self.metrics)
        }


def prepare_training_data(frame: pd.DataFrame,
                          target: str,
                          features: Sequence[str]) -> TrainingDataset:
    """
    Select and coerce the model columns of sampled rows.

    Rows with a missing target are dropped; missing features are kept.

    Raises:
        TrainingError: If columns are missing or no rows remain
    """
    missing = [col for col in [target, *features] if col not in frame.columns]
    if missing:
        raise TrainingError(f"Columns not found in data: {missing}")

    X = frame[list(features)].apply(pd.to_numeric, errors="coerce").astype("float64")
    y = pd.to_numeric(frame[target], errors="coerce").astype("float64")

    has_target = y.notna().to_numpy()
    X, y = X[has_target].reset_index(drop=True), y[has_target].reset_index(drop=True)

    if len(X) == 0:
        raise TrainingError(f"No rows with a value for target {target!r}")

    logger.info("training_data.prepared", extra={
        "rows": len(X),
        "features": len(features),
        "dropped_missing_target": int((~has_target).sum()),
        "missing_feature_values": int(X.isna().sum().sum())
    })

    return TrainingDataset(
        X=X,
        y=y.rename(target),
        feature_names=list(features),
        target=target,
        metadata={"source_rows": len(frame)}
    )


def regression_metrics(y_true: Sequence[float], y_pred: Sequence[float]) -> Dict[str, float]:
    """RMSE, MAE and R^2."""
    y_true = np.asarray(y_true, dtype=np.float64)
    y_pred = np.asarray(y_pred, dtype=np.float64)

    metrics = {
        "rmse": float(np.sqrt(mean_squared_error(y_true, y_pred))),
        "mae": float(mean_absolute_error(y_true, y_pred)),
    }
    # R^2 is undefined for fewer than two samples
    metrics["r_squared"] = float(r2_score(y_true, y_pred)) if len(y_true) >= 2 else float("nan")
    return metrics


class ModelTrainer:
    """Fits the workflow's regression models."""

    def __init__(self, config: Optional[ModelConfig] = None):
        self.config = config or ModelConfig()
        self.logger = logging.getLogger(f"{__name__}.ModelTrainer")

    def build_gradient_boosting(self) -> xgb.XGBRegressor:
        return xgb.XGBRegressor(
            n_estimators=self.config.n_estimators,
            max_depth=self.config.max_depth,
            learning_rate=self.config.learning_rate,
            objective=self.config.objective,
            random_state=self.config.random_state,
            n_jobs=1
        )

    def train_gradient_boosting(self, dataset: TrainingDataset) -> TrainedModel:
        """Fit gradient-boosted trees; missing features are handled natively."""
        self.logger.info("training.started", extra={
            "model_type": "xgboost",
            "rows": len(dataset.X),
            "n_estimators": self.config.n_estimators,
            "max_depth": self.config.max_depth
        })

        start_time = time.time()
        model = self.build_gradient_boosting()
        model.fit(dataset.X, dataset.y)

        return self._trained(model, "xgboost", dataset, time.time() - start_time)

    def train_linear(self, dataset: TrainingDataset) -> TrainedModel:
        """Fit ordinary least squares on rows with complete features."""
        complete = dataset.complete_rows()
        if len(complete.X) <= len(complete.feature_names):
            raise TrainingError(
                f"Not enough complete rows for linear regression: {len(complete.X)} "
                f"rows, {len(complete.feature_names)} features"
            )

        self.logger.info("training.started", extra={
            "model_type": "linear",
            "rows": len(complete.X),
            "dropped_incomplete_rows": complete.metadata["dropped_incomplete_rows"]
        })

        start_time = time.time()
        model = LinearRegression()
        model.fit(complete.X, complete.y)

        return self._trained(model, "linear", complete, time.time() - start_time)

    def _trained(self, model: Any, model_type: str, dataset: TrainingDataset,
                 training_time: float) -> TrainedModel:
        trained = TrainedModel(
            model=model,
            model_type=model_type,
            feature_names=list(dataset.feature_names),
            target=dataset.target,
            training_time=training_time
        )
        trained.metrics = {f"train_{k}": v for k, v in self.evaluate(trained, dataset).items()}

        self.logger.info("training.completed", extra={
            "model_type": model_type,
            "training_time": training_time,
            **trained.metrics
        })

        return trained

    def evaluate(self, trained: TrainedModel, dataset: TrainingDataset) -> Dict[str, float]:
        """Goodness of fit on ``dataset``; linear models skip incomplete rows."""
        if trained.model_type == "linear":
            dataset = dataset.complete_rows()
        if len(dataset.X) == 0:
            return {}
        return regression_metrics(dataset.y, trained.predict(dataset.X))


class TrainingError(Exception):
    """Raised when a model cannot be fitted."""
    pass
