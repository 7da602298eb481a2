"""
Unit tests for ModelTrainer and training datasets.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import xgboost as xgb
from sklearn.linear_model import LinearRegression

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from tripmodel.config.workflow_config import ModelConfig
from tripmodel.ml.training.model_trainer import (
    ModelTrainer,
    TrainingDataset,
    TrainingError,
    prepare_training_data,
    regression_metrics,
)


class TestPrepareTrainingData:
    """Column selection and coercion."""

    def test_selects_and_coerces(self, linear_frame):
        frame = linear_frame.assign(note="x", x2=linear_frame["x2"].astype(str))

        dataset = prepare_training_data(frame, "y", ["x1", "x2"])

        assert dataset.feature_names == ["x1", "x2"]
        assert dataset.X.dtypes.tolist() == [np.float64, np.float64]
        assert dataset.y.name == "y"
        assert dataset.shape == (500, 2)

    def test_drops_rows_without_target(self, linear_frame):
        frame = linear_frame.copy()
        frame.loc[:9, "y"] = np.nan
        frame.loc[20:24, "x1"] = np.nan

        dataset = prepare_training_data(frame, "y", ["x1", "x2"])

        assert len(dataset.X) == 490
        assert dataset.X["x1"].isna().sum() == 5
        assert len(dataset.complete_rows().X) == 485

    def test_missing_columns(self, linear_frame):
        with pytest.raises(TrainingError, match="Columns not found"):
            prepare_training_data(linear_frame, "y", ["x1", "x3"])

    def test_no_target_values(self, linear_frame):
        with pytest.raises(TrainingError, match="No rows"):
            prepare_training_data(linear_frame.assign(y=np.nan), "y", ["x1"])

    def test_split(self, linear_frame):
        dataset = prepare_training_data(linear_frame, "y", ["x1", "x2"])

        train, test = dataset.get_train_test_split(test_size=0.2, random_state=0)

        assert (len(train.X), len(test.X)) == (400, 100)
        assert test.metadata["split_type"] == "test"

    def test_dataset_length_mismatch(self):
        with pytest.raises(ValueError, match="length mismatch"):
            TrainingDataset(X=pd.DataFrame({"a": [1.0, 2.0]}), y=pd.Series([1.0]), feature_names=["a"], target="y")


class TestModelTrainer:
    """Model fitting."""

    def setup_method(self):
        self.trainer = ModelTrainer(ModelConfig(
            target="y", features=["x1", "x2"], n_estimators=20, max_depth=3, random_state=0
        ))

    def test_linear(self, linear_frame):
        dataset = prepare_training_data(linear_frame, "y", ["x1", "x2"])

        trained = self.trainer.train_linear(dataset)

        assert isinstance(trained.model, LinearRegression)
        np.testing.assert_allclose(trained.model.coef_, [2.0, -1.5], atol=0.02)
        assert trained.metrics["train_r_squared"] > 0.99
        assert trained.to_dict()["model_type"] == "linear"

    def test_linear_skips_incomplete_rows(self, linear_frame):
        frame = linear_frame.copy()
        frame.loc[:49, "x2"] = np.nan
        dataset = prepare_training_data(frame, "y", ["x1", "x2"])

        trained = self.trainer.train_linear(dataset)

        assert np.isfinite(trained.metrics["train_rmse"])
        assert set(self.trainer.evaluate(trained, dataset)) == {"rmse", "mae", "r_squared"}

    def test_linear_needs_more_rows_than_features(self, linear_frame):
        dataset = prepare_training_data(linear_frame.head(2), "y", ["x1", "x2"])

        with pytest.raises(TrainingError, match="Not enough complete rows"):
            self.trainer.train_linear(dataset)

    def test_gradient_boosting(self, linear_frame):
        frame = linear_frame.copy()
        frame.loc[:49, "x2"] = np.nan
        dataset = prepare_training_data(frame, "y", ["x1", "x2"])

        trained = self.trainer.train_gradient_boosting(dataset)

        assert isinstance(trained.model, xgb.XGBRegressor)
        assert trained.model.n_estimators == 20
        assert trained.metrics["train_r_squared"] > 0.8
        assert trained.predict(frame).shape == (500,)


class TestRegressionMetrics:
    """Goodness of fit helpers."""

    def test_perfect_fit(self):
        metrics = regression_metrics([1.0, 2.0, 3.0], [1.0, 2.0, 3.0])

        assert metrics == {"rmse": 0.0, "mae": 0.0, "r_squared": 1.0}

    def test_single_sample(self):
        assert np.isnan(regression_metrics([1.0], [2.0])["r_squared"])
