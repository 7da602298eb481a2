"""
Model fitting on sampled trips and directly in the database.
"""

from .db_regression import DatabaseRegressionResult, fit_linear_regression_db
from .model_trainer import (
    ModelTrainer,
    TrainedModel,
    TrainingDataset,
    TrainingError,
    prepare_training_data,
    regression_metrics,
)

__all__ = [
    "DatabaseRegressionResult",
    "ModelTrainer",
    "TrainedModel",
    "TrainingDataset",
    "TrainingError",
    "fit_linear_regression_db",
    "prepare_training_data",
    "regression_metrics",
]
