"""
Prediction Validation

Confirms that a portable spec's generated SQL computes the same predictions
as the in-memory model, row by row, and reports goodness of fit of the
in-database predictions.

Key Features:
- Per-row absolute and relative differences between reference and SQL predictions
- Pass/fail against a fixed, documented threshold (``DEFAULT_MISMATCH_THRESHOLD``)
- Goodness of fit (RMSE, MAE, R^2) against an observed target column
- Pearson correlation between the two prediction vectors

A threshold breach is a warning on the result, never an exception.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import xgboost as xgb
from scipy import stats

from ...data.schema import ID_COLUMN
from ..portable.spec import ModelSpec, rows_to_frame
from ..training.model_trainer import regression_metrics
from .query_generation import build_prediction_query, get_dialect


logger = logging.getLogger(__name__)

# Largest absolute difference still counted as a match
DEFAULT_MISMATCH_THRESHOLD = 1e-6

PREDICTION_COLUMN = "_prediction"


@dataclass
class ScoringResult:
    """Results of comparing reference and candidate predictions."""

    threshold: float = DEFAULT_MISMATCH_THRESHOLD
    n_rows: int = 0

    # Difference statistics
    max_absolute_difference: float = 0.0
    mean_absolute_difference: float = 0.0
    max_relative_difference: float = 0.0
    n_mismatches: int = 0

    # Agreement and fit
    prediction_correlation: Optional[float] = None
    goodness_of_fit: Dict[str, float] = field(default_factory=dict)

    # Per-row detail: id (when known), reference, candidate, abs_diff, rel_diff
    differences: Optional[pd.DataFrame] = None

    passed: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, error: str):
        self.errors.append(error)
        self.passed = False

    def add_warning(self, warning: str):
        self.warnings.append(warning)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "n_rows": self.n_rows,
            "max_absolute_difference": self.max_absolute_difference,
            "mean_absolute_difference": self.mean_absolute_difference,
            "max_relative_difference": self.max_relative_difference,
            "n_mismatches": self.n_mismatches,
            "prediction_correlation": self.prediction_correlation,
            "goodness_of_fit": dict(self.goodness_of_fit),
            "passed": self.passed,
            "errors": list(self.errors),
            "warnings": list(self.warnings)
        }


def prediction_differences(reference: Sequence[float], candidate: Sequence[float]) -> pd.DataFrame:
    """
    Absolute and relative differences per row.

    Two missing predictions agree; one missing prediction is an infinite difference.
    """
    reference = np.asarray(reference, dtype=np.float64)
    candidate = np.asarray(candidate, dtype=np.float64)
    if reference.shape != candidate.shape:
        raise ValueError(f"Prediction length mismatch: {len(reference)} vs {len(candidate)}")

    ref_nan, cand_nan = np.isnan(reference), np.isnan(candidate)
    with np.errstate(invalid="ignore"):
        abs_diff = np.abs(reference - candidate)
    abs_diff[ref_nan & cand_nan] = 0.0
    abs_diff[ref_nan ^ cand_nan] = np.inf

    scale = np.abs(np.where(ref_nan, 0.0, reference))
    with np.errstate(divide="ignore", invalid="ignore"):
        rel_diff = np.where(abs_diff == 0.0, 0.0, abs_diff / scale)

    return pd.DataFrame({
        "reference": reference,
        "candidate": candidate,
        "abs_diff": abs_diff,
        "rel_diff": rel_diff,
    })


def score_in_database(spec: ModelSpec,
                      source,
                      ids: Optional[Sequence[int]] = None,
                      id_column: str = ID_COLUMN) -> pd.DataFrame:
    """
    Rows of the source table with the spec's SQL prediction in ``_prediction``.

    Args:
        spec: Portable model spec
        source: Trip source (dialect, table, query)
        ids: Restrict to these ids (all rows when None)
        id_column: Key column used for the filter and ordering
    """
    dialect = get_dialect(source.dialect)
    col = dialect.quote_identifier(id_column)

    where = None
    if ids is not None:
        id_list = ", ".join(str(int(i)) for i in ids)
        where = f"{col} IN ({id_list})" if id_list else "1 = 0"

    sql = build_prediction_query(spec, source.table, dialect, alias=PREDICTION_COLUMN, where=where)
    if id_column in source.columns():
        sql += f" ORDER BY {col}"

    frame = source.query(sql)
    frame[PREDICTION_COLUMN] = pd.to_numeric(frame[PREDICTION_COLUMN], errors="coerce").astype("float64")
    return frame


class PredictionValidator:
    """
    Compares in-memory predictions with predictions computed in the database.

    Args:
        threshold: Largest absolute difference counted as a match
        id_column: Key column of the source table
    """

    def __init__(self, threshold: float = DEFAULT_MISMATCH_THRESHOLD, id_column: str = ID_COLUMN):
        if threshold < 0:
            raise ValueError(f"Threshold must be non-negative: {threshold}")
        self.threshold = threshold
        self.id_column = id_column
        self.logger = logging.getLogger(f"{__name__}.PredictionValidator")

    def compare(self,
                reference: Sequence[float],
                candidate: Sequence[float],
                ids: Optional[Sequence[int]] = None) -> ScoringResult:
        """Compare two prediction vectors row by row."""
        result = ScoringResult(threshold=self.threshold)
        differences = prediction_differences(reference, candidate)
        if ids is not None:
            differences.insert(0, self.id_column, np.asarray(ids))

        result.differences = differences
        result.n_rows = len(differences)

        if result.n_rows == 0:
            result.add_error("No rows were scored")
            return result

        abs_diff = differences["abs_diff"].to_numpy()
        result.max_absolute_difference = float(abs_diff.max())
        result.mean_absolute_difference = float(abs_diff.mean())
        result.max_relative_difference = float(differences["rel_diff"].max())
        result.n_mismatches = int((abs_diff > self.threshold).sum())
        result.passed = result.n_mismatches == 0

        result.prediction_correlation = self._correlation(differences["reference"], differences["candidate"])

        if not result.passed:
            result.add_warning(
                f"{result.n_mismatches} of {result.n_rows} predictions differ by more than "
                f"{self.threshold:g} (max {result.max_absolute_difference:.3e})"
            )
            self.logger.warning("prediction.mismatch", extra={
                "n_mismatches": result.n_mismatches,
                "n_rows": result.n_rows,
                "max_absolute_difference": result.max_absolute_difference,
                "threshold": self.threshold
            })

        self.logger.info("prediction.compared", extra={
            "n_rows": result.n_rows,
            "max_absolute_difference": result.max_absolute_difference,
            "validation_passed": result.passed
        })

        return result

    def _correlation(self, reference: pd.Series, candidate: pd.Series) -> Optional[float]:
        mask = np.isfinite(reference.to_numpy()) & np.isfinite(candidate.to_numpy())
        x, y = reference.to_numpy()[mask], candidate.to_numpy()[mask]
        # undefined for constant or tiny vectors
        if len(x) < 2 or np.ptp(x) == 0 or np.ptp(y) == 0:
            return None
        r, _ = stats.pearsonr(x, y)
        return float(r)

    def validate(self,
                 spec: ModelSpec,
                 source,
                 ids: Optional[Sequence[int]] = None,
                 reference: Optional[Callable[[pd.DataFrame], Sequence[float]]] = None,
                 target: Optional[str] = None) -> ScoringResult:
        """
        Score rows in the database with the spec's SQL and compare.

        Args:
            spec: Portable model spec
            source: Trip source holding the rows
            ids: Rows to score (all rows when None)
            reference: Callable producing reference predictions for the fetched
                rows; defaults to ``spec.predict``
            target: Observed column for goodness of fit

        Returns:
            ScoringResult
        """
        frame = score_in_database(spec, source, ids, self.id_column)
        candidate = frame[PREDICTION_COLUMN].to_numpy()
        rows = frame.drop(columns=[PREDICTION_COLUMN])

        expected = spec.predict(rows) if reference is None else reference(rows)
        row_ids = rows[self.id_column].to_numpy() if self.id_column in rows.columns else None

        result = self.compare(expected, candidate, row_ids)

        if target is not None and result.n_rows:
            result.goodness_of_fit = self.goodness_of_fit(rows[target], candidate)

        return result

    def goodness_of_fit(self, observed: Sequence[float], predicted: Sequence[float]) -> Dict[str, float]:
        """RMSE, MAE and R^2 over rows where both values are present."""
        observed = pd.to_numeric(pd.Series(observed), errors="coerce").to_numpy(dtype=np.float64)
        predicted = np.asarray(predicted, dtype=np.float64)

        mask = np.isfinite(observed) & np.isfinite(predicted)
        if not mask.any():
            return {}

        metrics = regression_metrics(observed[mask], predicted[mask])
        metrics["n_observations"] = int(mask.sum())
        return metrics


def model_predictions(model: Any, rows, fields: Sequence[str], link: str = "identity") -> np.ndarray:
    """Predictions of a fitted model on ``rows``, on the response scale of its spec."""
    X = rows_to_frame(rows, fields)[list(fields)].apply(pd.to_numeric, errors="coerce").astype("float64")

    if isinstance(model, xgb.Booster):
        return np.asarray(model.predict(xgb.DMatrix(X)), dtype=np.float64)
    if isinstance(model, xgb.XGBModel):
        if link == "logistic" and hasattr(model, "predict_proba"):
            return np.asarray(model.predict_proba(X)[:, 1], dtype=np.float64)
        return np.asarray(model.predict(X), dtype=np.float64)

    # scikit-learn estimators reject missing values; those rows predict NaN
    predictions = np.full(len(X), np.nan)
    complete = X.notna().all(axis=1).to_numpy()
    if complete.any():
        if link == "logistic" and hasattr(model, "predict_proba"):
            predictions[complete] = model.predict_proba(X[complete])[:, 1]
        else:
            predictions[complete] = model.predict(X[complete])
    return predictions


def compare_model_to_spec(model: Any,
                          spec: ModelSpec,
                          rows,
                          threshold: float = DEFAULT_MISMATCH_THRESHOLD) -> ScoringResult:
    """
    Compare a fitted model with its translated spec in memory.

    xgboost predicts in float32, so its differences are of order 1e-7 relative.
    """
    reference = model_predictions(model, rows, spec.fields, spec.link)
    candidate = spec.predict(rows)
    return PredictionValidator(threshold).compare(reference, candidate)
