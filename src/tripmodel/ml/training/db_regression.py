"""
In-database linear regression.

Fits ordinary least squares without pulling rows out of the database: one
aggregate query returns the row count, first moments and cross products of
the complete rows, and the normal equations are solved locally with numpy.
The system is solved in centered form, which keeps it well conditioned for
columns with large means (coordinates, amounts).
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Sequence

import numpy as np

from ...data.source import TripSource
from ..portable.spec import LinearModelSpec
from ..serving.query_generation import get_dialect


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseRegressionResult:
    """Fitted spec plus summary statistics of the fit."""
    spec: LinearModelSpec
    n_observations: int
    r_squared: float
    sigma: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intercept": self.spec.intercept,
            "coefficients": self.spec.coefficient_map,
            "n_observations": self.n_observations,
            "r_squared": self.r_squared,
            "sigma": self.sigma
        }


def _moment_query(source: TripSource, target: str, features: Sequence[str]) -> str:
    double = get_dialect(source.dialect).type_name("float64") or "REAL"
    columns = [*features, target]
    value = {col: f"CAST({source.quote(col)} AS {double})" for col in columns}

    selects = ["COUNT(*) AS n"]
    for i, a in enumerate(columns):
        selects.append(f"SUM({value[a]}) AS s_{i}")
        for j in range(i, len(columns)):
            selects.append(f"SUM({value[a]} * {value[columns[j]]}) AS p_{i}_{j}")

    complete = " AND ".join(f"{source.quote(col)} IS NOT NULL" for col in columns)
    return f"SELECT {', '.join(selects)} FROM {source.quoted_table} WHERE {complete}"


def fit_linear_regression_db(source: TripSource,
                             target: str,
                             features: Sequence[str]) -> DatabaseRegressionResult:
    """
    Fit ``target ~ features`` by least squares inside the database.

    Rows with a NULL in any model column are excluded.

    Raises:
        ValueError: If there are fewer complete rows than parameters or the
            features are linearly dependent
    """
    features = list(features)
    if not features:
        raise ValueError("At least one feature is required")

    row = source.query(_moment_query(source, target, features)).iloc[0]

    n = int(row["n"])
    k = len(features)
    if n < k + 1:
        raise ValueError(f"Not enough complete rows to fit {k + 1} parameters: {n}")

    m = k + 1  # features then target
    sums = np.array([float(row[f"s_{i}"]) for i in range(m)])
    products = np.empty((m, m))
    for i in range(m):
        for j in range(i, m):
            products[i, j] = products[j, i] = float(row[f"p_{i}_{j}"])

    means = sums / n
    centered = products - n * np.outer(means, means)

    sxx = centered[:k, :k]
    sxy = centered[:k, k]
    syy = centered[k, k]

    if np.linalg.matrix_rank(sxx) < k:
        raise ValueError(f"Singular system: features are linearly dependent or constant: {features}")

    beta = np.linalg.solve(sxx, sxy)
    intercept = float(means[k] - beta @ means[:k])

    sse = max(float(syy - beta @ sxy), 0.0)
    r_squared = 1.0 - sse / syy if syy > 0 else float("nan")
    dof = n - k - 1
    sigma = math.sqrt(sse / dof) if dof > 0 else float("nan")

    spec = LinearModelSpec(
        model="DatabaseLinearRegression",
        fields=features,
        intercept=intercept,
        coefficients=beta.tolist(),
        link="identity",
        target=target,
    )

    logger.info("db_regression.fitted", extra={
        "dialect": source.dialect,
        "n_observations": n,
        "n_features": k,
        "r_squared": r_squared
    })

    return DatabaseRegressionResult(spec=spec, n_observations=n, r_squared=r_squared, sigma=sigma)
