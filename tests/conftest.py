"""
Test configuration and shared fixtures for tripmodel.

Fixtures build small, deterministic trip tables in in-memory DuckDB
databases, so every test runs without external services.
"""

import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from tripmodel.data.source import DuckDBTripSource
from tripmodel.data.synthetic import generate_trips
from tripmodel.ml.portable.spec import TreeEnsembleSpec, TreeNode


@pytest.fixture
def trips() -> pd.DataFrame:
    """400 synthetic trips with a dense 1-based id."""
    return generate_trips(400, seed=7)


@pytest.fixture
def trip_source(trips):
    """DuckDB source holding the synthetic trips."""
    source = DuckDBTripSource.from_frame(trips)
    yield source
    source.close()


@pytest.fixture
def linear_frame() -> pd.DataFrame:
    """500 rows of y = 3 + 2*x1 - 1.5*x2 + noise."""
    rng = np.random.default_rng(0)
    x1 = rng.normal(0.0, 2.0, 500)
    x2 = rng.uniform(-5.0, 5.0, 500)
    y = 3.0 + 2.0 * x1 - 1.5 * x2 + rng.normal(0.0, 0.1, 500)
    return pd.DataFrame({"x1": x1, "x2": x2, "y": y})


@pytest.fixture
def stump_spec() -> TreeEnsembleSpec:
    """Single split on x at 0.5: left -1.0, right 1.0, missing right."""
    return TreeEnsembleSpec(
        model="stump",
        fields=["x"],
        trees=[[
            TreeNode(id=0, field="x", threshold=0.5, left=1, right=2, missing=2),
            TreeNode(id=1, leaf=-1.0),
            TreeNode(id=2, leaf=1.0),
        ]],
        base_score=0.0,
    )
