"""
Trip Correlation Analysis

Pairwise correlation of the numeric trip columns, computed either in memory
with pandas or inside the database with the SQL ``corr`` aggregate. Both
paths use pairwise deletion: a missing value only drops the row from the
pairs that involve its column.

Results are tidy (one row per unordered pair) and can be rendered as a
seaborn heatmap or as a networkx graph of strongly correlated pairs.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import pandas as pd
import seaborn as sns

from ...ml.serving.query_generation import get_dialect
from ..schema import numeric_columns
from ..source import TripSource


logger = logging.getLogger(__name__)

METHODS = ("pearson", "spearman", "kendall")


@dataclass
class CorrelationResult:
    """Correlation pairs ``(x, y, r)`` with ``x`` before ``y`` in column order."""
    columns: List[str]
    pairs: pd.DataFrame
    method: str = "pearson"

    @property
    def matrix(self) -> pd.DataFrame:
        """Symmetric square matrix; the diagonal is NaN for columns with no defined pair."""
        undefined = self.undefined_columns()
        diagonal = [math.nan if column in undefined else 1.0 for column in self.columns]
        matrix = pd.DataFrame(np.diag(diagonal), index=self.columns, columns=self.columns)
        for x, y, r in self.pairs[["x", "y", "r"]].itertuples(index=False):
            matrix.loc[x, y] = r
            matrix.loc[y, x] = r
        return matrix

    def undefined_columns(self) -> List[str]:
        """Columns whose every pair is NaN (constant or empty columns)."""
        undefined = []
        for column in self.columns:
            involved = self.pairs[(self.pairs["x"] == column) | (self.pairs["y"] == column)]
            if len(involved) and involved["r"].isna().all():
                undefined.append(column)
        return undefined

    def get(self, a: str, b: str) -> float:
        """Correlation of two columns; symmetric in its arguments."""
        for name in (a, b):
            if name not in self.columns:
                raise KeyError(f"Unknown column: {name}")
        if a == b:
            return math.nan if a in self.undefined_columns() else 1.0

        match = self.pairs[((self.pairs["x"] == a) & (self.pairs["y"] == b)) |
                           ((self.pairs["x"] == b) & (self.pairs["y"] == a))]
        return float(match["r"].iloc[0])

    def focus(self, columns: Sequence[str]) -> pd.DataFrame:
        """Pairs involving any of ``columns``."""
        wanted = set(columns)
        mask = self.pairs["x"].isin(wanted) | self.pairs["y"].isin(wanted)
        return self.pairs[mask].reset_index(drop=True)

    def strongest(self, n: int = 10) -> pd.DataFrame:
        """The ``n`` pairs with the largest absolute correlation."""
        defined = self.pairs.dropna(subset=["r"])
        order = defined["r"].abs().sort_values(ascending=False).index
        return defined.loc[order].head(n).reset_index(drop=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "columns": list(self.columns),
            "pairs": [
                {"x": x, "y": y, "r": None if pd.isna(r) else float(r)}
                for x, y, r in self.pairs[["x", "y", "r"]].itertuples(index=False)
            ]
        }


def _pairs_frame(columns: Sequence[str], values: Dict[Tuple[str, str], float]) -> pd.DataFrame:
    rows = []
    for i, x in enumerate(columns):
        for y in columns[i + 1:]:
            r = values[(x, y)]
            # rounding can push |r| a hair past 1
            rows.append({"x": x, "y": y, "r": r if pd.isna(r) else float(np.clip(r, -1.0, 1.0))})
    return pd.DataFrame(rows, columns=["x", "y", "r"])


def correlate(frame: pd.DataFrame,
              method: str = "pearson",
              columns: Optional[Sequence[str]] = None) -> CorrelationResult:
    """
    Pairwise correlation of numeric columns of ``frame``.

    Args:
        frame: Trip rows
        method: pearson, spearman or kendall
        columns: Columns to correlate (all numeric columns except the id when None)

    Returns:
        CorrelationResult
    """
    if method not in METHODS:
        raise ValueError(f"Unsupported correlation method: {method}")

    columns = list(columns) if columns is not None else numeric_columns(frame)
    matrix = frame[columns].astype("float64").corr(method=method)

    values = {(x, y): matrix.loc[x, y] for x in columns for y in columns}
    result = CorrelationResult(columns=columns, pairs=_pairs_frame(columns, values), method=method)

    logger.info("correlation.computed", extra={
        "method": method,
        "n_columns": len(columns),
        "n_rows": len(frame)
    })

    return result


def correlate_in_database(source: TripSource,
                          columns: Optional[Sequence[str]] = None) -> CorrelationResult:
    """
    Pearson correlation of every column pair with one aggregate query.

    ``corr`` ignores rows where either argument is NULL, which is pairwise
    deletion. Columns default to the numeric columns of a small preview read.
    """
    if columns is None:
        preview = source.query(f"SELECT * FROM {source.quoted_table} LIMIT 100").infer_objects()
        columns = numeric_columns(preview)
    columns = list(columns)

    double = get_dialect(source.dialect).type_name("float64")

    selects, aliases = [], {}
    for i, x in enumerate(columns):
        for j in range(i + 1, len(columns)):
            y = columns[j]
            alias = f"c_{i}_{j}"
            aliases[(x, y)] = alias
            selects.append(
                f"corr(CAST({source.quote(x)} AS {double}), CAST({source.quote(y)} AS {double})) AS {alias}"
            )

    values: Dict[Tuple[str, str], float] = {}
    if selects:
        row = source.query(f"SELECT {', '.join(selects)} FROM {source.quoted_table}").iloc[0]
        for pair, alias in aliases.items():
            value = row[alias]
            values[pair] = np.nan if value is None or pd.isna(value) else float(value)

    result = CorrelationResult(columns=columns, pairs=_pairs_frame(columns, values), method="pearson")

    logger.info("correlation.computed_in_database", extra={
        "dialect": source.dialect,
        "n_columns": len(columns),
        "n_pairs": len(values)
    })

    return result


# ---------------------------------------------------------------------------
# Plots
# ---------------------------------------------------------------------------

def _save(fig: plt.Figure, path: Optional[Union[str, Path]]) -> None:
    if path is None:
        return
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=120, bbox_inches="tight")
    logger.info("plot.saved", extra={"path": str(path)})


def plot_correlation_heatmap(result: CorrelationResult,
                             path: Optional[Union[str, Path]] = None,
                             annotate: bool = True) -> plt.Figure:
    """Render the correlation matrix as a heatmap."""
    size = max(6.0, 0.6 * len(result.columns))
    fig, ax = plt.subplots(figsize=(size, size * 0.8))

    sns.heatmap(result.matrix, ax=ax, vmin=-1.0, vmax=1.0, center=0.0, cmap="coolwarm",
                annot=annotate, fmt=".2f", square=True, cbar_kws={"shrink": 0.8})
    ax.set_title(f"Trip column correlation ({result.method})")

    _save(fig, path)
    return fig


def correlation_graph(result: CorrelationResult, min_r: float = 0.3) -> nx.Graph:
    """Graph with an edge for every pair with ``|r| >= min_r``."""
    graph = nx.Graph()
    for x, y, r in result.pairs[["x", "y", "r"]].itertuples(index=False):
        if not pd.isna(r) and abs(r) >= min_r:
            graph.add_edge(x, y, weight=float(r))
    return graph


def plot_correlation_network(result: CorrelationResult,
                             min_r: float = 0.3,
                             path: Optional[Union[str, Path]] = None) -> plt.Figure:
    """Render strongly correlated pairs as a network; width grows with |r|."""
    graph = correlation_graph(result, min_r)
    fig, ax = plt.subplots(figsize=(9, 7))

    if graph.number_of_edges() == 0:
        ax.text(0.5, 0.5, f"No pairs with |r| >= {min_r}", ha="center", va="center")
    else:
        pos = nx.spring_layout(graph, seed=42, k=0.9, iterations=50)
        weights = [graph[u][v]["weight"] for u, v in graph.edges()]

        nx.draw_networkx_nodes(graph, pos, ax=ax, node_color="lightblue", node_size=1800)
        nx.draw_networkx_edges(graph, pos, ax=ax,
                               width=[1.0 + 5.0 * abs(w) for w in weights],
                               edge_color=["firebrick" if w < 0 else "seagreen" for w in weights])
        nx.draw_networkx_labels(graph, pos, ax=ax, font_size=9)
        nx.draw_networkx_edge_labels(graph, pos, ax=ax,
                                     edge_labels={(u, v): f"{d['weight']:.2f}" for u, v, d in graph.edges(data=True)},
                                     font_size=8)

    ax.set_title(f"Correlation network (|r| >= {min_r})")
    ax.axis("off")

    _save(fig, path)
    return fig
