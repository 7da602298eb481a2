"""
Portable Model Specs

Backend-agnostic structural descriptions of fitted models. A spec holds
exactly what is needed to reproduce the model's prediction function and
exposes one capability set regardless of its kind:

- ``predict(rows)``: in-memory evaluation
- ``to_expression()`` / ``to_query_expression(dialect)``: SQL generation
- ``to_dict()`` / ``from_dict()``: serializable form

Kinds:
- ``linear``: intercept + per-field coefficients
- ``tree_ensemble``: base score + ordered trees of split/leaf nodes

Specs are immutable after construction and validated structurally.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ..serving.query_generation import (
    Case,
    Column,
    Expr,
    IsNull,
    Literal,
    Or,
    BinaryOp,
    Split,
    Sum,
    apply_link,
    generate_query_expression,
)


SPEC_FORMAT_VERSION = 1

LINKS = ("identity", "logistic", "exp")
SPLIT_OPERATORS = ("<", "<=")
PRECISIONS = ("float32", "float64")

Rows = Union[pd.DataFrame, Mapping[str, Any], Sequence[Mapping[str, Any]]]


class MalformedSpecError(ValueError):
    """Raised when a spec (or its serialized form) cannot describe a valid model."""


def rows_to_frame(rows: Rows, fields: Sequence[str]) -> pd.DataFrame:
    """Normalize a frame, a single row mapping or a list of row mappings."""
    if isinstance(rows, pd.DataFrame):
        frame = rows
    elif isinstance(rows, Mapping):
        frame = pd.DataFrame([dict(rows)])
    else:
        frame = pd.DataFrame(list(rows))

    missing = [f for f in fields if f not in frame.columns]
    if missing:
        raise KeyError(f"Rows are missing model fields: {missing}")

    return frame


def _feature_matrix(frame: pd.DataFrame, fields: Sequence[str]) -> np.ndarray:
    """Float64 matrix of ``fields``; None / NA become NaN."""
    return frame[list(fields)].apply(pd.to_numeric, errors="coerce").to_numpy(dtype=np.float64, na_value=np.nan)


def _apply_link_array(margin: np.ndarray, link: str) -> np.ndarray:
    if link == "identity":
        return margin
    if link == "logistic":
        return 1.0 / (1.0 + np.exp(0.0 - margin))
    if link == "exp":
        return np.exp(margin)
    raise ValueError(f"Unsupported link function: {link}")


class ModelSpec:
    """Common interface of portable model specs."""

    kind: str = ""

    def predict(self, rows: Rows) -> np.ndarray:
        raise NotImplementedError

    def to_expression(self) -> Expr:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    def to_query_expression(self, dialect: str = "duckdb") -> str:
        return generate_query_expression(self, dialect)


@dataclass(frozen=True)
class LinearModelSpec(ModelSpec):
    """
    Linear predictor ``link^-1(intercept + sum(coef * field))``.
    """
    model: str
    fields: Tuple[str, ...]
    intercept: float
    coefficients: Tuple[float, ...]
    link: str = "identity"
    target: Optional[str] = None

    kind = "linear"

    def __post_init__(self):
        object.__setattr__(self, "fields", tuple(str(f) for f in self.fields))
        object.__setattr__(self, "coefficients", tuple(float(c) for c in self.coefficients))
        object.__setattr__(self, "intercept", float(self.intercept))

        if len(self.fields) != len(self.coefficients):
            raise MalformedSpecError(
                f"Field/coefficient count mismatch: {len(self.fields)} vs {len(self.coefficients)}"
            )
        if len(set(self.fields)) != len(self.fields):
            raise MalformedSpecError(f"Duplicate fields: {list(self.fields)}")
        if self.link not in LINKS:
            raise MalformedSpecError(f"Unsupported link function: {self.link}")
        if not all(math.isfinite(v) for v in (self.intercept, *self.coefficients)):
            raise MalformedSpecError("Linear model parameters must be finite")

    @property
    def coefficient_map(self) -> Dict[str, float]:
        return dict(zip(self.fields, self.coefficients))

    def predict(self, rows: Rows) -> np.ndarray:
        frame = rows_to_frame(rows, self.fields)
        X = _feature_matrix(frame, self.fields)

        # sequential accumulation, same order as the SQL expression
        margin = np.full(len(frame), self.intercept, dtype=np.float64)
        for j, coef in enumerate(self.coefficients):
            margin = margin + X[:, j] * coef

        return _apply_link_array(margin, self.link)

    def to_expression(self) -> Expr:
        terms: List[Expr] = [Literal(self.intercept)]
        terms.extend(
            BinaryOp("*", Column(name), Literal(coef))
            for name, coef in zip(self.fields, self.coefficients)
        )
        return apply_link(Sum(tuple(terms)), self.link)

    def to_dict(self) -> Dict[str, Any]:
        general = {
            "kind": self.kind,
            "model": self.model,
            "version": SPEC_FORMAT_VERSION,
            "link": self.link,
            "fields": list(self.fields),
        }
        if self.target is not None:
            general["target"] = self.target

        return {
            "general": general,
            "intercept": self.intercept,
            "coefficients": [
                {"field": name, "coef": coef}
                for name, coef in zip(self.fields, self.coefficients)
            ],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LinearModelSpec":
        general = data["general"]
        terms = data.get("coefficients") or []
        return cls(
            model=str(general.get("model", "linear")),
            fields=[term["field"] for term in terms],
            intercept=float(data["intercept"]),
            coefficients=[float(term["coef"]) for term in terms],
            link=general.get("link", "identity"),
            target=general.get("target"),
        )


@dataclass(frozen=True)
class TreeNode:
    """
    One node of a decision tree: a split (``field`` set) or a leaf (``leaf`` set).

    ``left`` is taken when the split condition holds, ``right`` otherwise and
    ``missing`` when the field value is missing.
    """
    id: int
    field: Optional[str] = None
    threshold: Optional[float] = None
    left: Optional[int] = None
    right: Optional[int] = None
    missing: Optional[int] = None
    leaf: Optional[float] = None

    @property
    def is_leaf(self) -> bool:
        return self.field is None

    def to_dict(self) -> Dict[str, Any]:
        if self.is_leaf:
            return {"id": self.id, "leaf": self.leaf}
        return {
            "id": self.id,
            "field": self.field,
            "threshold": self.threshold,
            "left": self.left,
            "right": self.right,
            "missing": self.missing,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TreeNode":
        if "leaf" in data:
            return cls(id=int(data["id"]), leaf=float(data["leaf"]))
        return cls(
            id=int(data["id"]),
            field=str(data["field"]),
            threshold=float(data["threshold"]),
            left=int(data["left"]),
            right=int(data["right"]),
            missing=int(data["missing"]) if data.get("missing") is not None else int(data["right"]),
        )


class _CompiledTree:
    """Array form of a tree for vectorized traversal."""

    def __init__(self, nodes: Sequence[TreeNode], field_index: Mapping[str, int]):
        position = {node.id: i for i, node in enumerate(nodes)}
        n = len(nodes)

        self.is_leaf = np.array([node.is_leaf for node in nodes], dtype=bool)
        self.value = np.array([node.leaf if node.is_leaf else 0.0 for node in nodes], dtype=np.float64)
        self.feature = np.array([-1 if node.is_leaf else field_index[node.field] for node in nodes], dtype=np.int64)
        self.threshold = np.array([0.0 if node.is_leaf else node.threshold for node in nodes], dtype=np.float64)
        self.left = np.array([0 if node.is_leaf else position[node.left] for node in nodes], dtype=np.int64)
        self.right = np.array([0 if node.is_leaf else position[node.right] for node in nodes], dtype=np.int64)
        self.missing = np.array([0 if node.is_leaf else position[node.missing] for node in nodes], dtype=np.int64)
        self.size = n

    def leaf_values(self, X: np.ndarray, split_operator: str) -> np.ndarray:
        rows = np.arange(X.shape[0])
        current = np.zeros(X.shape[0], dtype=np.int64)

        # every step moves an active row one level down; a valid tree has depth < size
        for _ in range(self.size):
            active = ~self.is_leaf[current]
            if not active.any():
                break
            idx = current[active]
            values = X[rows[active], self.feature[idx]]
            if split_operator == "<":
                go_left = values < self.threshold[idx]
            else:
                go_left = values <= self.threshold[idx]
            nxt = np.where(go_left, self.left[idx], self.right[idx])
            nxt = np.where(np.isnan(values), self.missing[idx], nxt)
            current[active] = nxt

        return self.value[current]


@dataclass(frozen=True)
class TreeEnsembleSpec(ModelSpec):
    """
    Additive tree ensemble ``link^-1(base_score + sum(tree_i(x)))``.

    ``base_score`` is in margin space. With ``feature_precision == "float32"``
    inputs are rounded to float32 before comparison, as xgboost and
    scikit-learn trees do.
    """
    model: str
    fields: Tuple[str, ...]
    trees: Tuple[Tuple[TreeNode, ...], ...]
    base_score: float = 0.0
    link: str = "identity"
    split_operator: str = "<"
    feature_precision: str = "float32"
    target: Optional[str] = None

    kind = "tree_ensemble"

    def __post_init__(self):
        object.__setattr__(self, "fields", tuple(str(f) for f in self.fields))
        object.__setattr__(self, "trees", tuple(tuple(tree) for tree in self.trees))
        object.__setattr__(self, "base_score", float(self.base_score))

        if self.link not in LINKS:
            raise MalformedSpecError(f"Unsupported link function: {self.link}")
        if self.split_operator not in SPLIT_OPERATORS:
            raise MalformedSpecError(f"Unsupported split operator: {self.split_operator}")
        if self.feature_precision not in PRECISIONS:
            raise MalformedSpecError(f"Unsupported feature precision: {self.feature_precision}")
        if len(set(self.fields)) != len(self.fields):
            raise MalformedSpecError(f"Duplicate fields: {list(self.fields)}")
        if not math.isfinite(self.base_score):
            raise MalformedSpecError("Base score must be finite")

        for i, tree in enumerate(self.trees):
            self._validate_tree(i, tree)

        field_index = {name: j for j, name in enumerate(self.fields)}
        object.__setattr__(self, "_compiled", tuple(_CompiledTree(t, field_index) for t in self.trees))

    def _validate_tree(self, index: int, tree: Sequence[TreeNode]) -> None:
        if not tree:
            raise MalformedSpecError(f"Tree {index} has no nodes")

        by_id = {}
        for node in tree:
            if node.id in by_id:
                raise MalformedSpecError(f"Tree {index}: duplicate node id {node.id}")
            by_id[node.id] = node

        for node in tree:
            if node.is_leaf:
                if node.leaf is None or not math.isfinite(node.leaf):
                    raise MalformedSpecError(f"Tree {index}: leaf {node.id} has no finite value")
                continue
            if node.field not in self.fields:
                raise MalformedSpecError(f"Tree {index}: node {node.id} splits on unknown field {node.field!r}")
            if node.threshold is None or math.isnan(node.threshold):
                raise MalformedSpecError(f"Tree {index}: node {node.id} has no threshold")
            for child in (node.left, node.right, node.missing):
                if child not in by_id:
                    raise MalformedSpecError(f"Tree {index}: node {node.id} references missing child {child}")
            if node.missing not in (node.left, node.right):
                raise MalformedSpecError(f"Tree {index}: node {node.id} missing branch must be left or right")

        # reachability from the root without revisiting a node
        seen = set()
        stack = [tree[0].id]
        while stack:
            node_id = stack.pop()
            if node_id in seen:
                raise MalformedSpecError(f"Tree {index}: node {node_id} reached twice")
            seen.add(node_id)
            node = by_id[node_id]
            if not node.is_leaf:
                stack.extend((node.left, node.right))

        if len(seen) != len(tree):
            unreachable = sorted(set(by_id) - seen)
            raise MalformedSpecError(f"Tree {index}: unreachable nodes {unreachable}")

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    def _prepare(self, X: np.ndarray) -> np.ndarray:
        if self.feature_precision == "float32":
            return X.astype(np.float32).astype(np.float64)
        return X

    def predict_margin(self, rows: Rows) -> np.ndarray:
        frame = rows_to_frame(rows, self.fields)
        X = self._prepare(_feature_matrix(frame, self.fields))

        margin = np.full(len(frame), self.base_score, dtype=np.float64)
        for compiled in self._compiled:
            margin = margin + compiled.leaf_values(X, self.split_operator)
        return margin

    def predict(self, rows: Rows) -> np.ndarray:
        return _apply_link_array(self.predict_margin(rows), self.link)

    def _tree_expression(self, tree: Sequence[TreeNode]) -> Expr:
        by_id = {node.id: node for node in tree}

        def build(node_id: int) -> Expr:
            node = by_id[node_id]
            if node.is_leaf:
                return Literal(node.leaf)

            condition: Expr = Split(self.split_operator, Column(node.field), node.threshold, self.feature_precision)
            if node.missing == node.left:
                condition = Or(condition, IsNull(Column(node.field)))
            # NULL comparisons are not true, so missing values fall through to ELSE
            return Case(condition, build(node.left), build(node.right))

        return build(tree[0].id)

    def to_expression(self) -> Expr:
        terms = [Literal(self.base_score)]
        terms.extend(self._tree_expression(tree) for tree in self.trees)
        return apply_link(Sum(tuple(terms)), self.link)

    def to_dict(self) -> Dict[str, Any]:
        general = {
            "kind": self.kind,
            "model": self.model,
            "version": SPEC_FORMAT_VERSION,
            "link": self.link,
            "split_operator": self.split_operator,
            "feature_precision": self.feature_precision,
            "fields": list(self.fields),
        }
        if self.target is not None:
            general["target"] = self.target

        return {
            "general": general,
            "base_score": self.base_score,
            "trees": [[node.to_dict() for node in tree] for tree in self.trees],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TreeEnsembleSpec":
        general = data["general"]
        return cls(
            model=str(general.get("model", "tree_ensemble")),
            fields=general["fields"],
            trees=[[TreeNode.from_dict(node) for node in tree] for tree in data["trees"]],
            base_score=float(data.get("base_score", 0.0)),
            link=general.get("link", "identity"),
            split_operator=general.get("split_operator", "<"),
            feature_precision=general.get("feature_precision", "float32"),
            target=general.get("target"),
        )


SPEC_KINDS = {
    LinearModelSpec.kind: LinearModelSpec,
    TreeEnsembleSpec.kind: TreeEnsembleSpec,
}


def spec_from_dict(data: Mapping[str, Any]) -> ModelSpec:
    """Rebuild a spec from its ``to_dict()`` form, dispatching on ``general.kind``."""
    try:
        kind = data["general"]["kind"]
    except (KeyError, TypeError) as e:
        raise MalformedSpecError("Spec is missing general.kind") from e

    if kind not in SPEC_KINDS:
        raise MalformedSpecError(f"Unknown spec kind: {kind!r}")

    try:
        return SPEC_KINDS[kind].from_dict(data)
    except MalformedSpecError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedSpecError(f"Invalid {kind} spec: {e}") from e
