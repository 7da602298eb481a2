"""
Model Translator - Fitted Models to Portable Specs

Reads the public structure of fitted models (coefficients, tree dumps) and
produces portable model specs that reproduce their prediction functions.

Supported models:
- scikit-learn LinearRegression, Ridge, Lasso, ElasticNet, HuberRegressor,
  SGDRegressor (identity link), binary LogisticRegression (logistic link),
  PoissonRegressor and GammaRegressor (log link)
- xgboost XGBRegressor, binary XGBClassifier and raw Boosters (gbtree)
- scikit-learn GradientBoostingRegressor

Split conventions are recorded on the spec: xgboost routes ``x < t`` left,
scikit-learn routes ``x <= t`` left. Both compare float32-rounded inputs.
"""

import json
import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import xgboost as xgb
from sklearn.ensemble import GradientBoostingRegressor
from sklearn.linear_model import (
    ElasticNet,
    GammaRegressor,
    HuberRegressor,
    Lasso,
    LinearRegression,
    LogisticRegression,
    PoissonRegressor,
    Ridge,
    SGDRegressor,
)
from sklearn.utils.validation import check_is_fitted

from .spec import LinearModelSpec, ModelSpec, TreeEnsembleSpec, TreeNode


logger = logging.getLogger(__name__)


class UnsupportedModelError(TypeError):
    """Raised when a model kind cannot be described by a portable spec."""


_IDENTITY_LINEAR = (LinearRegression, Ridge, Lasso, ElasticNet, HuberRegressor, SGDRegressor)
_LOG_LINEAR = (PoissonRegressor, GammaRegressor)

# objective -> link of the prediction
XGB_OBJECTIVE_LINKS = {
    "reg:squarederror": "identity",
    "reg:absoluteerror": "identity",
    "reg:pseudohubererror": "identity",
    "binary:logistic": "logistic",
    "reg:logistic": "logistic",
    "count:poisson": "exp",
    "reg:gamma": "exp",
    "reg:tweedie": "exp",
}


def parse_model(model: Any,
                feature_names: Optional[Sequence[str]] = None,
                target: Optional[str] = None) -> ModelSpec:
    """
    Translate a fitted model into a portable spec.

    Args:
        model: Fitted model object
        feature_names: Field names when the model was fitted without them
        target: Optional name of the predicted column, kept as metadata

    Returns:
        LinearModelSpec or TreeEnsembleSpec

    Raises:
        UnsupportedModelError: If the model kind is not supported
    """
    if isinstance(model, (xgb.XGBModel, xgb.Booster)):
        spec = _parse_xgboost(model, feature_names, target)
    elif isinstance(model, GradientBoostingRegressor):
        spec = _parse_sklearn_gradient_boosting(model, feature_names, target)
    elif isinstance(model, _IDENTITY_LINEAR):
        spec = _parse_sklearn_linear(model, feature_names, target, link="identity")
    elif isinstance(model, _LOG_LINEAR):
        spec = _parse_sklearn_linear(model, feature_names, target, link="exp")
    elif isinstance(model, LogisticRegression):
        spec = _parse_sklearn_logistic(model, feature_names, target)
    else:
        raise UnsupportedModelError(f"Unsupported model type: {type(model).__module__}.{type(model).__name__}")

    logger.info("model.translated", extra={
        "model_type": type(model).__name__,
        "kind": spec.kind,
        "n_fields": len(spec.fields),
        "link": spec.link
    })

    return spec


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

def _resolve_fields(model_names: Optional[Sequence[str]],
                    override: Optional[Sequence[str]],
                    n_features: int,
                    prefix: str) -> List[str]:
    if override is not None:
        fields = [str(name) for name in override]
    elif model_names is not None:
        fields = [str(name) for name in model_names]
    else:
        fields = [f"{prefix}{i}" for i in range(n_features)]

    if len(fields) != n_features:
        raise ValueError(f"Expected {n_features} feature names, got {len(fields)}")

    return fields


def _as_float32(value: float) -> float:
    """Exact double value of the float32 nearest to ``value``."""
    return float(np.float32(value))


# ---------------------------------------------------------------------------
# scikit-learn linear models
# ---------------------------------------------------------------------------

def _single_output(array: Any, model: Any) -> np.ndarray:
    values = np.asarray(array, dtype=np.float64)
    if values.ndim == 2:
        if values.shape[0] != 1:
            raise UnsupportedModelError(
                f"Unsupported model type: multi-output {type(model).__name__} ({values.shape[0]} outputs)"
            )
        values = values[0]
    return values


def _parse_sklearn_linear(model: Any,
                          feature_names: Optional[Sequence[str]],
                          target: Optional[str],
                          link: str) -> LinearModelSpec:
    check_is_fitted(model)

    coefficients = _single_output(model.coef_, model)
    intercept = float(np.ravel(model.intercept_)[0]) if np.ndim(model.intercept_) else float(model.intercept_)
    fields = _resolve_fields(getattr(model, "feature_names_in_", None), feature_names,
                             len(coefficients), prefix="x")

    return LinearModelSpec(
        model=type(model).__name__,
        fields=fields,
        intercept=intercept,
        coefficients=coefficients.tolist(),
        link=link,
        target=target,
    )


def _parse_sklearn_logistic(model: LogisticRegression,
                            feature_names: Optional[Sequence[str]],
                            target: Optional[str]) -> LinearModelSpec:
    check_is_fitted(model)

    if len(model.classes_) != 2:
        raise UnsupportedModelError(
            f"Unsupported model type: LogisticRegression with {len(model.classes_)} classes"
        )

    return _parse_sklearn_linear(model, feature_names, target, link="logistic")


# ---------------------------------------------------------------------------
# scikit-learn gradient boosting
# ---------------------------------------------------------------------------

def _parse_sklearn_gradient_boosting(model: GradientBoostingRegressor,
                                     feature_names: Optional[Sequence[str]],
                                     target: Optional[str]) -> TreeEnsembleSpec:
    check_is_fitted(model)

    n_features = model.n_features_in_
    fields = _resolve_fields(getattr(model, "feature_names_in_", None), feature_names,
                             n_features, prefix="x")

    if model.init_ == "zero":
        base_score = 0.0
    else:
        base_score = float(np.ravel(model.init_.predict(np.zeros((1, n_features))))[0])

    trees = []
    for estimator in model.estimators_[:, 0]:
        trees.append(_sklearn_tree_nodes(estimator.tree_, fields, model.learning_rate))

    return TreeEnsembleSpec(
        model=type(model).__name__,
        fields=fields,
        trees=trees,
        base_score=base_score,
        link="identity",
        split_operator="<=",
        feature_precision="float32",
        target=target,
    )


def _sklearn_tree_nodes(tree: Any, fields: Sequence[str], scale: float) -> List[TreeNode]:
    missing_go_to_left = getattr(tree, "missing_go_to_left", None)
    nodes = []

    # preorder from the root keeps the root first
    stack = [0]
    while stack:
        i = stack.pop()
        left, right = int(tree.children_left[i]), int(tree.children_right[i])

        if left == -1:
            nodes.append(TreeNode(id=i, leaf=scale * float(tree.value[i][0][0])))
            continue

        missing = left if missing_go_to_left is not None and missing_go_to_left[i] else right
        nodes.append(TreeNode(
            id=i,
            field=fields[int(tree.feature[i])],
            threshold=float(tree.threshold[i]),
            left=left,
            right=right,
            missing=missing,
        ))
        stack.extend((right, left))

    return nodes


# ---------------------------------------------------------------------------
# xgboost
# ---------------------------------------------------------------------------

def _parse_config_float(value: Any) -> float:
    """Parse xgboost config floats, which may be serialized as '5E-1' or '[5E-1]'."""
    text = str(value).strip().strip("[]")
    parts = [p for p in text.split(",") if p.strip()]
    if len(parts) != 1:
        raise UnsupportedModelError(f"Unsupported model type: vector base_score {value!r}")
    return float(parts[0])


def margin_base_score(base_score: float, link: str) -> float:
    if link == "logistic":
        return math.log(base_score / (1.0 - base_score))
    if link == "exp":
        return math.log(base_score)
    return base_score


def _xgboost_model_info(booster: xgb.Booster) -> Dict[str, Any]:
    config = json.loads(booster.save_config())
    learner = config["learner"]
    model_param = learner.get("learner_model_param", {})
    gradient_booster = learner.get("gradient_booster", {})
    tree_param = gradient_booster.get("gbtree_model_param", {})

    return {
        "objective": learner["objective"]["name"],
        "booster": gradient_booster.get("name", "gbtree"),
        "base_score": model_param.get("base_score", "0.5"),
        "num_class": int(model_param.get("num_class", 0)),
        "num_target": int(model_param.get("num_target", 1)),
        "num_feature": int(model_param.get("num_feature", 0)),
        "num_parallel_tree": int(tree_param.get("num_parallel_tree", 1)),
    }


def _parse_xgboost(model: Any,
                   feature_names: Optional[Sequence[str]],
                   target: Optional[str]) -> TreeEnsembleSpec:
    booster = model.get_booster() if isinstance(model, xgb.XGBModel) else model
    info = _xgboost_model_info(booster)

    if info["booster"] != "gbtree":
        raise UnsupportedModelError(f"Unsupported model type: xgboost booster {info['booster']!r}")
    if info["num_class"] > 1 or info["num_target"] > 1:
        raise UnsupportedModelError("Unsupported model type: multi-output xgboost model")
    if info["objective"] not in XGB_OBJECTIVE_LINKS:
        raise UnsupportedModelError(f"Unsupported model type: xgboost objective {info['objective']!r}")

    link = XGB_OBJECTIVE_LINKS[info["objective"]]
    base_score = margin_base_score(_parse_config_float(info["base_score"]), link)

    booster_names = booster.feature_names
    fields = _resolve_fields(booster_names, feature_names, info["num_feature"], prefix="f")
    if booster_names is not None:
        split_to_field = dict(zip(booster_names, fields))
    else:
        split_to_field = {f"f{i}": name for i, name in enumerate(fields)}

    dumps = booster.get_dump(dump_format="json")

    # sklearn-API predict() stops at the best iteration after early stopping
    best_iteration = getattr(model, "best_iteration", None) if isinstance(model, xgb.XGBModel) else None
    if best_iteration is not None:
        dumps = dumps[:(best_iteration + 1) * info["num_parallel_tree"]]

    trees = [_xgboost_tree_nodes(json.loads(dump), split_to_field) for dump in dumps]

    return TreeEnsembleSpec(
        model=type(model).__name__,
        fields=fields,
        trees=trees,
        base_score=base_score,
        link=link,
        split_operator="<",
        feature_precision="float32",
        target=target,
    )


def _xgboost_tree_nodes(root: Dict[str, Any], split_to_field: Dict[str, str]) -> List[TreeNode]:
    nodes = []
    stack = [root]

    while stack:
        node = stack.pop()
        node_id = int(node["nodeid"])

        if "leaf" in node:
            nodes.append(TreeNode(id=node_id, leaf=_as_float32(node["leaf"])))
            continue

        if "categories" in node or "split_condition" not in node:
            raise UnsupportedModelError("Unsupported model type: xgboost categorical split")

        split = str(node["split"])
        if split not in split_to_field:
            raise ValueError(f"Tree split on unknown feature {split!r}")

        nodes.append(TreeNode(
            id=node_id,
            field=split_to_field[split],
            threshold=_as_float32(node["split_condition"]),
            left=int(node["yes"]),
            right=int(node["no"]),
            missing=int(node["missing"]),
        ))
        stack.extend(reversed(node["children"]))

    return nodes
