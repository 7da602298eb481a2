"""
Portable Spec Serialization

Reads and writes portable model specs as YAML, the human-readable
interchange format shared with other ecosystems.

Accepted inputs:
- native specs written by ``save_model_spec`` (``general.kind`` present)
- linear/generalized linear models in the ``general`` + ``terms`` layout
  written by R's tidypredict (``model: lm`` / ``model: glm``)
- path-form tree ensembles, where every leaf lists the conditions on its
  path from the root (``trees: [[{prediction, path: [...]}, ...], ...]``)

Floats are written with PyYAML's shortest round-trip representation, so a
saved spec reloads with identical parameters.
"""

import itertools
import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import yaml

from .spec import (
    LinearModelSpec,
    MalformedSpecError,
    ModelSpec,
    TreeEnsembleSpec,
    TreeNode,
    spec_from_dict,
)
from .translator import XGB_OBJECTIVE_LINKS, margin_base_score


logger = logging.getLogger(__name__)

_GLM_LINKS = {"identity": "identity", "logit": "logistic", "log": "exp"}

# path condition op -> (branch, split operator it implies)
_PATH_OPS = {
    "less": ("left", "<"),
    "less-equal": ("left", "<="),
    "more-equal": ("right", "<"),
    "more": ("right", "<="),
}


def dump_model_spec(spec: ModelSpec) -> str:
    """Serialize a spec to YAML text."""
    return yaml.safe_dump(spec.to_dict(), sort_keys=False, default_flow_style=False)


def save_model_spec(spec: ModelSpec, path: Union[str, Path]) -> Path:
    """
    Write a spec to a YAML file.

    Returns:
        Path of the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        f.write(dump_model_spec(spec))

    logger.info("model_spec.saved", extra={
        "path": str(path),
        "kind": spec.kind,
        "model_type": spec.model
    })

    return path


def parse_model_spec_text(text: str) -> ModelSpec:
    """Parse YAML text into a spec."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedSpecError(f"Invalid YAML model spec: {e}") from e

    return model_spec_from_dict(data)


def load_model_spec(path: Union[str, Path]) -> ModelSpec:
    """
    Read a spec from a YAML file.

    Raises:
        MalformedSpecError: If the file cannot be reconstructed into a valid spec
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()

    spec = parse_model_spec_text(text)

    logger.info("model_spec.loaded", extra={
        "path": str(path),
        "kind": spec.kind,
        "model_type": spec.model
    })

    return spec


def model_spec_from_dict(data: Any) -> ModelSpec:
    """Rebuild a spec from parsed YAML, recognizing native and foreign layouts."""
    if not isinstance(data, Mapping) or not isinstance(data.get("general"), Mapping):
        raise MalformedSpecError("Model spec must be a mapping with a 'general' section")

    general = data["general"]

    if "kind" in general:
        return spec_from_dict(data)

    try:
        if "terms" in data:
            return _spec_from_terms(data)
        if "trees" in data:
            return _spec_from_paths(data)
    except MalformedSpecError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedSpecError(f"Invalid model spec: {e}") from e

    raise MalformedSpecError(f"Unrecognized model spec layout (model: {general.get('model')!r})")


# ---------------------------------------------------------------------------
# tidypredict-style linear models
# ---------------------------------------------------------------------------

def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _spec_from_terms(data: Mapping[str, Any]) -> LinearModelSpec:
    general = data["general"]
    model = str(general.get("model", ""))

    if model == "lm":
        link = "identity"
    elif model == "glm":
        glm_link = str(general.get("link", "identity"))
        if glm_link not in _GLM_LINKS:
            raise MalformedSpecError(f"Unsupported glm link: {glm_link!r}")
        link = _GLM_LINKS[glm_link]
    else:
        raise MalformedSpecError(f"Unsupported term-based model: {model!r}")

    intercept = 0.0
    fields: List[str] = []
    coefficients: List[float] = []

    for term in data["terms"]:
        coef = float(term["coef"])
        if _truthy(term.get("is_intercept", 0)):
            intercept += coef
            continue

        term_fields = term.get("fields") or []
        if len(term_fields) != 1 or term_fields[0].get("type", "ordinary") != "ordinary":
            raise MalformedSpecError(f"Unsupported term {term.get('label')!r}: only single ordinary fields")

        fields.append(str(term_fields[0]["col"]))
        coefficients.append(coef)

    return LinearModelSpec(
        model=model,
        fields=fields,
        intercept=intercept,
        coefficients=coefficients,
        link=link,
        target=general.get("target"),
    )


# ---------------------------------------------------------------------------
# path-form tree ensembles
# ---------------------------------------------------------------------------

def _path_objective(general: Mapping[str, Any]) -> Optional[str]:
    params = general.get("params") or {}
    return params.get("objective") or general.get("objective")


def _path_link_and_base(general: Mapping[str, Any], data: Mapping[str, Any]):
    params = general.get("params") or {}
    objective = _path_objective(general)

    if objective is not None:
        if objective not in XGB_OBJECTIVE_LINKS:
            raise MalformedSpecError(f"Unsupported objective: {objective!r}")
        link = XGB_OBJECTIVE_LINKS[objective]
        # objective-tagged ensembles carry base_score on the response scale
        raw = params.get("base_score", data.get("base_score", 0.5))
        return link, margin_base_score(float(raw), link)

    link = general.get("link", "identity")
    return link, float(data.get("base_score", 0.0))


def _spec_from_paths(data: Mapping[str, Any]) -> TreeEnsembleSpec:
    general = data["general"]
    link, base_score = _path_link_and_base(general, data)

    operators = set()
    seen_fields: List[str] = []
    trees = []

    for index, leaves in enumerate(data["trees"]):
        if not leaves:
            raise MalformedSpecError(f"Tree {index} has no leaves")
        for leaf in leaves:
            for condition in leaf.get("path") or []:
                col = str(condition["col"])
                if col not in seen_fields:
                    seen_fields.append(col)
        nodes: List[Optional[TreeNode]] = []
        _build_from_paths(list(leaves), 0, nodes, itertools.count(), operators, index)
        trees.append(nodes)

    if len(operators) > 1:
        raise MalformedSpecError(f"Mixed split operators in path conditions: {sorted(operators)}")

    fields = [str(f) for f in general.get("fields", seen_fields)]

    return TreeEnsembleSpec(
        model=str(general.get("model", "tree_ensemble")),
        fields=fields,
        trees=trees,
        base_score=base_score,
        link=link,
        split_operator=operators.pop() if operators else "<",
        # xgboost compares float32 inputs
        feature_precision=general.get(
            "feature_precision", "float32" if _path_objective(general) is not None else "float64"
        ),
        target=general.get("target"),
    )


def _build_from_paths(leaves: Sequence[Mapping[str, Any]],
                      depth: int,
                      nodes: List[Optional[TreeNode]],
                      ids: Iterator[int],
                      operators: set,
                      tree_index: int) -> int:
    """Rebuild a binary tree from leaf paths; returns the id of the subtree root."""
    node_id = next(ids)
    paths = [leaf.get("path") or [] for leaf in leaves]

    if any(len(path) == depth for path in paths):
        if len(leaves) != 1:
            raise MalformedSpecError(f"Tree {tree_index}: ambiguous leaf at depth {depth}")
        value = float(leaves[0]["prediction"])
        if not math.isfinite(value):
            raise MalformedSpecError(f"Tree {tree_index}: non-finite leaf prediction")
        nodes.append(TreeNode(id=node_id, leaf=value))
        return node_id

    conditions = [path[depth] for path in paths]
    col, val = str(conditions[0]["col"]), float(conditions[0]["val"])

    left, right = [], []
    missing_left = missing_right = False
    for leaf, condition in zip(leaves, conditions):
        if str(condition["col"]) != col or float(condition["val"]) != val:
            raise MalformedSpecError(f"Tree {tree_index}: inconsistent split at depth {depth}")
        op = str(condition.get("op"))
        if op not in _PATH_OPS:
            raise MalformedSpecError(f"Tree {tree_index}: unsupported condition op {op!r}")
        branch, operator = _PATH_OPS[op]
        operators.add(operator)
        missing = _truthy(condition.get("missing", False))
        if branch == "left":
            left.append(leaf)
            missing_left = missing_left or missing
        else:
            right.append(leaf)
            missing_right = missing_right or missing

    if not left or not right:
        raise MalformedSpecError(f"Tree {tree_index}: one-sided split on {col!r} at depth {depth}")
    if missing_left and missing_right:
        raise MalformedSpecError(f"Tree {tree_index}: missing values routed both ways on {col!r}")

    position = len(nodes)
    nodes.append(None)
    left_id = _build_from_paths(left, depth + 1, nodes, ids, operators, tree_index)
    right_id = _build_from_paths(right, depth + 1, nodes, ids, operators, tree_index)

    nodes[position] = TreeNode(
        id=node_id,
        field=col,
        threshold=val,
        left=left_id,
        right=right_id,
        missing=left_id if missing_left else right_id,
    )
    return node_id


def spec_summary(spec: ModelSpec) -> Dict[str, Any]:
    """Small description of a spec for logs and reports."""
    summary = {"kind": spec.kind, "model": spec.model, "fields": list(spec.fields), "link": spec.link}
    if isinstance(spec, TreeEnsembleSpec):
        summary["n_trees"] = spec.n_trees
        summary["split_operator"] = spec.split_operator
    return summary
