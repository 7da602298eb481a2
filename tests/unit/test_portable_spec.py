"""
Unit tests for portable model specs.

Tests cover structural validation, in-memory prediction (split ties,
missing values, float32 inputs, links) and the dict form used for
serialization.
"""

import math
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from tripmodel.ml.portable.spec import (
    LinearModelSpec,
    MalformedSpecError,
    TreeEnsembleSpec,
    TreeNode,
    spec_from_dict,
)


def _tree(*nodes):
    return list(nodes)


class TestLinearModelSpec:
    """Linear spec construction and prediction."""

    def setup_method(self):
        self.spec = LinearModelSpec(
            model="lm", fields=["x1", "x2"], intercept=3.0, coefficients=[2.0, -1.5], target="y"
        )

    def test_predict_frame(self):
        frame = pd.DataFrame({"x1": [0.0, 1.0], "x2": [0.0, 2.0], "other": ["a", "b"]})

        np.testing.assert_allclose(self.spec.predict(frame), [3.0, 2.0])

    def test_predict_single_row_mapping(self):
        assert self.spec.predict({"x1": 1.0, "x2": 1.0})[0] == pytest.approx(3.5)

    def test_missing_value_predicts_nan(self):
        result = self.spec.predict([{"x1": None, "x2": 1.0}, {"x1": 1.0, "x2": 0.0}])

        assert math.isnan(result[0])
        assert result[1] == pytest.approx(5.0)

    def test_missing_field_raises(self):
        with pytest.raises(KeyError, match="x2"):
            self.spec.predict({"x1": 1.0})

    def test_coefficient_map(self):
        assert self.spec.coefficient_map == {"x1": 2.0, "x2": -1.5}

    def test_links(self):
        logistic = LinearModelSpec(model="glm", fields=["x"], intercept=0.0, coefficients=[1.0], link="logistic")
        poisson = LinearModelSpec(model="glm", fields=["x"], intercept=0.0, coefficients=[1.0], link="exp")

        assert logistic.predict({"x": 0.0})[0] == pytest.approx(0.5)
        assert poisson.predict({"x": 1.0})[0] == pytest.approx(math.e)

    def test_count_mismatch_rejected(self):
        with pytest.raises(MalformedSpecError, match="mismatch"):
            LinearModelSpec(model="lm", fields=["x1", "x2"], intercept=0.0, coefficients=[1.0])

    def test_unknown_link_rejected(self):
        with pytest.raises(MalformedSpecError, match="link"):
            LinearModelSpec(model="lm", fields=["x"], intercept=0.0, coefficients=[1.0], link="probit")

    def test_non_finite_parameters_rejected(self):
        with pytest.raises(MalformedSpecError):
            LinearModelSpec(model="lm", fields=["x"], intercept=float("nan"), coefficients=[1.0])

    def test_duplicate_fields_rejected(self):
        with pytest.raises(MalformedSpecError, match="Duplicate"):
            LinearModelSpec(model="lm", fields=["x", "x"], intercept=0.0, coefficients=[1.0, 2.0])

    def test_dict_round_trip(self):
        data = self.spec.to_dict()

        assert data["general"]["kind"] == "linear"
        assert data["general"]["target"] == "y"
        assert spec_from_dict(data) == self.spec


class TestTreeEnsembleSpec:
    """Tree ensemble construction and prediction."""

    def test_tie_goes_right_with_less_than(self, stump_spec):
        assert stump_spec.predict({"x": 0.5})[0] == 1.0
        assert stump_spec.predict({"x": 0.4999})[0] == -1.0

    def test_tie_goes_left_with_less_equal(self):
        spec = TreeEnsembleSpec(
            model="stump",
            fields=["x"],
            trees=[_tree(
                TreeNode(id=0, field="x", threshold=0.5, left=1, right=2, missing=2),
                TreeNode(id=1, leaf=-1.0),
                TreeNode(id=2, leaf=1.0),
            )],
            split_operator="<=",
        )

        assert spec.predict({"x": 0.5})[0] == -1.0

    def test_missing_values_follow_missing_branch(self, stump_spec):
        result = stump_spec.predict(pd.DataFrame({"x": [np.nan, None, 0.1]}, dtype="float64"))

        np.testing.assert_array_equal(result, [1.0, 1.0, -1.0])

    def test_float32_inputs(self):
        threshold = float(np.float32(0.1))
        nodes = _tree(
            TreeNode(id=0, field="x", threshold=threshold, left=1, right=2, missing=2),
            TreeNode(id=1, leaf=-1.0),
            TreeNode(id=2, leaf=1.0),
        )
        narrow = TreeEnsembleSpec(model="t", fields=["x"], trees=[nodes], feature_precision="float32")
        wide = TreeEnsembleSpec(model="t", fields=["x"], trees=[nodes], feature_precision="float64")

        # 0.1 rounds up to the threshold in float32 but stays below it in float64
        assert narrow.predict({"x": 0.1})[0] == 1.0
        assert wide.predict({"x": 0.1})[0] == -1.0

    def test_base_score_and_trees_add(self, stump_spec):
        spec = TreeEnsembleSpec(
            model="pair",
            fields=["x"],
            trees=[stump_spec.trees[0], stump_spec.trees[0]],
            base_score=0.25,
        )

        assert spec.n_trees == 2
        np.testing.assert_allclose(spec.predict({"x": 0.0}), [-1.75])
        np.testing.assert_allclose(spec.predict_margin({"x": 0.9}), [2.25])

    def test_logistic_link(self, stump_spec):
        spec = TreeEnsembleSpec(model="clf", fields=["x"], trees=stump_spec.trees, link="logistic")

        assert spec.predict({"x": 0.0})[0] == pytest.approx(1.0 / (1.0 + math.e))

    def test_deeper_tree(self):
        spec = TreeEnsembleSpec(
            model="deep",
            fields=["a", "b"],
            trees=[_tree(
                TreeNode(id=0, field="a", threshold=0.0, left=1, right=2, missing=1),
                TreeNode(id=1, field="b", threshold=10.0, left=3, right=4, missing=4),
                TreeNode(id=2, leaf=5.0),
                TreeNode(id=3, leaf=1.0),
                TreeNode(id=4, leaf=2.0),
            )],
        )
        rows = [
            {"a": -1.0, "b": 0.0},
            {"a": -1.0, "b": 20.0},
            {"a": 1.0, "b": 0.0},
            {"a": None, "b": None},
        ]

        np.testing.assert_array_equal(spec.predict(rows), [1.0, 2.0, 5.0, 2.0])

    def test_unknown_split_field_rejected(self):
        with pytest.raises(MalformedSpecError, match="unknown field"):
            TreeEnsembleSpec(model="t", fields=["x"], trees=[_tree(
                TreeNode(id=0, field="y", threshold=0.0, left=1, right=2, missing=2),
                TreeNode(id=1, leaf=0.0),
                TreeNode(id=2, leaf=1.0),
            )])

    def test_missing_child_rejected(self):
        with pytest.raises(MalformedSpecError, match="missing child"):
            TreeEnsembleSpec(model="t", fields=["x"], trees=[_tree(
                TreeNode(id=0, field="x", threshold=0.0, left=1, right=7, missing=1),
                TreeNode(id=1, leaf=0.0),
            )])

    def test_duplicate_node_rejected(self):
        with pytest.raises(MalformedSpecError, match="duplicate node"):
            TreeEnsembleSpec(model="t", fields=["x"], trees=[_tree(
                TreeNode(id=0, field="x", threshold=0.0, left=1, right=1, missing=1),
                TreeNode(id=1, leaf=0.0),
                TreeNode(id=1, leaf=1.0),
            )])

    def test_shared_child_rejected(self):
        with pytest.raises(MalformedSpecError, match="reached twice"):
            TreeEnsembleSpec(model="t", fields=["x"], trees=[_tree(
                TreeNode(id=0, field="x", threshold=0.0, left=1, right=1, missing=1),
                TreeNode(id=1, leaf=0.0),
            )])

    def test_unreachable_node_rejected(self):
        with pytest.raises(MalformedSpecError, match="unreachable"):
            TreeEnsembleSpec(model="t", fields=["x"], trees=[_tree(
                TreeNode(id=0, field="x", threshold=0.0, left=1, right=2, missing=2),
                TreeNode(id=1, leaf=0.0),
                TreeNode(id=2, leaf=1.0),
                TreeNode(id=3, leaf=2.0),
            )])

    def test_bad_split_operator_rejected(self, stump_spec):
        with pytest.raises(MalformedSpecError, match="split operator"):
            TreeEnsembleSpec(model="t", fields=["x"], trees=stump_spec.trees, split_operator=">")

    def test_dict_round_trip(self, stump_spec):
        data = stump_spec.to_dict()

        assert data["general"]["kind"] == "tree_ensemble"
        assert data["trees"][0][1] == {"id": 1, "leaf": -1.0}
        assert spec_from_dict(data) == stump_spec


class TestSpecFromDict:
    """Dispatch and error reporting of spec_from_dict."""

    def test_missing_general_section(self):
        with pytest.raises(MalformedSpecError, match="general.kind"):
            spec_from_dict({"intercept": 1.0})

    def test_unknown_kind(self):
        with pytest.raises(MalformedSpecError, match="Unknown spec kind"):
            spec_from_dict({"general": {"kind": "neural_net"}})

    def test_incomplete_node_is_malformed(self, stump_spec):
        data = stump_spec.to_dict()
        del data["trees"][0][0]["threshold"]

        with pytest.raises(MalformedSpecError, match="Invalid tree_ensemble spec"):
            spec_from_dict(data)

    def test_missing_branch_defaults_to_right(self, stump_spec):
        data = stump_spec.to_dict()
        del data["trees"][0][0]["missing"]

        assert spec_from_dict(data).trees[0][0].missing == 2
