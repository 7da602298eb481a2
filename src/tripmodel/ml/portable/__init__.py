"""
Portable Model Specs

Backend-agnostic descriptions of fitted models:
- Translator: fitted scikit-learn / xgboost models to specs
- Specs: in-memory prediction and SQL expression trees
- Serialization: YAML interchange, including specs written by other ecosystems
"""

from .serialization import (
    dump_model_spec,
    load_model_spec,
    model_spec_from_dict,
    parse_model_spec_text,
    save_model_spec,
)
from .spec import LinearModelSpec, MalformedSpecError, ModelSpec, TreeEnsembleSpec, TreeNode
from .translator import UnsupportedModelError, parse_model

__all__ = [
    "LinearModelSpec",
    "MalformedSpecError",
    "ModelSpec",
    "TreeEnsembleSpec",
    "TreeNode",
    "UnsupportedModelError",
    "dump_model_spec",
    "load_model_spec",
    "model_spec_from_dict",
    "parse_model",
    "parse_model_spec_text",
    "save_model_spec",
]
