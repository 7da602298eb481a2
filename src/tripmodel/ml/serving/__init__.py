"""
In-database model serving

- Query generation: portable specs to SQL expressions per dialect
- Validation: SQL predictions checked against in-memory predictions
  (``tripmodel.ml.serving.model_validation``)
"""

from .query_generation import (
    UnsupportedBackendError,
    build_prediction_query,
    generate_query_expression,
    get_dialect,
    supported_dialects,
)

__all__ = [
    "UnsupportedBackendError",
    "build_prediction_query",
    "generate_query_expression",
    "get_dialect",
    "supported_dialects",
]
