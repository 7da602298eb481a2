"""
Trip data access: schema, sources, sampling and synthetic trips.
"""

from .sampler import EmptySourceError, IdRangeSampler, SampleResult
from .schema import ID_COLUMN, TRIP_COLUMNS, TRIP_SCHEMA, numeric_columns
from .source import DuckDBTripSource, TripSource
from .synthetic import SyntheticTripGenerator, generate_trips

__all__ = [
    "DuckDBTripSource",
    "EmptySourceError",
    "ID_COLUMN",
    "IdRangeSampler",
    "SampleResult",
    "SyntheticTripGenerator",
    "TRIP_COLUMNS",
    "TRIP_SCHEMA",
    "TripSource",
    "generate_trips",
    "numeric_columns",
]
