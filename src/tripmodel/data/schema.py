"""
Taxi trip schema.

Column layout of the NYC yellow-taxi trip records the workflow operates on.
``id`` is a synthetic dense key used for sampling only.
"""

from typing import Dict, List, Sequence

import pandas as pd


TRIP_SCHEMA: Dict[str, str] = {
    "vendor_id": "string",
    "pickup_datetime": "datetime64[ns]",
    "dropoff_datetime": "datetime64[ns]",
    "passenger_count": "int64",
    "trip_distance": "float64",
    "pickup_longitude": "float64",
    "pickup_latitude": "float64",
    "rate_code": "int64",
    "store_and_fwd_flag": "string",
    "dropoff_longitude": "float64",
    "dropoff_latitude": "float64",
    "payment_type": "int64",
    "fare_amount": "float64",
    "extra": "float64",
    "mta_tax": "float64",
    "tip_amount": "float64",
    "tolls_amount": "float64",
    "total_amount": "float64",
}

ID_COLUMN = "id"

TRIP_COLUMNS: List[str] = list(TRIP_SCHEMA)


def numeric_columns(frame: pd.DataFrame, exclude: Sequence[str] = (ID_COLUMN,)) -> List[str]:
    """Numeric columns of ``frame`` in frame order, without the sampling key."""
    return [
        col for col in frame.select_dtypes(include="number").columns
        if col not in exclude
    ]


def missing_trip_columns(columns: List[str]) -> List[str]:
    present = set(columns)
    return [col for col in TRIP_COLUMNS if col not in present]
