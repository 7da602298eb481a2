"""
Synthetic Taxi Trip Generator

Generates NYC yellow-taxi style trip records with the full trip schema for
demos and tests:
- Metered fares driven by trip distance and duration
- Tips paid on card trips only, proportional to the fare
- Occasional tolls, fixed surcharges and taxes
- Deterministic reproducibility through an explicit seed
"""

import logging
from datetime import datetime
from typing import Optional

import numpy as np
import pandas as pd

from .schema import ID_COLUMN, TRIP_COLUMNS


logger = logging.getLogger(__name__)

# payment_type codes used by the TLC
CARD, CASH, NO_CHARGE, DISPUTE = 1, 2, 3, 4


class SyntheticTripGenerator:
    """Deterministic generator of taxi trips."""

    def __init__(self, seed: int = 42, start: datetime = datetime(2016, 1, 1)):
        self.seed = seed
        self.start = pd.Timestamp(start)
        self.rng = np.random.default_rng(seed)

        # Manhattan-ish bounding box
        self.longitude_range = (-74.02, -73.93)
        self.latitude_range = (40.70, 40.82)

    def generate(self, n_trips: int, include_id: bool = True) -> pd.DataFrame:
        """
        Generate ``n_trips`` trips.

        Args:
            n_trips: Number of rows
            include_id: Add the dense 1-based ``id`` column

        Returns:
            DataFrame with the trip schema columns (plus ``id``)
        """
        if n_trips < 0:
            raise ValueError(f"Number of trips must be non-negative: {n_trips}")

        rng = self.rng

        trip_distance = np.round(rng.gamma(shape=1.6, scale=1.8, size=n_trips), 2)
        minutes = np.maximum(1.0, trip_distance * rng.normal(4.5, 1.0, n_trips) + rng.exponential(3.0, n_trips))

        pickup = self.start + pd.to_timedelta(rng.integers(0, 31 * 24 * 3600, n_trips), unit="s")
        dropoff = pickup + pd.to_timedelta(np.round(minutes * 60), unit="s")

        rate_code = rng.choice([1, 2, 5], size=n_trips, p=[0.96, 0.03, 0.01])
        payment_type = rng.choice([CARD, CASH, NO_CHARGE, DISPUTE], size=n_trips,
                                  p=[0.64, 0.34, 0.015, 0.005])
        passenger_count = rng.choice([1, 2, 3, 4, 5, 6], size=n_trips,
                                     p=[0.70, 0.14, 0.04, 0.02, 0.06, 0.04])

        fare_amount = np.round(2.5 + 2.5 * trip_distance + 0.5 * minutes / 2, 1)
        fare_amount = np.where(rate_code == 2, 52.0, fare_amount)

        extra = rng.choice([0.0, 0.5, 1.0], size=n_trips, p=[0.55, 0.30, 0.15])
        mta_tax = np.full(n_trips, 0.5)
        tolls_amount = np.where(rng.random(n_trips) < 0.05, 5.54, 0.0)

        tip_rate = np.clip(rng.normal(0.18, 0.05, n_trips), 0.0, 0.5)
        tip_amount = np.where(payment_type == CARD, np.round(fare_amount * tip_rate, 2), 0.0)

        total_amount = np.round(fare_amount + extra + mta_tax + tip_amount + tolls_amount + 0.3, 2)

        frame = pd.DataFrame({
            "vendor_id": rng.choice(["CMT", "VTS"], size=n_trips),
            "pickup_datetime": pickup,
            "dropoff_datetime": dropoff,
            "passenger_count": passenger_count.astype("int64"),
            "trip_distance": trip_distance,
            "pickup_longitude": rng.uniform(*self.longitude_range, n_trips),
            "pickup_latitude": rng.uniform(*self.latitude_range, n_trips),
            "rate_code": rate_code.astype("int64"),
            "store_and_fwd_flag": rng.choice(["N", "Y"], size=n_trips, p=[0.99, 0.01]),
            "dropoff_longitude": rng.uniform(*self.longitude_range, n_trips),
            "dropoff_latitude": rng.uniform(*self.latitude_range, n_trips),
            "payment_type": payment_type.astype("int64"),
            "fare_amount": fare_amount,
            "extra": extra,
            "mta_tax": mta_tax,
            "tip_amount": tip_amount,
            "tolls_amount": tolls_amount,
            "total_amount": total_amount,
        }, columns=TRIP_COLUMNS)

        if include_id:
            frame.insert(0, ID_COLUMN, np.arange(1, n_trips + 1, dtype="int64"))

        logger.debug("synthetic_trips.generated", extra={
            "n_trips": n_trips,
            "seed": self.seed
        })

        return frame


def generate_trips(n_trips: int, seed: int = 42, include_id: bool = True,
                   start: Optional[datetime] = None) -> pd.DataFrame:
    """Shortcut for ``SyntheticTripGenerator(seed).generate(n_trips)``."""
    generator = SyntheticTripGenerator(seed) if start is None else SyntheticTripGenerator(seed, start)
    return generator.generate(n_trips, include_id=include_id)
