"""
Dense Id Range Sampler

Approximates a simple random sample of a large trip table without a full
scan: read ``MIN(id)`` and ``MAX(id)``, draw ids uniformly from that range
and fetch only the matching rows.

Ids are drawn without replacement, so a sample never contains the same row
twice. Gaps in the id space (deleted rows) show up as fewer returned rows.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .schema import ID_COLUMN
from .source import TripSource


logger = logging.getLogger(__name__)


class EmptySourceError(Exception):
    """Raised when sampling from a source with no rows."""


@dataclass
class SampleResult:
    """Drawn ids and the rows fetched for them."""
    ids: np.ndarray
    frame: pd.DataFrame
    id_range: Tuple[int, int]

    @property
    def n_requested(self) -> int:
        return len(self.ids)

    @property
    def n_rows(self) -> int:
        return len(self.frame)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id_range": list(self.id_range),
            "ids_drawn": self.n_requested,
            "rows_returned": self.n_rows
        }


class IdRangeSampler:
    """
    Uniform sampler over a dense integer id column.

    Args:
        source: Trip source to sample from
        id_column: Dense integer key column
        seed: Seed of the id draw; the same seed gives the same sample
    """

    def __init__(self, source: TripSource, id_column: str = ID_COLUMN, seed: Optional[int] = None):
        self.source = source
        self.id_column = id_column
        self.seed = seed
        self.logger = logging.getLogger(f"{__name__}.IdRangeSampler")

    def draw_ids(self, n: int, id_range: Tuple[int, int]) -> np.ndarray:
        """Draw up to ``n`` distinct ids from the inclusive range, sorted."""
        if n <= 0:
            raise ValueError(f"Sample size must be positive: {n}")

        lo, hi = id_range
        range_size = hi - lo + 1

        rng = np.random.default_rng(self.seed)
        offsets = rng.choice(range_size, size=min(n, range_size), replace=False)

        return np.sort(offsets.astype(np.int64) + lo)

    def sample(self, n: int) -> SampleResult:
        """
        Sample up to ``n`` rows.

        Raises:
            ValueError: If ``n`` is not positive
            EmptySourceError: If the source has no ids to sample from
        """
        if n <= 0:
            raise ValueError(f"Sample size must be positive: {n}")

        id_range = self.source.id_range(self.id_column)
        if id_range is None:
            raise EmptySourceError(
                f"No data to sample: {self.source.table}.{self.id_column} has no values"
            )

        ids = self.draw_ids(n, id_range)
        frame = self.source.fetch_by_ids(ids, self.id_column)

        if len(frame) < len(ids):
            self.logger.info("sample.gaps_in_id_range", extra={
                "ids_drawn": len(ids),
                "rows_returned": len(frame)
            })

        self.logger.info("sample.drawn", extra={
            "requested": n,
            "id_min": id_range[0],
            "id_max": id_range[1],
            "rows_returned": len(frame),
            "seed": self.seed
        })

        return SampleResult(ids=ids, frame=frame, id_range=id_range)
