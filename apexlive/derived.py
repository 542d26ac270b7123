"""
Metrics that are not sampled directly: longitudinal g-force and track sector.

Every value that leaves this module is finite; anything that would be NaN or
infinite becomes 0.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from apexlive.data.channels import Sample
from apexlive.lib.utils import finite_or_default

logger = logging.getLogger(__name__)

STANDARD_GRAVITY = 9.80665
KMH_TO_MS = 1 / 3.6


def longitudinal_g(prev: Optional[Sample], next_: Optional[Sample], speed_field="speed"):
    """
    Acceleration between two raw car samples in units of g.

    Uses the raw bracket samples, not interpolated values. Returns 0.0 when either
    sample is missing, the samples share a timestamp, or the result is not finite.
    """
    if prev is None or next_ is None:
        return 0.0
    dt_s = (next_.timestamp - prev.timestamp) / 1000.0
    if dt_s <= 0:
        return 0.0
    v0 = prev.values.get(speed_field)
    v1 = next_.values.get(speed_field)
    if v0 is None or v1 is None:
        return 0.0
    accel = (v1 - v0) * KMH_TO_MS / dt_s
    return float(finite_or_default(accel / STANDARD_GRAVITY, 0.0))


def label_reference_points(locations: Sequence[Sample], lap_start_ms, sector_durations
                           ) -> List[Tuple[float, float, int]]:
    """
    Tag each location sample of a reference lap with its sector (1, 2, 3).

    Sector boundaries come from the lap's sector durations measured from lap_start_ms.
    Points after the last boundary stay in the final sector.
    """
    boundaries = []
    elapsed = 0.0
    for duration in sector_durations[:-1]:
        if duration is None:
            return []
        elapsed += duration
        boundaries.append(lap_start_ms + elapsed * 1000.0)

    points = []
    for sample in locations:
        sector = int(np.searchsorted(boundaries, sample.timestamp, side="right")) + 1
        points.append((sample.values["x"], sample.values["y"], sector))
    return points


class SectorLookup:
    """
    Nearest reference point lookup for sector labels.

    Distances are Manhattan (L1): only the ordering of distances matters here and
    L1 is cheaper than Euclidean. The reference set is subsampled every ``stride``
    points, which trades a little boundary precision for lookup speed.
    """

    def __init__(self, points: Sequence[Tuple[float, float, int]], stride=5):
        self.stride = max(1, int(stride))
        sampled = list(points)[::self.stride]
        self._labels = np.array([p[2] for p in sampled], dtype=int)
        if sampled:
            self._tree = cKDTree(np.array([(p[0], p[1]) for p in sampled], dtype=float))
        else:
            self._tree = None

    def __len__(self):
        return len(self._labels)

    def sector_at(self, x, y) -> Optional[int]:
        if self._tree is None or x is None or y is None:
            return None
        if not (np.isfinite(x) and np.isfinite(y)):
            return None
        _, idx = self._tree.query([x, y], p=1)
        return int(self._labels[int(idx)])

    @classmethod
    def from_reference_lap(cls, locations, lap, stride=5):
        points = label_reference_points(locations, lap.date_start, lap.sector_durations)
        if not points:
            logger.warning("Reference lap %s/%s has no usable sector timing", lap.entity_id, lap.lap_number)
        return cls(points, stride=stride)
