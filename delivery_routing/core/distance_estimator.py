"""
Road distance and travel time estimation from coordinates.

Estimates approximate real road routing without an external routing call by
blending a grid (Manhattan) estimate for short hops with a great-circle
estimate for long hops, then inflating by a road factor.
"""
import logging
from typing import List, Optional, Sequence

import numpy as np

from delivery_routing.core.cache import InMemoryTTLCache, TTLCache
from delivery_routing.core.constants import (
    BUFFER_MINUTES_PER_KM,
    EARTH_RADIUS_KM,
    KM_PER_DEGREE,
    LONG_DISTANCE_KM,
    LONG_ROAD_FACTOR,
    MAX_BUFFER_MINUTES,
    ROAD_SPEEDS_KMH,
    SHORT_DISTANCE_KM,
    SHORT_ROAD_FACTOR,
)
from delivery_routing.core.types import Coordinates
from delivery_routing.settings import DISTANCE_CACHE_TTL_HOURS

logger = logging.getLogger(__name__)


class DistanceEstimator:
    """
    Estimates point-to-point distance and travel time.

    Args:
        cache: Pairwise cache; defaults to an in-memory cache with a 24 h TTL.
    """

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache if cache is not None else InMemoryTTLCache(DISTANCE_CACHE_TTL_HOURS * 3600)

    @staticmethod
    def haversine(a: Coordinates, b: Coordinates) -> float:
        """
        Calculate the great circle distance between two points
        on the earth (specified in decimal degrees).

        Returns:
            Distance in kilometers
        """
        lat1, lon1, lat2, lon2 = map(np.radians, [a.latitude, a.longitude, b.latitude, b.longitude])

        dlon = lon2 - lon1
        dlat = lat2 - lat1
        h = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
        c = 2 * np.arcsin(np.sqrt(min(1.0, float(h))))
        return float(EARTH_RADIUS_KM * c)

    @staticmethod
    def manhattan(a: Coordinates, b: Coordinates) -> float:
        """Grid distance in km, with longitude compressed by the mean latitude."""
        mean_lat = np.radians((a.latitude + b.latitude) / 2)
        lat_km = abs(b.latitude - a.latitude) * KM_PER_DEGREE
        lon_km = abs(b.longitude - a.longitude) * KM_PER_DEGREE * float(np.cos(mean_lat))
        return lat_km + lon_km

    def distance(self, a: Coordinates, b: Coordinates) -> float:
        """
        Estimated road distance in km between two points.

        Below SHORT_DISTANCE_KM the grid estimate is used, above
        LONG_DISTANCE_KM the great-circle estimate; in between the two are
        linearly blended. The road factor rises with the same weight from
        1.1 to 1.3.
        """
        great_circle = self.haversine(a, b)
        grid = self.manhattan(a, b)

        if great_circle <= SHORT_DISTANCE_KM:
            weight = 0.0
        elif great_circle >= LONG_DISTANCE_KM:
            weight = 1.0
        else:
            weight = (great_circle - SHORT_DISTANCE_KM) / (LONG_DISTANCE_KM - SHORT_DISTANCE_KM)

        base = grid * (1 - weight) + great_circle * weight
        road_factor = SHORT_ROAD_FACTOR + (LONG_ROAD_FACTOR - SHORT_ROAD_FACTOR) * weight
        return base * road_factor

    @staticmethod
    def travel_time(distance_km: float, road_type: str = 'default') -> float:
        """
        Travel time in minutes for a distance, including a capped stop/turn buffer.
        """
        speed = ROAD_SPEEDS_KMH.get(road_type)
        if speed is None:
            logger.warning(f"Unknown road type '{road_type}', using default speed")
            speed = ROAD_SPEEDS_KMH['default']
        distance_km = max(0.0, float(distance_km))
        minutes = distance_km / speed * 60.0
        buffer = min(distance_km * BUFFER_MINUTES_PER_KM, MAX_BUFFER_MINUTES)
        return minutes + buffer

    @staticmethod
    def _pair_key(i: int, j: int, a: Coordinates, b: Coordinates) -> str:
        return f"dist:{i}:{j}:{a.latitude:.6f},{a.longitude:.6f}:{b.latitude:.6f},{b.longitude:.6f}"

    def pair_distance(self, i: int, j: int, a: Coordinates, b: Coordinates) -> float:
        """
        Memoized distance between two indexed points.
        """
        key = self._pair_key(i, j, a, b)
        entry = self.cache.get_entry(key)
        if entry is not None:
            return entry.value

        value = self.distance(a, b)
        self.cache.set(key, value)
        return value

    def build_matrix(self, coords: Sequence[Coordinates]) -> np.ndarray:
        """
        Full N x N distance matrix (km) reusing the pairwise cache.
        """
        n = len(coords)
        matrix = np.zeros((n, n), dtype=float)
        for i in range(n):
            for j in range(n):
                if i == j:
                    continue
                matrix[i, j] = self.pair_distance(i, j, coords[i], coords[j])
        return matrix

    def route_distance(self, points: List[Coordinates]) -> float:
        """Sum of leg distances along an ordered list of points."""
        return sum(self.distance(points[k], points[k + 1]) for k in range(len(points) - 1))

    def clear_cache(self) -> None:
        self.cache.clear()
