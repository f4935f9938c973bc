"""
Traffic delay models used to scale travel times between stops.

The optimizer only talks to the TrafficModel interface so a real traffic
feed can replace the simulation without changes to the heuristics.
"""
import hashlib
import logging
import random
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Tuple

from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.types import Coordinates
from delivery_routing.settings import TRAFFIC_REFRESH_INTERVAL_SECONDS, TRAFFIC_SEED

logger = logging.getLogger(__name__)

MIN_DELAY_FACTOR = 1.0
MAX_DELAY_FACTOR = 5.0

RUSH_HOUR_MULTIPLIER = 1.3
NIGHT_MULTIPLIER = 0.8
MIN_TRAVEL_MINUTES = 1.0


def segment_key(a: Coordinates, b: Coordinates) -> str:
    first, second = sorted([(a.latitude, a.longitude), (b.latitude, b.longitude)])
    return f"{first[0]:.6f},{first[1]:.6f}-{second[0]:.6f},{second[1]:.6f}"


def time_of_day_multiplier(departure: datetime) -> float:
    """Rush hours (7-9, 17-19) are slower, nights (22-6) faster."""
    hour = departure.hour
    if 7 <= hour <= 9 or 17 <= hour <= 19:
        return RUSH_HOUR_MULTIPLIER
    if hour >= 22 or hour <= 6:
        return NIGHT_MULTIPLIER
    return 1.0


class TrafficModel:
    """Interface for pairwise traffic delay multipliers."""

    def refresh(self, points: Iterable[Coordinates]) -> None:
        """Make delay factors available for every pair of points."""

    def delay_factor(self, a: Coordinates, b: Coordinates) -> Optional[float]:
        """Multiplier for the segment, or None when the model has no data for it."""
        return None


class NoTrafficModel(TrafficModel):
    """Model without traffic data; travel times fall back to time-of-day scaling."""


class SimulatedTrafficModel(TrafficModel):
    """
    Synthesizes delay multipliers that grow with segment length.

    Multipliers are derived from a seeded generator per segment, so the same
    seed yields the same factors. New segments are merged into the table as
    soon as they are seen; known segments are re-derived at most once per
    refresh_interval seconds. Factors are never dropped by a refresh for a
    different set of points.

    Args:
        estimator: Distance estimator used to size segments.
        refresh_interval: Minimum seconds between two refreshes.
        seed: Seed mixed into each segment's generator.
        clock: Monotonic time source.
    """

    def __init__(self, estimator: DistanceEstimator, refresh_interval: float = TRAFFIC_REFRESH_INTERVAL_SECONDS,
                 seed: int = TRAFFIC_SEED, clock: Callable[[], float] = time.monotonic):
        self.estimator = estimator
        self.refresh_interval = refresh_interval
        self.seed = seed
        self._clock = clock
        self._factors: Dict[str, float] = {}
        self._last_refresh: Optional[float] = None
        self._lock = threading.Lock()

    def _segment_factor(self, key: str, distance_km: float) -> float:
        digest = hashlib.md5(f"{self.seed}:{key}".encode('utf-8')).hexdigest()
        rng = random.Random(int(digest[:16], 16))
        if distance_km > 10:
            factor = 1.2 + rng.random() * 0.3
        elif distance_km > 5:
            factor = 1.1 + rng.random() * 0.4
        else:
            factor = 1.0 + rng.random() * 0.2
        return min(max(factor, MIN_DELAY_FACTOR), MAX_DELAY_FACTOR)

    def needs_refresh(self) -> bool:
        return self._last_refresh is None or self._clock() - self._last_refresh >= self.refresh_interval

    def refresh(self, points: Iterable[Coordinates]) -> None:
        points = list(points)
        with self._lock:
            stale = self.needs_refresh()
            factors = dict(self._factors)
            updated = 0
            for i in range(len(points)):
                for j in range(i + 1, len(points)):
                    key = segment_key(points[i], points[j])
                    if key in factors and not stale:
                        continue
                    distance = self.estimator.distance(points[i], points[j])
                    factors[key] = self._segment_factor(key, distance)
                    updated += 1
            self._factors = factors
            if stale:
                self._last_refresh = self._clock()
        logger.debug(f"Updated traffic factors for {updated} segments ({len(factors)} known)")

    def delay_factor(self, a: Coordinates, b: Coordinates) -> Optional[float]:
        return self._factors.get(segment_key(a, b))

    def snapshot(self) -> Dict[str, float]:
        return dict(self._factors)


def dynamic_travel_time(estimator: DistanceEstimator, traffic: TrafficModel, a: Coordinates, b: Coordinates,
                        departure: datetime) -> Tuple[float, float, float]:
    """
    Travel time between two points considering traffic.

    Returns:
        Tuple (distance_km, minutes, applied_factor). A known segment factor
        takes precedence over the time-of-day multiplier.
    """
    distance = estimator.distance(a, b)
    base = estimator.travel_time(distance)
    factor = traffic.delay_factor(a, b)
    if factor is None:
        factor = time_of_day_multiplier(departure)
    return distance, max(base * factor, MIN_TRAVEL_MINUTES), factor
