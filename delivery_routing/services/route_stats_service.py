import logging
from typing import Any, Dict, List, Sequence

import numpy as np

from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.types import Coordinates, OptimizationResult

logger = logging.getLogger(__name__)


class RouteStatsService:
    """
    Service for calculating statistics about optimized routes.
    """

    def __init__(self, estimator: DistanceEstimator = None):
        self.estimator = estimator or DistanceEstimator()

    def analyze_route(self, route: Sequence[int], coordinates: Sequence[Coordinates]) -> Dict[str, float]:
        """
        Segment statistics for an ordered route.

        Args:
            route: Indices into coordinates, in visiting order.
            coordinates: Stop coordinates.

        Returns:
            Dict with average/longest/shortest segment (km) and a clustering
            score in 0..100 where evenly spaced stops score higher.
        """
        empty = {
            'average_segment_distance': 0.0,
            'longest_segment': 0.0,
            'shortest_segment': 0.0,
            'clustering_score': 0.0,
        }
        if not route or not coordinates:
            return empty

        distances: List[float] = []
        for k in range(len(route) - 1):
            i, j = route[k], route[k + 1]
            if not (0 <= i < len(coordinates) and 0 <= j < len(coordinates)):
                logger.warning(f"Skipping segment with out-of-range index ({i}, {j})")
                continue
            distances.append(self.estimator.distance(coordinates[i], coordinates[j]))

        if not distances:
            return empty

        segments = np.array(distances)
        return {
            'average_segment_distance': float(segments.mean()),
            'longest_segment': float(segments.max()),
            'shortest_segment': float(segments.min()),
            'clustering_score': float(max(0.0, 100.0 - segments.std())),
        }

    def summarize(self, result: OptimizationResult, coordinates: Sequence[Coordinates]) -> Dict[str, Any]:
        """
        Optimization metrics stored alongside a persisted route.
        """
        metrics = {
            'algorithm': result.algorithm,
            'iterations': result.iterations,
            'is_valid': result.is_valid,
            'computation_time_ms': round(result.computation_time_ms, 2),
            'stop_count': len(result.route),
            'errors': list(result.errors),
            'warnings': list(result.warnings),
        }
        if result.traffic_adjustments:
            metrics['average_traffic_factor'] = float(np.mean(result.traffic_adjustments))
        metrics.update(self.analyze_route(result.route, coordinates))
        return metrics
