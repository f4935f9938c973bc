from unittest import TestCase
from unittest.mock import patch

import numpy as np

from delivery_routing.core.cache import InMemoryTTLCache
from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.types import Coordinates


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class DistanceEstimatorTest(TestCase):
    def setUp(self):
        self.estimator = DistanceEstimator()
        self.origin = Coordinates(0.0, 0.0)

    def test_haversine_one_degree_at_equator(self):
        distance = DistanceEstimator.haversine(self.origin, Coordinates(0.0, 1.0))
        self.assertAlmostEqual(distance, 111.19, places=1)

    def test_short_distance_uses_grid_estimate_with_low_road_factor(self):
        # 0.01 degrees of latitude is 1.11km on the grid, well below the blend range
        distance = self.estimator.distance(self.origin, Coordinates(0.01, 0.0))
        self.assertAlmostEqual(distance, 1.11 * 1.1, places=3)

    def test_long_distance_uses_great_circle_with_high_road_factor(self):
        b = Coordinates(1.0, 0.0)
        expected = DistanceEstimator.haversine(self.origin, b) * 1.3
        self.assertAlmostEqual(self.estimator.distance(self.origin, b), expected, places=6)

    def test_blended_distance_lies_between_its_endpoints(self):
        # ~5.5km apart, inside the 2-10km blend range
        b = Coordinates(0.05, 0.0)
        great_circle = DistanceEstimator.haversine(self.origin, b)
        distance = self.estimator.distance(self.origin, b)
        self.assertGreater(distance, great_circle * 1.1)
        self.assertLess(distance, great_circle * 1.3)

    def test_distance_is_repeatable_and_symmetric(self):
        a = Coordinates(43.6532, -79.3832)
        b = Coordinates(43.7001, -79.4163)
        first = self.estimator.distance(a, b)
        self.assertEqual(first, self.estimator.distance(a, b))
        self.assertAlmostEqual(first, self.estimator.distance(b, a), places=9)

    def test_same_point_is_zero(self):
        a = Coordinates(43.6532, -79.3832)
        self.assertEqual(self.estimator.distance(a, a), 0.0)

    def test_travel_time_default_speed_with_capped_buffer(self):
        # 35km at 35km/h is 60 minutes; the buffer is capped at 10 minutes
        self.assertAlmostEqual(DistanceEstimator.travel_time(35.0), 70.0)

    def test_travel_time_short_hop_buffer(self):
        # 1km: 60/35 minutes plus 2 minutes of buffer
        self.assertAlmostEqual(DistanceEstimator.travel_time(1.0), 60.0 / 35.0 + 2.0)

    def test_travel_time_by_road_type(self):
        self.assertAlmostEqual(DistanceEstimator.travel_time(80.0, 'highway'), 70.0)
        self.assertAlmostEqual(DistanceEstimator.travel_time(30.0, 'residential'), 70.0)

    def test_travel_time_unknown_road_type_falls_back(self):
        with self.assertLogs('delivery_routing.core.distance_estimator', level='WARNING'):
            minutes = DistanceEstimator.travel_time(35.0, 'dirt_track')
        self.assertAlmostEqual(minutes, 70.0)

    def test_travel_time_negative_distance_is_zero(self):
        self.assertEqual(DistanceEstimator.travel_time(-5.0), 0.0)

    def test_pair_distance_is_served_from_cache(self):
        a, b = Coordinates(43.65, -79.38), Coordinates(43.70, -79.40)
        with patch.object(self.estimator, 'distance', wraps=self.estimator.distance) as mock_distance:
            first = self.estimator.pair_distance(0, 1, a, b)
            second = self.estimator.pair_distance(0, 1, a, b)
        self.assertEqual(first, second)
        mock_distance.assert_called_once_with(a, b)

    def test_pair_distance_recomputed_after_expiry(self):
        clock = FakeClock()
        estimator = DistanceEstimator(InMemoryTTLCache(default_ttl=60, clock=clock))
        a, b = Coordinates(43.65, -79.38), Coordinates(43.70, -79.40)
        with patch.object(estimator, 'distance', return_value=4.2) as mock_distance:
            estimator.pair_distance(0, 1, a, b)
            clock.now += 59
            estimator.pair_distance(0, 1, a, b)
            self.assertEqual(mock_distance.call_count, 1)
            clock.now += 2
            estimator.pair_distance(0, 1, a, b)
            self.assertEqual(mock_distance.call_count, 2)

    def test_build_matrix(self):
        coords = [Coordinates(43.65, -79.38), Coordinates(43.70, -79.40), Coordinates(43.60, -79.50)]
        matrix = self.estimator.build_matrix(coords)
        self.assertEqual(matrix.shape, (3, 3))
        self.assertTrue(np.all(np.diag(matrix) == 0))
        self.assertTrue(np.allclose(matrix, matrix.T))
        self.assertAlmostEqual(matrix[0, 1], self.estimator.distance(coords[0], coords[1]))

    def test_route_distance_sums_legs(self):
        points = [Coordinates(43.65, -79.38), Coordinates(43.70, -79.40), Coordinates(43.60, -79.50)]
        expected = self.estimator.distance(points[0], points[1]) + self.estimator.distance(points[1], points[2])
        self.assertAlmostEqual(self.estimator.route_distance(points), expected)
        self.assertEqual(self.estimator.route_distance(points[:1]), 0)

    def test_clear_cache(self):
        a, b = Coordinates(43.65, -79.38), Coordinates(43.70, -79.40)
        self.estimator.pair_distance(0, 1, a, b)
        self.estimator.clear_cache()
        self.assertEqual(len(self.estimator.cache), 0)
