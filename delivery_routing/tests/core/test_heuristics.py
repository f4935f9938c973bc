from datetime import datetime, timedelta, timezone
from unittest import TestCase

from delivery_routing.core.constants import ALGORITHM_NEAREST, ALGORITHM_SEQUENTIAL, ALGORITHM_TIME_WINDOW
from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.exceptions import OptimizationTimeout, RoutingError
from delivery_routing.core.heuristics import (
    HeuristicContext,
    hybrid,
    nearest_neighbor_from_start,
    simple_sequential,
    time_window_priority,
    urgency_score,
)
from delivery_routing.core.traffic import NoTrafficModel
from delivery_routing.core.types import Coordinates, DeliveryStop, TimeWindow, VehicleConstraints

NOON = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)
START = Coordinates(43.6532, -79.3832)


def make_context(stops, capacity=50.0, load=0.0):
    return HeuristicContext(
        start=START,
        stops=stops,
        constraints=VehicleConstraints(max_capacity=capacity, current_load=load),
        now=NOON,
        estimator=DistanceEstimator(),
        traffic=NoTrafficModel(),
    )


def urgent_and_near_stops():
    """A nearby normal stop and a farther urgent stop due in 20 minutes."""
    near = DeliveryStop(id='A', coordinates=Coordinates(43.66, -79.38))
    urgent = DeliveryStop(
        id='B',
        coordinates=Coordinates(43.64, -79.39),
        priority='urgent',
        time_window=TimeWindow(start=NOON, end=NOON + timedelta(minutes=20)),
    )
    return [near, urgent]


class UrgencyScoreTest(TestCase):
    def test_priority_tier_without_window(self):
        self.assertEqual(urgency_score(DeliveryStop(id='x', coordinates=START), NOON), 50)
        self.assertEqual(urgency_score(DeliveryStop(id='x', coordinates=START, priority='low'), NOON), 25)

    def test_deadline_bonus_uses_closest_threshold(self):
        due_soon = DeliveryStop(
            id='x', coordinates=START, priority='urgent',
            time_window=TimeWindow(start=NOON, end=NOON + timedelta(minutes=30)),
        )
        due_later = DeliveryStop(
            id='y', coordinates=START, priority='high',
            time_window=TimeWindow(start=NOON, end=NOON + timedelta(minutes=90)),
        )
        due_far = DeliveryStop(
            id='z', coordinates=START,
            time_window=TimeWindow(start=NOON, end=NOON + timedelta(hours=3)),
        )
        self.assertEqual(urgency_score(due_soon, NOON), 150)
        self.assertEqual(urgency_score(due_later, NOON), 105)
        self.assertEqual(urgency_score(due_far, NOON), 65)


class HeuristicsTest(TestCase):
    def test_nearest_neighbor_visits_closest_first(self):
        result = nearest_neighbor_from_start(make_context(urgent_and_near_stops()))
        self.assertEqual(result.route, [0, 1])
        self.assertEqual(result.algorithm, ALGORITHM_NEAREST)
        self.assertEqual(len(result.estimated_arrival_times), 2)

    def test_time_window_priority_visits_urgent_first(self):
        result = time_window_priority(make_context(urgent_and_near_stops()))
        self.assertEqual(result.route, [1, 0])
        self.assertEqual(result.algorithm, ALGORITHM_TIME_WINDOW)

    def test_time_window_priority_ties_keep_input_order(self):
        stops = [DeliveryStop(id=str(i), coordinates=Coordinates(43.65 + i * 0.01, -79.38)) for i in range(4)]
        result = time_window_priority(make_context(stops))
        self.assertEqual(result.route, [0, 1, 2, 3])

    def test_hybrid_places_every_stop_within_capacity(self):
        result = hybrid(make_context(urgent_and_near_stops()))
        self.assertEqual(sorted(result.route), [0, 1])

    def test_hybrid_raises_when_capacity_blocks_a_stop(self):
        stops = [
            DeliveryStop(id='A', coordinates=Coordinates(43.66, -79.38), package_weight=1),
            DeliveryStop(id='B', coordinates=Coordinates(43.64, -79.39), package_weight=1),
        ]
        with self.assertRaises(RoutingError):
            hybrid(make_context(stops, capacity=1))

    def test_simple_sequential_keeps_input_order(self):
        result = simple_sequential(make_context(urgent_and_near_stops()))
        self.assertEqual(result.route, [0, 1])
        self.assertEqual(result.algorithm, ALGORITHM_SEQUENTIAL)
        self.assertEqual(result.iterations, 1)

    def test_leg_times_include_service_time(self):
        stops = [DeliveryStop(id='A', coordinates=Coordinates(43.66, -79.38), service_time=12)]
        ctx = make_context(stops)
        result = simple_sequential(ctx)
        distance = ctx.estimator.distance(START, stops[0].coordinates)
        drive = max(ctx.estimator.travel_time(distance), 1.0)
        self.assertAlmostEqual(result.leg_times[0], drive + 12)
        self.assertAlmostEqual(result.total_time, drive + 12)
        self.assertEqual(result.estimated_arrival_times[0], NOON + timedelta(minutes=drive))
        self.assertEqual(result.traffic_adjustments, [1.0])

    def test_cancelled_context_stops_the_heuristic(self):
        ctx = make_context(urgent_and_near_stops())
        ctx.cancel_event.set()
        with self.assertRaises(OptimizationTimeout):
            nearest_neighbor_from_start(ctx)
