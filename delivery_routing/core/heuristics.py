"""
Greedy routing heuristics.

Each heuristic receives a HeuristicContext and returns an OptimizationResult
whose route indexes ctx.stops. Heuristics raise on failure; the engine
decides what to do with a failed candidate.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from delivery_routing.core.constants import (
    ALGORITHM_HYBRID,
    ALGORITHM_NEAREST,
    ALGORITHM_SEQUENTIAL,
    ALGORITHM_TIME_WINDOW,
    DEADLINE_BONUSES,
    DEFAULT_PACKAGE_WEIGHT,
    PRIORITY_URGENCY,
    PRIORITY_WEIGHTS,
)
from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.exceptions import OptimizationTimeout, RoutingError
from delivery_routing.core.traffic import TrafficModel, dynamic_travel_time
from delivery_routing.core.types import Coordinates, DeliveryStop, OptimizationResult, VehicleConstraints

logger = logging.getLogger(__name__)


@dataclass
class HeuristicContext:
    start: Coordinates
    stops: List[DeliveryStop]
    constraints: VehicleConstraints
    now: datetime
    estimator: DistanceEstimator
    traffic: TrafficModel
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise OptimizationTimeout("Optimization cancelled")


def package_weight(stop: DeliveryStop) -> float:
    return stop.package_weight if stop.package_weight else DEFAULT_PACKAGE_WEIGHT


def priority_weight(priority: str) -> float:
    return PRIORITY_WEIGHTS.get(priority, 1.0)


def urgency_score(stop: DeliveryStop, now: datetime) -> float:
    """
    Priority tier score plus a bonus for deadlines closer than 1/2/4 hours.
    """
    score = PRIORITY_URGENCY.get(stop.priority, PRIORITY_URGENCY['normal'])
    if stop.time_window is not None:
        hours_to_deadline = (stop.time_window.end - now).total_seconds() / 3600
        for limit, bonus in DEADLINE_BONUSES:
            if hours_to_deadline < limit:
                score += bonus
                break
    return score


class _RouteBuilder:
    """Accumulates legs, totals and a simulated clock while a route is built."""

    def __init__(self, ctx: HeuristicContext, algorithm: str):
        self.ctx = ctx
        self.algorithm = algorithm
        self.location = ctx.start
        self.clock = ctx.now
        self.load = ctx.constraints.current_load
        self.result = OptimizationResult(algorithm=algorithm)

    def leg_to(self, stop: DeliveryStop):
        return dynamic_travel_time(self.ctx.estimator, self.ctx.traffic, self.location, stop.coordinates, self.clock)

    def visit(self, index: int):
        self.ctx.check_cancelled()
        stop = self.ctx.stops[index]
        distance, minutes, factor = self.leg_to(stop)
        arrival = self.clock + timedelta(minutes=minutes)

        r = self.result
        r.route.append(index)
        r.leg_distances.append(distance)
        r.leg_times.append(minutes + stop.service_time)
        r.total_distance += distance
        r.total_time += minutes + stop.service_time
        r.estimated_arrival_times.append(arrival)
        r.traffic_adjustments.append(factor)

        self.clock = arrival + timedelta(minutes=stop.service_time)
        self.load += package_weight(stop)
        self.location = stop.coordinates

    def finish(self) -> OptimizationResult:
        self.result.iterations = len(self.ctx.stops)
        return self.result


def nearest_neighbor_from_start(ctx: HeuristicContext) -> OptimizationResult:
    """
    First stop is the one closest to the start point; afterwards always the
    unvisited stop nearest to the current location.
    """
    builder = _RouteBuilder(ctx, ALGORITHM_NEAREST)
    unvisited = set(range(len(ctx.stops)))

    while unvisited:
        ctx.check_cancelled()
        nearest = min(
            unvisited,
            key=lambda i: (ctx.estimator.distance(builder.location, ctx.stops[i].coordinates), i),
        )
        builder.visit(nearest)
        unvisited.discard(nearest)

    return builder.finish()


def time_window_priority(ctx: HeuristicContext) -> OptimizationResult:
    """
    Visits stops by descending urgency score regardless of geography. Ties
    keep input order.
    """
    builder = _RouteBuilder(ctx, ALGORITHM_TIME_WINDOW)
    order = sorted(range(len(ctx.stops)), key=lambda i: -urgency_score(ctx.stops[i], ctx.now))
    for index in order:
        builder.visit(index)
    return builder.finish()


def hybrid_score(builder: _RouteBuilder, stop: DeliveryStop) -> float:
    distance, minutes, _ = builder.leg_to(stop)
    score = -(distance * 2) - (minutes * 0.5) + priority_weight(stop.priority) * 10

    if stop.time_window is not None:
        arrival = builder.clock + timedelta(minutes=minutes)
        score += 20 if arrival <= stop.time_window.end else -50

    remaining = builder.ctx.constraints.max_capacity - builder.load
    if package_weight(stop) <= remaining * 0.5:
        score += 10
    return score


def hybrid(ctx: HeuristicContext) -> OptimizationResult:
    """
    Scored greedy selection over capacity-feasible stops.

    Raises:
        RoutingError: when capacity leaves some stops unplaceable.
    """
    builder = _RouteBuilder(ctx, ALGORITHM_HYBRID)
    capacity = ctx.constraints.max_capacity
    unvisited = set(range(len(ctx.stops)))

    while unvisited:
        ctx.check_cancelled()
        best_index: Optional[int] = None
        best_score = float('-inf')
        for i in sorted(unvisited):
            stop = ctx.stops[i]
            if builder.load + package_weight(stop) > capacity:
                continue
            score = hybrid_score(builder, stop)
            if score > best_score:
                best_score = score
                best_index = i

        if best_index is None:
            raise RoutingError(
                f"Hybrid optimization could not place {len(unvisited)} stops within capacity {capacity}"
            )
        builder.visit(best_index)
        unvisited.discard(best_index)

    return builder.finish()


def simple_sequential(ctx: HeuristicContext) -> OptimizationResult:
    """Visits stops in input order."""
    builder = _RouteBuilder(ctx, ALGORITHM_SEQUENTIAL)
    for index in range(len(ctx.stops)):
        builder.visit(index)
    result = builder.finish()
    result.iterations = 1
    return result


HeuristicFn = Callable[[HeuristicContext], OptimizationResult]

CANDIDATE_ALGORITHMS: Dict[str, HeuristicFn] = {
    ALGORITHM_NEAREST: nearest_neighbor_from_start,
    ALGORITHM_TIME_WINDOW: time_window_priority,
    ALGORITHM_HYBRID: hybrid,
}
