"""
Route optimization engine.

Runs several independent greedy heuristics over the feasible stops, keeps the
best valid candidate and never raises: validation problems, timeouts and
unexpected failures are reported on the returned OptimizationResult.
"""
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from django.utils import timezone

from delivery_routing.core.constants import (
    ALGORITHM_FALLBACK,
    ALGORITHM_HYBRID,
    MAX_SAFE_DISTANCE,
    MAX_SAFE_TIME,
)
from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.exceptions import OptimizationTimeout
from delivery_routing.core.heuristics import (
    CANDIDATE_ALGORITHMS,
    HeuristicContext,
    HeuristicFn,
    package_weight,
    simple_sequential,
)
from delivery_routing.core.traffic import SimulatedTrafficModel, TrafficModel
from delivery_routing.core.types import Coordinates, DeliveryStop, OptimizationResult, VehicleConstraints
from delivery_routing.settings import (
    CAPACITY_TOLERANCE,
    HYBRID_CLUSTER_LIMIT,
    MAX_STOPS_PER_ROUTE,
    OPTIMIZATION_TIMEOUT_SECONDS,
    WORKING_HOURS_BUFFER_HOURS,
)

logger = logging.getLogger(__name__)

FALLBACK_MINUTES_PER_STOP = 30
WINDOW_ARRIVAL_ESTIMATE = timedelta(hours=1)
WINDOW_GRACE = timedelta(hours=2)


class RouteOptimizerEngine:
    """
    Computes a near-optimal visiting order for a single driver.

    Args:
        estimator: Distance estimator shared with other services.
        traffic_model: Traffic delay model; defaults to the simulated model.
        timeout_seconds: Hard limit for one optimize() call.
        max_stops: Maximum number of stops accepted per call.
        cluster_limit: Maximum stop count for which the hybrid heuristic runs.
        algorithms: Candidate heuristics by name.
        max_workers: Size of the worker pool running candidates.
    """

    def __init__(
        self,
        estimator: Optional[DistanceEstimator] = None,
        traffic_model: Optional[TrafficModel] = None,
        timeout_seconds: float = OPTIMIZATION_TIMEOUT_SECONDS,
        max_stops: int = MAX_STOPS_PER_ROUTE,
        cluster_limit: int = HYBRID_CLUSTER_LIMIT,
        capacity_tolerance: float = CAPACITY_TOLERANCE,
        working_hours_buffer: timedelta = timedelta(hours=WORKING_HOURS_BUFFER_HOURS),
        algorithms: Optional[Dict[str, HeuristicFn]] = None,
        max_workers: int = 6,
    ):
        self.estimator = estimator or DistanceEstimator()
        self.traffic_model = traffic_model or SimulatedTrafficModel(self.estimator)
        self.timeout_seconds = timeout_seconds
        self.max_stops = max_stops
        self.cluster_limit = cluster_limit
        self.capacity_tolerance = capacity_tolerance
        self.working_hours_buffer = working_hours_buffer
        self.algorithms = dict(algorithms if algorithms is not None else CANDIDATE_ALGORITHMS)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='route-optimizer')

    def shutdown(self):
        self._executor.shutdown(wait=False)

    # --- validation -----------------------------------------------------

    def _validate_inputs(self, start: Any, stops: Any, constraints: Any) -> List[str]:
        errors = []

        if not isinstance(start, Coordinates):
            errors.append("Invalid driver location")
        elif not start.is_valid():
            errors.append("Driver location coordinates are invalid or out of range")

        if not isinstance(stops, (list, tuple)):
            errors.append("Deliveries must be a list")
        elif len(stops) > self.max_stops:
            errors.append(f"Too many deliveries (maximum {self.max_stops})")

        if not isinstance(constraints, VehicleConstraints):
            errors.append("Vehicle constraints are required")
        else:
            if constraints.max_capacity <= 0:
                errors.append("Invalid vehicle capacity")
            if constraints.current_load < 0:
                errors.append("Invalid current load")
            if constraints.current_load > constraints.max_capacity:
                errors.append("Current load exceeds vehicle capacity")

        return errors

    @staticmethod
    def _has_valid_coordinates(stop: Any) -> bool:
        return (
            isinstance(stop, DeliveryStop)
            and isinstance(stop.coordinates, Coordinates)
            and stop.coordinates.is_valid()
        )

    def filter_feasible(self, stops: Sequence[DeliveryStop], indices: Sequence[int],
                        constraints: VehicleConstraints, now: datetime) -> List[int]:
        """
        Indices of stops that pass capacity, working-hours and time-window checks.
        """
        outside_hours = (
            (constraints.working_hours_start is not None
             and now < constraints.working_hours_start - self.working_hours_buffer)
            or (constraints.working_hours_end is not None
                and now > constraints.working_hours_end + self.working_hours_buffer)
        )
        if outside_hours:
            logger.info("Current time is outside the buffered working hours; no stop is feasible")
            return []

        feasible = []
        limit = constraints.max_capacity * self.capacity_tolerance
        for index in indices:
            stop = stops[index]
            if constraints.current_load + package_weight(stop) > limit:
                logger.debug(f"Stop {stop.id} exceeds capacity tolerance")
                continue
            if stop.time_window is not None and now + WINDOW_ARRIVAL_ESTIMATE > stop.time_window.end + WINDOW_GRACE:
                logger.debug(f"Stop {stop.id} time window already missed")
                continue
            feasible.append(index)
        return feasible

    def _validate_result(self, result: OptimizationResult, expected_count: int) -> OptimizationResult:
        errors = list(result.errors)

        if len(result.route) != expected_count:
            errors.append(f"Route missing deliveries: expected {expected_count}, got {len(result.route)}")

        if len(set(result.route)) != len(result.route):
            errors.append("Route contains duplicate delivery indices")

        invalid = [i for i in result.route if not 0 <= i < expected_count]
        if invalid:
            errors.append(f"Route contains invalid indices: {', '.join(str(i) for i in invalid)}")

        if not math.isfinite(result.total_distance) or not 0 <= result.total_distance <= MAX_SAFE_DISTANCE:
            errors.append("Invalid total distance")
            result.total_distance = 0.0

        if not math.isfinite(result.total_time) or not 0 <= result.total_time <= MAX_SAFE_TIME:
            errors.append("Invalid total time")
            result.total_time = 0.0

        result.errors = errors
        result.is_valid = result.is_valid and not errors
        return result

    # --- running --------------------------------------------------------

    def _candidate_names(self, count: int) -> List[str]:
        names = list(self.algorithms)
        if count > self.cluster_limit and ALGORITHM_HYBRID in names:
            names.remove(ALGORITHM_HYBRID)
        return names

    @staticmethod
    def _run_candidate(name: str, fn: HeuristicFn, ctx: HeuristicContext) -> OptimizationResult:
        started = time.perf_counter()
        result = fn(ctx)
        logger.debug(f"{name} finished in {(time.perf_counter() - started) * 1000:.1f}ms "
                     f"with distance {result.total_distance:.2f}km")
        return result

    def _run_algorithms(self, ctx: HeuristicContext) -> OptimizationResult:
        names = self._candidate_names(len(ctx.stops))
        futures = {
            self._executor.submit(self._run_candidate, name, self.algorithms[name], ctx): name
            for name in names
        }
        done, not_done = wait(futures, timeout=self.timeout_seconds)
        if not_done:
            ctx.cancel_event.set()
            for future in not_done:
                future.cancel()
            raise OptimizationTimeout(f"Optimization timeout after {self.timeout_seconds}s")

        successful = []
        failures = []
        for future, name in futures.items():
            error = future.exception()
            if error is not None:
                logger.warning(f"Algorithm {name} failed: {error}")
                failures.append(f"{name} failed: {error}")
                continue
            result = future.result()
            if not result.route and ctx.stops:
                failures.append(f"{name} returned an empty route")
                continue
            successful.append((names.index(name), result))

        if not successful:
            logger.warning("All optimization algorithms failed, using sequential fallback")
            result = simple_sequential(self._fresh_context(ctx))
            result.is_valid = False
            result.errors = failures + ["All optimization algorithms failed; using input order"]
            return result

        _, best = min(successful, key=lambda item: (item[1].total_distance, item[0]))
        logger.info(f"Best algorithm: {best.algorithm} with distance {best.total_distance:.2f}km")
        return best

    @staticmethod
    def _fresh_context(ctx: HeuristicContext) -> HeuristicContext:
        return HeuristicContext(
            start=ctx.start, stops=ctx.stops, constraints=ctx.constraints, now=ctx.now,
            estimator=ctx.estimator, traffic=ctx.traffic,
        )

    def _fallback_result(self, start: Coordinates, stops: List[DeliveryStop], now: datetime,
                         errors: List[str]) -> OptimizationResult:
        """
        Degraded sequential route using a flat per-stop time estimate.
        """
        result = OptimizationResult(
            route=list(range(len(stops))),
            algorithm=ALGORITHM_FALLBACK,
            iterations=1,
            is_valid=False,
            errors=errors + ["Using fallback optimization due to errors"],
        )
        location = start
        for position, stop in enumerate(stops, start=1):
            try:
                leg = self.estimator.distance(location, stop.coordinates)
            except (ArithmeticError, TypeError, ValueError) as e:
                logger.warning(f"Fallback distance unavailable for stop {stop.id}: {e}")
                leg = 0.0
            result.leg_distances.append(leg)
            result.leg_times.append(float(FALLBACK_MINUTES_PER_STOP))
            result.estimated_arrival_times.append(now + timedelta(minutes=position * FALLBACK_MINUTES_PER_STOP))
            result.traffic_adjustments.append(1.0)
            location = stop.coordinates
        result.total_distance = sum(result.leg_distances)
        result.total_time = float(len(stops) * FALLBACK_MINUTES_PER_STOP)
        return result

    def optimize(
        self,
        start: Coordinates,
        stops: Sequence[DeliveryStop],
        constraints: VehicleConstraints,
        now: Optional[datetime] = None,
    ) -> OptimizationResult:
        """
        Optimize the visiting order of stops starting from start.

        Args:
            start: Driver location the route starts from.
            stops: Candidate delivery stops.
            constraints: Vehicle limits for this call.
            now: Reference time; defaults to the current time.

        Returns:
            OptimizationResult whose route indexes the given stops list. The
            method does not raise; problems are listed in errors/warnings.
        """
        started = time.perf_counter()
        now = now or timezone.now()

        errors = self._validate_inputs(start, stops, constraints)
        if errors:
            logger.warning(f"Rejected optimization request: {'; '.join(errors)}")
            return OptimizationResult(is_valid=False, errors=errors)

        stops = list(stops)
        if not stops:
            logger.info("No deliveries provided for optimization")
            return OptimizationResult(is_valid=True)

        warnings = []
        valid_indices = [i for i, stop in enumerate(stops) if self._has_valid_coordinates(stop)]
        if not valid_indices:
            return OptimizationResult(is_valid=False, errors=["No valid deliveries with coordinates found"])
        if len(valid_indices) < len(stops):
            dropped = len(stops) - len(valid_indices)
            warnings.append(f"Filtered out {dropped} deliveries with invalid coordinates")
            logger.warning(warnings[-1])

        feasible = self.filter_feasible(stops, valid_indices, constraints, now)
        if not feasible:
            warnings.append("No deliveries satisfy vehicle constraints; optimizing all valid deliveries")
            logger.warning(warnings[-1])
            feasible = valid_indices
        if len(feasible) > constraints.max_stops:
            warnings.append(f"Route has {len(feasible)} stops, above the vehicle limit of {constraints.max_stops}")

        selected = [stops[i] for i in feasible]

        try:
            self.traffic_model.refresh([start] + [s.coordinates for s in selected])
        except Exception as e:
            logger.warning(f"Traffic update failed: {e}")
            warnings.append("Traffic data unavailable, using default estimates")

        ctx = HeuristicContext(
            start=start, stops=selected, constraints=constraints, now=now,
            estimator=self.estimator, traffic=self.traffic_model,
        )
        try:
            result = self._run_algorithms(ctx)
        except OptimizationTimeout as e:
            logger.error(str(e))
            result = self._fallback_result(start, selected, now, [str(e)])
        except Exception as e:
            logger.exception("Route optimization failed")
            result = self._fallback_result(start, selected, now, [str(e) or e.__class__.__name__])

        result = self._validate_result(result, len(selected))
        result.route = [feasible[i] for i in result.route if 0 <= i < len(feasible)]
        result.warnings = warnings + result.warnings
        result.computation_time_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"Optimized {len(result.route)} stops with {result.algorithm} in {result.computation_time_ms:.0f}ms "
            f"(distance {result.total_distance:.2f}km, valid={result.is_valid})"
        )
        return result
