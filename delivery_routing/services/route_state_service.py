"""
Lifecycle management for a driver's persisted route.

RouteStateManager creates routes from orders, applies delivery completion,
addition and cancellation, recalculates pending stops and ends shifts.
Every mutating call appends exactly one history entry and runs under a
per-route lock.
"""
import logging
import math
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from django.db import DatabaseError
from django.utils import timezone

from delivery_routing.core.constants import (
    HISTORY_CANCELLED,
    HISTORY_COMPLETED,
    HISTORY_CREATED,
    HISTORY_RECALCULATED,
    HISTORY_UPDATED,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
    PRIORITY_URGENT,
    ROUTE_CANCELLED,
    ROUTE_COMPLETED,
    STOP_CANCELLED,
    STOP_COMPLETED,
    STOP_PENDING,
)
from delivery_routing.core.exceptions import (
    PersistenceUnavailable,
    RouteNotFound,
    RouteStateError,
    ValidationError,
)
from delivery_routing.core.route_optimizer import RouteOptimizerEngine
from delivery_routing.core.types import (
    Coordinates,
    DeliveryStop,
    OptimizationResult,
    Order,
    PersistentRoute,
    RouteHistoryEntry,
    RouteStopRecord,
    VehicleConstraints,
)
from delivery_routing.services.geocoding_service import GeoResolver
from delivery_routing.services.route_stats_service import RouteStatsService
from delivery_routing.services.route_store import RouteStore, order_from_snapshot, order_to_snapshot
from delivery_routing.settings import (
    DEFAULT_CENTER,
    DEFAULT_DEPOT,
    DEFAULT_MAX_STOPS,
    DEFAULT_SHIFT_HOURS,
    DEFAULT_VEHICLE_CAPACITY,
)

logger = logging.getLogger(__name__)

RouteRef = Union[str, PersistentRoute]
OrderLookup = Callable[[List[str]], Dict[str, Order]]

BASE_SERVICE_MINUTES = 10.0
MIN_SERVICE_MINUTES = 5.0
PRIORITY_SERVICE_ADJUSTMENT = {
    PRIORITY_URGENT: 5.0,
    PRIORITY_HIGH: 2.0,
    PRIORITY_LOW: -2.0,
}
POSITION_BONUS = {
    PRIORITY_URGENT: 30.0,
    PRIORITY_HIGH: 20.0,
    PRIORITY_NORMAL: 10.0,
}


def estimate_service_time(order: Order) -> float:
    """
    Minutes spent at a stop: 10 base, adjusted by priority, +3 for long
    delivery notes, never below 5.
    """
    minutes = BASE_SERVICE_MINUTES + PRIORITY_SERVICE_ADJUSTMENT.get(order.priority, 0.0)
    if order.notes and len(order.notes) > 100:
        minutes += 3
    return max(minutes, MIN_SERVICE_MINUTES)


def stop_optimization_score(stop: DeliveryStop, arrival: Optional[datetime], traffic_factor: float,
                            position: int, total_stops: int) -> float:
    """
    Score in 0..100 describing how well a stop is placed in its route.
    """
    score = 100.0
    ratio = position / total_stops if total_stops else 0.0
    score += (1 - ratio) * POSITION_BONUS.get(stop.priority, 0.0)

    if stop.time_window is not None and arrival is not None:
        if arrival <= stop.time_window.end:
            score += 25
            hours_early = (stop.time_window.start - arrival).total_seconds() / 3600
            if 0 <= hours_early <= 1:
                score += 15
            elif hours_early > 1:
                score -= hours_early * 5
        else:
            score -= 40

    if traffic_factor > 1.2:
        score -= (traffic_factor - 1.0) * 20
    elif traffic_factor < 1.1:
        score += 10

    score -= len(stop.special_requirements) * 5
    return max(0.0, min(100.0, score))


class RouteStateManager:
    """
    Owns the persisted lifecycle of drivers' routes.

    Args:
        optimizer: Engine used to order stops.
        geocoder: Resolves order addresses lacking coordinates.
        store: Durable route store.
        stats_service: Computes route metrics; built from the optimizer's
            estimator when omitted.
        order_lookup: Optional callable returning live orders by id; used to
            join stops to current order state in get_current_route().
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        optimizer: RouteOptimizerEngine,
        geocoder: GeoResolver,
        store: RouteStore,
        stats_service: Optional[RouteStatsService] = None,
        order_lookup: Optional[OrderLookup] = None,
        default_center: Tuple[float, float] = DEFAULT_CENTER,
        default_depot: Tuple[float, float] = DEFAULT_DEPOT,
        vehicle_capacity: float = DEFAULT_VEHICLE_CAPACITY,
        max_stops: int = DEFAULT_MAX_STOPS,
        shift_hours: float = DEFAULT_SHIFT_HOURS,
        clock: Callable[[], datetime] = timezone.now,
    ):
        self.optimizer = optimizer
        self.geocoder = geocoder
        self.store = store
        self.stats = stats_service or RouteStatsService(optimizer.estimator)
        self.order_lookup = order_lookup
        self.default_center = Coordinates(*default_center)
        self.default_depot = Coordinates(*default_depot)
        self.vehicle_capacity = vehicle_capacity
        self.max_stops = max_stops
        self.shift_hours = shift_hours
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # --- locking --------------------------------------------------------

    @contextmanager
    def _route_lock(self, route_id: str):
        with self._locks_guard:
            lock = self._locks.setdefault(str(route_id), threading.Lock())
        with lock:
            yield

    # --- helpers --------------------------------------------------------

    @staticmethod
    def _shift_date(moment: datetime) -> date:
        return timezone.localdate(moment) if timezone.is_aware(moment) else moment.date()

    def _constraints(self, now: datetime, current_load: float = 0.0) -> VehicleConstraints:
        return VehicleConstraints(
            max_capacity=self.vehicle_capacity,
            current_load=current_load,
            max_stops=self.max_stops,
            working_hours_start=now,
            working_hours_end=now + timedelta(hours=self.shift_hours),
        )

    def _locate_orders(self, orders: Sequence[Order]) -> List[Tuple[Order, Coordinates]]:
        """
        Pair orders with coordinates, geocoding those that only carry an
        address. Orders with neither are skipped.
        """
        located: List[Tuple[Order, Optional[Coordinates]]] = []
        to_resolve = []
        for order in orders:
            if order.coordinates is not None and order.coordinates.is_valid():
                located.append((order, order.coordinates))
            elif order.address and order.address.strip():
                located.append((order, None))
                to_resolve.append(order.address)
            else:
                logger.warning(f"Order {order.id} has no address or coordinates; skipping")

        if to_resolve:
            resolved = {r.address: r.coordinates for r in self.geocoder.resolve_with_fallback(to_resolve)}
            located = [(order, coords or resolved.get(order.address)) for order, coords in located]

        return [(order, coords) for order, coords in located if coords is not None]

    def _start_location(self, driver_location: Optional[Coordinates],
                        coordinates: Iterable[Coordinates]) -> Coordinates:
        if driver_location is not None and driver_location.is_valid():
            return driver_location
        coordinates = list(coordinates)
        if coordinates:
            return Coordinates(
                sum(c.latitude for c in coordinates) / len(coordinates),
                sum(c.longitude for c in coordinates) / len(coordinates),
            )
        return self.default_center

    def _plan(self, located: List[Tuple[Order, Coordinates]], start: Coordinates,
              now: datetime) -> Tuple[List[RouteStopRecord], OptimizationResult]:
        """
        Optimize located orders and turn the result into stop records in
        visiting order. Orders the optimizer left out are appended after the
        optimized ones so no delivery is lost.
        """
        delivery_stops = [
            DeliveryStop(
                id=order.id,
                coordinates=coords,
                time_window=order.time_window,
                service_time=estimate_service_time(order),
                package_weight=order.package_weight,
                priority=order.priority,
                special_requirements=list(order.special_requirements),
                order_id=order.id,
            )
            for order, coords in located
        ]
        result = self.optimizer.optimize(start, delivery_stops, self._constraints(now), now=now)

        def leg(values, position, default):
            return values[position] if position < len(values) else default

        records = []
        total = len(result.route)
        for position, index in enumerate(result.route):
            order, coords = located[index]
            stop = delivery_stops[index]
            arrival = leg(result.estimated_arrival_times, position, None)
            traffic = leg(result.traffic_adjustments, position, 1.0)
            records.append(RouteStopRecord(
                id=str(uuid.uuid4()),
                order_id=order.id,
                sequence=0,
                coordinates=coords,
                address=order.address,
                estimated_distance=leg(result.leg_distances, position, 0.0),
                estimated_time=leg(result.leg_times, position, stop.service_time),
                estimated_arrival=arrival,
                optimization_score=stop_optimization_score(stop, arrival, traffic, position, total),
                notes=order.notes,
                order_data=order_to_snapshot(order),
            ))

        routed = set(result.route)
        leftovers = [i for i in range(len(located)) if i not in routed]
        if leftovers:
            logger.warning(f"{len(leftovers)} orders were not placed by the optimizer; appending them")
            estimator = self.optimizer.estimator
            previous = records[-1].coordinates if records else start
            for index in leftovers:
                order, coords = located[index]
                distance = estimator.distance(previous, coords)
                records.append(RouteStopRecord(
                    id=str(uuid.uuid4()),
                    order_id=order.id,
                    sequence=0,
                    coordinates=coords,
                    address=order.address,
                    estimated_distance=distance,
                    estimated_time=estimator.travel_time(distance) + delivery_stops[index].service_time,
                    notes=order.notes,
                    order_data=order_to_snapshot(order),
                ))
                previous = coords
        return records, result

    @staticmethod
    def _assign_sequences(route: PersistentRoute, replaced: List[RouteStopRecord],
                          ordered: List[RouteStopRecord]) -> None:
        """
        Give ordered the sequence slots freed by replaced, extending past the
        current maximum when more slots are needed. Stops outside replaced
        keep their sequence numbers.
        """
        replaced_ids = {s.id for s in replaced}
        kept = [s for s in route.stops if s.id not in replaced_ids]
        slots = sorted(s.sequence for s in replaced)
        next_slot = max([s.sequence for s in route.stops] + [0]) + 1
        while len(slots) < len(ordered):
            slots.append(next_slot)
            next_slot += 1
        for stop, slot in zip(ordered, slots):
            stop.sequence = slot

        stops = sorted(kept + ordered, key=lambda s: s.sequence)
        expected = list(range(1, len(stops) + 1))
        if [s.sequence for s in stops] != expected:
            logger.info(f"Compacting sequence numbers for route {route.id}")
            for number, stop in enumerate(stops, start=1):
                stop.sequence = number
        route.stops = stops

    @staticmethod
    def _apply_totals(route: PersistentRoute) -> None:
        route.total_distance = sum(s.estimated_distance for s in route.stops)
        route.total_time = sum(s.estimated_time for s in route.stops)
        completed = [s for s in route.stops if s.status == STOP_COMPLETED]
        route.completed_distance = sum(
            s.actual_distance if s.actual_distance is not None else s.estimated_distance for s in completed
        )
        route.completed_time = sum(
            s.actual_time if s.actual_time is not None else s.estimated_time for s in completed
        )

    def _append_history(self, route: PersistentRoute, action: str, description: str,
                        metadata: Optional[dict] = None) -> RouteHistoryEntry:
        entry = RouteHistoryEntry(
            id=str(uuid.uuid4()),
            action=action,
            description=description,
            timestamp=self._clock(),
            stop_count=len(route.stops),
            total_distance=route.total_distance,
            total_time=route.total_time,
            metadata=metadata or {},
        )
        route.history.append(entry)
        return entry

    @staticmethod
    def _find_stop(route: PersistentRoute, stop_id: str) -> RouteStopRecord:
        stop = route.get_stop(str(stop_id))
        if stop is None:
            stop = next((s for s in route.stops if s.order_id == str(stop_id)), None)
        if stop is None:
            raise RouteNotFound(f"Stop {stop_id} not found on route {route.id}")
        return stop

    def _stop_orders(self, stops: Iterable[RouteStopRecord]) -> List[Tuple[Order, Coordinates]]:
        located = []
        for stop in stops:
            order = order_from_snapshot(stop.order_data or {'id': stop.order_id, 'address': stop.address},
                                        stop.coordinates)
            located.append((order, stop.coordinates))
        missing = [order for order, coords in located if coords is None]
        if missing:
            resolved = {o.id: c for o, c in self._locate_orders(missing)}
            located = [(order, coords or resolved.get(order.id)) for order, coords in located]
        return [(order, coords) for order, coords in located if coords is not None]

    def _replan_pending(self, route: PersistentRoute, start: Coordinates, now: datetime,
                        extra: Sequence[Tuple[Order, Coordinates]] = ()) -> Tuple[List[RouteStopRecord], OptimizationResult]:
        """
        Re-optimize the pending stops (plus extra orders) and splice them back
        into the route. Pending stops keep their ids.
        """
        pending = route.pending_stops
        located = self._stop_orders(pending) + list(extra)
        if not located:
            return [], OptimizationResult()

        planned, result = self._plan(located, start, now)
        existing_ids = {s.order_id: s.id for s in pending}
        for stop in planned:
            stop.id = existing_ids.get(stop.order_id, stop.id)
        self._assign_sequences(route, pending, planned)
        self._apply_totals(route)
        return planned, result

    def _mutate(self, route_ref: RouteRef, operation: Callable[[PersistentRoute], None]) -> Optional[PersistentRoute]:
        """
        Apply operation to a route under its lock and persist the result.

        In-memory routes (and any route while the store is not provisioned)
        are mutated in place without persistence. A genuine store failure
        raises PersistenceUnavailable.
        """
        def apply(route):
            if not route.is_active:
                raise RouteStateError(f"Route {route.id} is {route.status} and can no longer change")
            operation(route)

        if isinstance(route_ref, PersistentRoute) and not route_ref.persisted:
            with self._route_lock(route_ref.id):
                apply(route_ref)
            return route_ref

        route_id = route_ref.id if isinstance(route_ref, PersistentRoute) else str(route_ref)
        if not self.store.schema_available():
            if isinstance(route_ref, PersistentRoute):
                logger.warning(f"Route store unavailable; updating route {route_id} in memory only")
                route_ref.persisted = False
                with self._route_lock(route_id):
                    apply(route_ref)
                return route_ref
            logger.warning(f"Route store unavailable; cannot load route {route_id}")
            return None

        with self._route_lock(route_id):
            try:
                with self.store.locked(route_id) as route:
                    if route is None:
                        raise RouteNotFound(f"Route {route_id} not found")
                    apply(route)
                    self.store.save(route)
            except DatabaseError as e:
                logger.exception(f"Failed to persist route {route_id}")
                raise PersistenceUnavailable(f"Failed to persist route {route_id}: {e}") from e
        return route

    # --- operations -----------------------------------------------------

    def create_route(self, driver_id: str, orders: Sequence[Order],
                     driver_location: Optional[Coordinates] = None,
                     now: Optional[datetime] = None) -> PersistentRoute:
        """
        Build and persist an optimized route for a driver's shift.

        The start location is the driver's live position, else the centroid
        of the delivery coordinates, else the configured default center. An
        existing active route for the same driver and day is cancelled.

        Raises:
            ValidationError: no usable orders or the optimizer placed no stop.
            PersistenceUnavailable: the store is provisioned but the write failed.
        """
        if not orders:
            raise ValidationError("No orders provided for route optimization")
        now = now or self._clock()

        located = self._locate_orders(orders)
        if not located:
            raise ValidationError("No orders with a usable address or coordinates")

        start = self._start_location(driver_location, [coords for _, coords in located])
        stops, result = self._plan(located, start, now)
        if not result.route:
            raise ValidationError(f"Route optimization produced no stops: {'; '.join(result.errors)}")
        for number, stop in enumerate(stops, start=1):
            stop.sequence = number

        route = PersistentRoute(
            id=str(uuid.uuid4()),
            driver_id=str(driver_id),
            shift_date=self._shift_date(now),
            stops=stops,
            center=start,
            optimization_metrics=self.stats.summarize(result, [coords for _, coords in located]),
            created_at=now,
            updated_at=now,
        )
        self._apply_totals(route)
        self._append_history(
            route,
            HISTORY_CREATED,
            f"Optimized route created with {len(stops)} stops using {result.algorithm}",
            {
                'start_location': start.as_list(),
                'order_count': len(orders),
                'algorithm': result.algorithm,
                'errors': list(result.errors),
                'warnings': list(result.warnings),
            },
        )

        if not self.store.schema_available():
            logger.warning(f"Route tables unavailable; returning in-memory route for driver {driver_id}")
            route.persisted = False
            return route

        existing = self.store.find_active(route.driver_id, route.shift_date)
        # The replacement is written first; both writes commit together or not at all.
        with self.store.atomic():
            with self._route_lock(route.id):
                try:
                    self.store.create(route)
                except DatabaseError as e:
                    logger.exception(f"Failed to persist new route for driver {driver_id}")
                    raise PersistenceUnavailable(f"Failed to persist route for driver {driver_id}: {e}") from e
            if existing is not None:
                self._supersede(existing.id, route.id)
        logger.info(f"Created route {route.id} for driver {driver_id} with {len(stops)} stops "
                    f"({route.total_distance:.2f}km)")
        return route

    def _supersede(self, route_id: str, replacement_id: str) -> None:
        def operation(route):
            route.status = ROUTE_CANCELLED
            self._append_history(route, HISTORY_CANCELLED, f"Route superseded by {replacement_id}",
                                 {'superseded_by': replacement_id})

        logger.info(f"Cancelling route {route_id}; superseded by {replacement_id}")
        try:
            self._mutate(route_id, operation)
        except RouteStateError:
            logger.info(f"Route {route_id} was already closed; nothing to supersede")

    def get_current_route(self, driver_id: str) -> Optional[PersistentRoute]:
        """
        Today's active route for a driver, with stops joined to live orders.

        Returns None when the store is not provisioned, no route exists or
        none of the route's stops maps to a valid order.
        """
        if not self.store.schema_available():
            logger.info("Route tables unavailable; no persisted route to return")
            return None

        route = self.store.find_active(str(driver_id), self._shift_date(self._clock()))
        if route is None:
            return None

        if self.order_lookup is not None:
            live = self.order_lookup([s.order_id for s in route.stops])
            joined = []
            for stop in route.stops:
                order = live.get(stop.order_id)
                if order is None:
                    continue
                stop.order_data = order_to_snapshot(order)
                joined.append(stop)
        else:
            joined = [s for s in route.stops if s.order_id]

        if not joined:
            logger.warning(f"Route {route.id} has no stops with valid orders; treating as not found")
            return None
        route.stops = joined
        return route

    def complete_delivery(self, route: RouteRef, stop_id: str, actual_time: Optional[float] = None,
                          actual_distance: Optional[float] = None) -> Optional[PersistentRoute]:
        """
        Mark a pending stop completed and recompute completed totals from
        every completed stop.
        """
        for name, value in (('actual_time', actual_time), ('actual_distance', actual_distance)):
            if value is not None and (not math.isfinite(value) or value < 0):
                raise ValidationError(f"{name} must be a non-negative number")

        def operation(r):
            stop = self._find_stop(r, stop_id)
            if stop.status != STOP_PENDING:
                raise RouteStateError(f"Stop {stop.id} is already {stop.status}")
            stop.status = STOP_COMPLETED
            stop.completed_at = self._clock()
            stop.actual_time = actual_time
            stop.actual_distance = actual_distance
            self._apply_totals(r)
            self._append_history(r, HISTORY_COMPLETED, f"Delivery {stop.order_id} completed", {
                'stop_id': stop.id,
                'order_id': stop.order_id,
                'actual_time': actual_time,
                'actual_distance': actual_distance,
                'completed_distance': r.completed_distance,
                'completed_time': r.completed_time,
            })

        return self._mutate(route, operation)

    def add_delivery(self, route: RouteRef, new_order: Order) -> Optional[PersistentRoute]:
        """
        Merge a new order into the pending stops and re-optimize only those,
        starting from the last completed stop (or the depot).
        """
        def operation(r):
            if any(s.order_id == new_order.id for s in r.stops):
                raise ValidationError(f"Order {new_order.id} is already on route {r.id}")
            located = self._locate_orders([new_order])
            if not located:
                raise ValidationError(f"Order {new_order.id} has no usable address or coordinates")

            completed = [s for s in r.stops if s.status == STOP_COMPLETED and s.coordinates is not None]
            if completed:
                last = max(completed, key=lambda s: (s.completed_at.timestamp() if s.completed_at else 0.0, s.sequence))
                start = last.coordinates
            else:
                start = self.default_depot

            planned, result = self._replan_pending(r, start, self._clock(), extra=located)
            self._append_history(
                r, HISTORY_UPDATED,
                f"Added delivery {new_order.id} and re-optimized {len(planned)} pending stops",
                {
                    'order_id': new_order.id,
                    'reoptimized': True,
                    'pending_count': len(planned),
                    'algorithm': result.algorithm,
                    'errors': list(result.errors),
                },
            )

        return self._mutate(route, operation)

    def cancel_delivery(self, route: RouteRef, stop_id: str, reason: str = '') -> Optional[PersistentRoute]:
        """Cancel a pending stop. Remaining stops are not re-optimized."""
        def operation(r):
            stop = self._find_stop(r, stop_id)
            if stop.status != STOP_PENDING:
                raise RouteStateError(f"Stop {stop.id} is already {stop.status}")
            stop.status = STOP_CANCELLED
            stop.notes = reason or stop.notes
            self._apply_totals(r)
            self._append_history(r, HISTORY_CANCELLED, f"Delivery {stop.order_id} cancelled", {
                'stop_id': stop.id,
                'order_id': stop.order_id,
                'reason': reason,
            })

        return self._mutate(route, operation)

    def recalculate_route(self, route: RouteRef,
                          pending_orders: Optional[Sequence[Order]] = None) -> Optional[PersistentRoute]:
        """
        Re-optimize the pending stops from the default depot, updating their
        sequence and estimates in place. pending_orders refreshes the order
        data of matching pending stops.
        """
        def operation(r):
            if pending_orders:
                fresh = {o.id: o for o in pending_orders}
                for stop in r.pending_stops:
                    order = fresh.pop(stop.order_id, None)
                    if order is None:
                        continue
                    stop.order_data = order_to_snapshot(order)
                    if order.coordinates is not None and order.coordinates.is_valid():
                        stop.coordinates = order.coordinates
                if fresh:
                    logger.warning(f"Ignoring {len(fresh)} orders that are not pending on route {r.id}")

            planned, result = self._replan_pending(r, self.default_depot, self._clock())
            self._append_history(
                r, HISTORY_RECALCULATED,
                f"Route recalculated for {len(planned)} pending deliveries",
                {'algorithm': result.algorithm, 'pending_count': len(planned), 'errors': list(result.errors)},
            )

        return self._mutate(route, operation)

    def end_shift(self, route: RouteRef) -> Optional[PersistentRoute]:
        """Complete the route. A completed route cannot be reopened."""
        def operation(r):
            r.status = ROUTE_COMPLETED
            completed = sum(1 for s in r.stops if s.status == STOP_COMPLETED)
            self._append_history(r, HISTORY_COMPLETED, "Shift ended and route completed", {
                'shift_ended': True,
                'completed_stops': completed,
                'remaining_stops': len(r.pending_stops),
                'completed_distance': r.completed_distance,
                'completed_time': r.completed_time,
            })

        return self._mutate(route, operation)

