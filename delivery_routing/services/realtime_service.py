"""
Re-optimization of a driver's remaining deliveries from live updates.

Each update is classified into triggers. A per-driver cooldown gates how
often the optimizer runs; alerts are produced for observed triggers whether
or not a re-optimization fired.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from delivery_routing.core.constants import (
    PRIORITY_URGENT,
    TRIGGER_CRITICAL,
    TRIGGER_HIGH,
    TRIGGER_MEDIUM,
)
from delivery_routing.core.route_optimizer import RouteOptimizerEngine
from delivery_routing.core.types import (
    Coordinates,
    DeliveryStop,
    DriverUpdate,
    OptimizationResult,
    Order,
    PersistentRoute,
    ReoptimizationOutcome,
    Trigger,
    VehicleConstraints,
)
from delivery_routing.services.route_store import order_from_snapshot
from delivery_routing.settings import (
    DEFAULT_MAX_STOPS,
    DEFAULT_VEHICLE_CAPACITY,
    LOCATION_CHANGE_THRESHOLD_KM,
    LOW_FUEL_THRESHOLD,
    REOPTIMIZATION_COOLDOWN_SECONDS,
    REOPTIMIZATION_MAX_HOURS,
)

logger = logging.getLogger(__name__)

TRIGGER_LOCATION = 'location_update'
TRIGGER_TIME_WINDOW = 'time_window_alert'
TRIGGER_VEHICLE = 'vehicle_status'
TRIGGER_NEW_DELIVERY = 'new_delivery'
TRIGGER_DELIVERY_COMPLETED = 'delivery_completed'

# Moves beyond this distance are reported to the driver.
LOCATION_ALERT_KM = 2.0


def realtime_service_time(order: Order) -> float:
    minutes = 10.0 + 2 * len(order.special_requirements)
    if order.priority == PRIORITY_URGENT:
        minutes += 5
    return minutes


@dataclass
class DriverState:
    driver_id: str
    deliveries: Dict[str, Order] = field(default_factory=dict)
    last_location: Optional[Coordinates] = None
    last_optimized_at: Optional[datetime] = None
    current_route: Optional[OptimizationResult] = None
    pending_triggers: List[Trigger] = field(default_factory=list)
    queued: List[DriverUpdate] = field(default_factory=list)
    optimizations: int = 0
    improvements: List[float] = field(default_factory=list)


class RealTimeReoptimizer:
    """
    Tracks drivers' remaining deliveries and re-optimizes them on demand.

    Args:
        optimizer: Engine used for re-optimization.
        location_threshold_km: Movement that counts as a location change.
        cooldown_seconds: Minimum time between two re-optimizations of a driver.
        low_fuel_threshold: Fuel fraction below which a vehicle alert is raised.
    """

    def __init__(
        self,
        optimizer: RouteOptimizerEngine,
        location_threshold_km: float = LOCATION_CHANGE_THRESHOLD_KM,
        cooldown_seconds: float = REOPTIMIZATION_COOLDOWN_SECONDS,
        low_fuel_threshold: float = LOW_FUEL_THRESHOLD,
        vehicle_capacity: float = DEFAULT_VEHICLE_CAPACITY,
        max_stops: int = DEFAULT_MAX_STOPS,
        max_hours: float = REOPTIMIZATION_MAX_HOURS,
    ):
        self.optimizer = optimizer
        self.location_threshold_km = location_threshold_km
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.low_fuel_threshold = low_fuel_threshold
        self.vehicle_capacity = vehicle_capacity
        self.max_stops = max_stops
        self.max_hours = max_hours
        self._drivers: Dict[str, DriverState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _state(self, driver_id: str) -> DriverState:
        with self._guard:
            state = self._drivers.get(driver_id)
            if state is None:
                state = DriverState(driver_id=driver_id)
                self._drivers[driver_id] = state
                self._locks[driver_id] = threading.Lock()
            return state

    def _lock(self, driver_id: str) -> threading.Lock:
        self._state(driver_id)
        with self._guard:
            return self._locks[driver_id]

    # --- registration ---------------------------------------------------

    def register_driver(self, driver_id: str, deliveries: Sequence[Order],
                        location: Optional[Coordinates] = None,
                        current_route: Optional[OptimizationResult] = None) -> None:
        """Start tracking a driver with the deliveries still to be made."""
        driver_id = str(driver_id)
        with self._lock(driver_id):
            state = self._state(driver_id)
            state.deliveries = {order.id: order for order in deliveries}
            if location is not None:
                state.last_location = location
            state.current_route = current_route
        logger.info(f"Tracking driver {driver_id} with {len(deliveries)} remaining deliveries")

    def register_route(self, route: PersistentRoute) -> None:
        """Track the pending stops of a persisted route."""
        orders = []
        for stop in route.pending_stops:
            order = order_from_snapshot(stop.order_data or {'id': stop.order_id, 'address': stop.address},
                                        stop.coordinates)
            orders.append(order)
        summary = OptimizationResult(
            route=list(range(len(orders))),
            total_distance=sum(s.estimated_distance for s in route.pending_stops),
            total_time=sum(s.estimated_time for s in route.pending_stops),
        )
        self.register_driver(route.driver_id, orders, current_route=summary)

    def is_tracking(self, driver_id: str) -> bool:
        with self._guard:
            return str(driver_id) in self._drivers

    def add_new_delivery(self, driver_id: str, order: Order) -> None:
        driver_id = str(driver_id)
        with self._lock(driver_id):
            state = self._state(driver_id)
            state.deliveries[order.id] = order
            state.pending_triggers.append(Trigger(
                type=TRIGGER_NEW_DELIVERY,
                priority=TRIGGER_HIGH,
                description=f"New delivery {order.id} assigned",
                data={'order_id': order.id},
            ))

    def mark_delivery_completed(self, driver_id: str, delivery_id: str) -> None:
        driver_id = str(driver_id)
        with self._lock(driver_id):
            state = self._state(driver_id)
            state.deliveries.pop(str(delivery_id), None)
            state.pending_triggers.append(Trigger(
                type=TRIGGER_DELIVERY_COMPLETED,
                priority=TRIGGER_MEDIUM,
                description=f"Delivery {delivery_id} completed",
                data={'delivery_id': str(delivery_id)},
            ))

    # --- trigger analysis -----------------------------------------------

    def _location_trigger(self, state: DriverState, update: DriverUpdate) -> Optional[Trigger]:
        if update.location is None or not update.location.is_valid() or state.last_location is None:
            return None
        moved = self.optimizer.estimator.distance(state.last_location, update.location)
        if moved <= self.location_threshold_km:
            return None
        return Trigger(
            type=TRIGGER_LOCATION,
            priority=TRIGGER_MEDIUM,
            description=f"Driver moved {moved:.2f}km",
            data={'distance': moved, 'previous_location': state.last_location.as_list()},
        )

    @staticmethod
    def _time_window_triggers(state: DriverState, now: datetime) -> List[Trigger]:
        triggers = []
        for order in state.deliveries.values():
            if order.time_window is None:
                continue
            hours = (order.time_window.end - now).total_seconds() / 3600
            if hours < 0.5:
                priority = TRIGGER_CRITICAL
            elif hours < 1:
                priority = TRIGGER_HIGH
            else:
                continue
            triggers.append(Trigger(
                type=TRIGGER_TIME_WINDOW,
                priority=priority,
                description=f"Delivery {order.id} window ends in {hours:.2f}h",
                data={'order_id': order.id, 'deadline': order.time_window.end.isoformat(), 'hours_remaining': hours},
            ))
        return triggers

    def _vehicle_triggers(self, update: DriverUpdate) -> List[Trigger]:
        triggers = []
        if update.fuel_level is not None and update.fuel_level < self.low_fuel_threshold:
            triggers.append(Trigger(
                type=TRIGGER_VEHICLE,
                priority=TRIGGER_HIGH,
                description="Low fuel level",
                data={'alert': "Low fuel level", 'fuel_level': update.fuel_level},
            ))
        for warning in update.engine_warnings:
            triggers.append(Trigger(
                type=TRIGGER_VEHICLE,
                priority=TRIGGER_HIGH,
                description=f"Engine warning: {warning}",
                data={'alert': f"Engine warning: {warning}"},
            ))
        return triggers

    def analyze_triggers(self, state: DriverState, update: DriverUpdate) -> List[Trigger]:
        """
        Triggers raised by one update, including those queued through
        add_new_delivery() and mark_delivery_completed().
        """
        triggers = list(state.pending_triggers)
        state.pending_triggers = []

        for delivery_id in update.completed_delivery_ids:
            state.deliveries.pop(str(delivery_id), None)
            triggers.append(Trigger(TRIGGER_DELIVERY_COMPLETED, TRIGGER_MEDIUM,
                                    f"Delivery {delivery_id} completed", {'delivery_id': str(delivery_id)}))
        for delivery_id in update.new_delivery_ids:
            triggers.append(Trigger(TRIGGER_NEW_DELIVERY, TRIGGER_HIGH,
                                    f"New delivery {delivery_id} assigned", {'order_id': str(delivery_id)}))

        location = self._location_trigger(state, update)
        if location is not None:
            triggers.append(location)
        triggers.extend(self._time_window_triggers(state, update.timestamp))
        triggers.extend(self._vehicle_triggers(update))
        return triggers

    def should_reoptimize(self, state: DriverState, triggers: Sequence[Trigger], now: datetime) -> bool:
        if state.last_optimized_at is not None and now - state.last_optimized_at < self.cooldown:
            return False
        priorities = [t.priority for t in triggers]
        if TRIGGER_CRITICAL in priorities or TRIGGER_HIGH in priorities:
            return True
        return priorities.count(TRIGGER_MEDIUM) >= 2

    @staticmethod
    def generate_alerts(triggers: Sequence[Trigger]) -> List[str]:
        alerts = []
        for trigger in triggers:
            if trigger.type == TRIGGER_TIME_WINDOW:
                order_id = trigger.data.get('order_id')
                if trigger.priority == TRIGGER_CRITICAL:
                    hours = trigger.data.get('hours_remaining', 0.0)
                    alerts.append(f"URGENT: Delivery {order_id} deadline in {hours:.1f} hours")
                else:
                    alerts.append(f"WARNING: Delivery {order_id} deadline approaching")
            elif trigger.type == TRIGGER_VEHICLE:
                alerts.append(trigger.data['alert'])
            elif trigger.type == TRIGGER_LOCATION:
                distance = trigger.data.get('distance', 0.0)
                if distance > LOCATION_ALERT_KM:
                    alerts.append(f"Route updated based on your new location ({distance:.1f}km from last position)")
                else:
                    alerts.append(f"Location updated ({distance:.1f}km from last position)")
            elif trigger.type == TRIGGER_DELIVERY_COMPLETED:
                alerts.append(f"Delivery {trigger.data.get('delivery_id')} completed")
            elif trigger.type == TRIGGER_NEW_DELIVERY:
                alerts.append(f"New delivery {trigger.data.get('order_id')} added to your route")
        return alerts

    # --- processing -----------------------------------------------------

    def _optimize_remaining(self, state: DriverState, update: DriverUpdate) -> Tuple[OptimizationResult, List[Order]]:
        orders = [o for o in state.deliveries.values()
                  if o.coordinates is not None and o.coordinates.is_valid()]
        skipped = len(state.deliveries) - len(orders)
        if skipped:
            logger.warning(f"Skipping {skipped} deliveries without coordinates for driver {state.driver_id}")
        if not orders:
            return OptimizationResult(algorithm='none'), []

        stops = [
            DeliveryStop(
                id=order.id,
                coordinates=order.coordinates,
                time_window=order.time_window,
                service_time=realtime_service_time(order),
                package_weight=order.package_weight or 1,
                priority=order.priority,
                special_requirements=list(order.special_requirements),
                order_id=order.id,
            )
            for order in orders
        ]
        constraints = VehicleConstraints(
            max_capacity=self.vehicle_capacity,
            current_load=update.current_load or 0.0,
            max_stops=self.max_stops,
            working_hours_start=update.timestamp,
            working_hours_end=update.timestamp + timedelta(hours=self.max_hours),
        )
        result = self.optimizer.optimize(state.last_location, stops, constraints, now=update.timestamp)
        return result, orders

    def _process(self, driver_id: str, updates: List[DriverUpdate]) -> ReoptimizationOutcome:
        state = self._state(driver_id)
        distinct: Dict[tuple, Trigger] = {}
        for update in updates:
            for trigger in self.analyze_triggers(state, update):
                key = (trigger.type, trigger.priority,
                       trigger.data.get('order_id') or trigger.data.get('delivery_id') or trigger.data.get('alert'))
                distinct[key] = trigger
            if update.location is not None and update.location.is_valid():
                state.last_location = update.location

        latest = updates[-1]
        triggers = list(distinct.values())
        alerts = self.generate_alerts(triggers)
        outcome = ReoptimizationOutcome(driver_id=driver_id, triggered=False, triggers=triggers, alerts=alerts)

        if not self.should_reoptimize(state, triggers, latest.timestamp):
            outcome.reason = 'No re-optimization needed' if triggers else 'No triggers'
            return outcome
        if state.last_location is None:
            outcome.reason = 'Driver location unknown'
            logger.warning(f"Cannot re-optimize driver {driver_id} without a location")
            return outcome

        previous = state.current_route
        result, orders = self._optimize_remaining(state, latest)
        if previous is not None:
            outcome.time_saved = previous.total_time - result.total_time
            outcome.distance_saved = previous.total_distance - result.total_distance
            outcome.deliveries_affected = len(result.route)

        state.last_optimized_at = latest.timestamp
        state.current_route = result
        state.optimizations += 1
        state.improvements.append(outcome.distance_saved)

        outcome.triggered = True
        outcome.result = result
        outcome.order_ids = [orders[i].id for i in result.route]
        outcome.reason = ', '.join(sorted({t.type for t in triggers}))
        logger.info(f"Re-optimized driver {driver_id} ({outcome.reason}): {len(result.route)} stops, "
                    f"{outcome.distance_saved:.2f}km saved")
        return outcome

    def process_update(self, update: DriverUpdate) -> ReoptimizationOutcome:
        """Handle one update immediately."""
        driver_id = str(update.driver_id)
        with self._lock(driver_id):
            return self._process(driver_id, [update])

    def enqueue(self, update: DriverUpdate) -> None:
        """Queue an update for the next drain() of its driver."""
        driver_id = str(update.driver_id)
        with self._lock(driver_id):
            self._state(driver_id).queued.append(update)

    def drain(self, driver_id: str) -> Optional[ReoptimizationOutcome]:
        """
        Process every queued update for a driver as one batch. The latest
        update decides location and vehicle state; triggers from the whole
        batch surface as alerts.
        """
        driver_id = str(driver_id)
        with self._lock(driver_id):
            state = self._state(driver_id)
            updates, state.queued = sorted(state.queued, key=lambda u: u.timestamp), []
            if not updates:
                return None
            return self._process(driver_id, updates)

    def optimization_stats(self, driver_id: str) -> dict:
        driver_id = str(driver_id)
        with self._guard:
            state = self._drivers.get(driver_id)
        if state is None:
            return {'last_optimization': None, 'total_optimizations': 0, 'average_improvement': 0.0}
        return {
            'last_optimization': state.last_optimized_at,
            'total_optimizations': state.optimizations,
            'average_improvement': float(np.mean(state.improvements)) if state.improvements else 0.0,
            'remaining_deliveries': len(state.deliveries),
        }

    def reset(self, driver_id: Optional[str] = None) -> None:
        """Forget one driver's state, or every driver's when no id is given."""
        with self._guard:
            if driver_id is None:
                self._drivers.clear()
                self._locks.clear()
            else:
                self._drivers.pop(str(driver_id), None)
                self._locks.pop(str(driver_id), None)
