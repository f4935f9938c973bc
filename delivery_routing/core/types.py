"""
Core data types for delivery routing.
"""
import logging
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, date
from typing import Dict, List, Tuple, Optional, Any

from delivery_routing.core.constants import (
    DEFAULT_DELIVERY_PRIORITY,
    DEFAULT_SERVICE_TIME_MINUTES,
    PRIORITIES,
    ROUTE_ACTIVE,
    STOP_PENDING,
    TRIGGER_CRITICAL,
    TRIGGER_HIGH,
    TRIGGER_LOW,
    TRIGGER_MEDIUM,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coordinates:
    """
    A geographic point in decimal degrees.
    """
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        try:
            lat = float(self.latitude)
            lon = float(self.longitude)
        except (TypeError, ValueError):
            return False
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return False
        return abs(lat) <= 90 and abs(lon) <= 180

    def as_tuple(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)

    def as_list(self) -> List[float]:
        return [self.latitude, self.longitude]

    @staticmethod
    def from_value(value: Any) -> Optional['Coordinates']:
        """
        Build Coordinates from a Coordinates, a [lat, lon] pair or a mapping
        with latitude/longitude (or lat/lng) keys. Returns None when the
        value cannot be interpreted.
        """
        if value is None:
            return None
        if isinstance(value, Coordinates):
            return value
        try:
            if isinstance(value, dict):
                lat = value.get('latitude', value.get('lat'))
                lon = value.get('longitude', value.get('lng', value.get('lon')))
                if lat is None or lon is None:
                    return None
                return Coordinates(float(lat), float(lon))
            if isinstance(value, (list, tuple)) and len(value) == 2:
                return Coordinates(float(value[0]), float(value[1]))
        except (TypeError, ValueError):
            logger.debug(f"Could not interpret coordinates from {value!r}")
        return None


@dataclass
class TimeWindow:
    start: datetime
    end: datetime
    priority: str = DEFAULT_DELIVERY_PRIORITY


@dataclass
class DeliveryStop:
    """
    A single stop handed to the optimizer. Built per optimization call from
    order data and never persisted on its own.
    """
    id: str
    coordinates: Coordinates
    time_window: Optional[TimeWindow] = None
    service_time: float = DEFAULT_SERVICE_TIME_MINUTES
    package_weight: Optional[float] = None
    priority: str = DEFAULT_DELIVERY_PRIORITY
    special_requirements: List[str] = field(default_factory=list)
    order_id: Optional[str] = None

    def __post_init__(self):
        if self.priority not in PRIORITIES:
            logger.warning(f"Unknown priority '{self.priority}' for stop {self.id}; using normal")
            self.priority = DEFAULT_DELIVERY_PRIORITY
        coords = Coordinates.from_value(self.coordinates)
        # Keep the raw value when it cannot be parsed so the optimizer can drop it with a warning
        if coords is not None:
            self.coordinates = coords


@dataclass(frozen=True)
class VehicleConstraints:
    """
    Per-call vehicle limits. working_hours_* bound the shift; None means
    unbounded on that side.
    """
    max_capacity: float
    current_load: float = 0.0
    max_stops: int = 20
    working_hours_start: Optional[datetime] = None
    working_hours_end: Optional[datetime] = None


@dataclass
class OptimizationResult:
    """Data Transfer Object representing the result of route optimization.

    route holds indices into the stop list that was passed to the optimizer.
    The per-stop lists (arrival times, traffic factors, leg metrics) are
    aligned with route.
    """
    route: List[int] = field(default_factory=list)
    total_distance: float = 0.0
    total_time: float = 0.0
    algorithm: str = ''
    iterations: int = 0
    estimated_arrival_times: List[datetime] = field(default_factory=list)
    traffic_adjustments: List[float] = field(default_factory=list)
    leg_distances: List[float] = field(default_factory=list)
    leg_times: List[float] = field(default_factory=list)
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    computation_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['estimated_arrival_times'] = [t.isoformat() for t in self.estimated_arrival_times]
        return data


@dataclass
class Order:
    """
    Read-only view of an order supplied by the order source.
    """
    id: str
    address: str = ''
    priority: str = DEFAULT_DELIVERY_PRIORITY
    time_window: Optional[TimeWindow] = None
    package_weight: Optional[float] = None
    special_requirements: List[str] = field(default_factory=list)
    notes: str = ''
    status: str = 'assigned'
    coordinates: Optional[Coordinates] = None
    customer_name: str = ''

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> 'Order':
        window = data.get('time_window')
        if isinstance(window, dict):
            window = TimeWindow(
                start=window['start'],
                end=window['end'],
                priority=window.get('priority', DEFAULT_DELIVERY_PRIORITY),
            )
        return Order(
            id=str(data['id']),
            address=data.get('address') or data.get('delivery_address') or '',
            priority=data.get('priority') or DEFAULT_DELIVERY_PRIORITY,
            time_window=window,
            package_weight=data.get('package_weight'),
            special_requirements=list(data.get('special_requirements') or []),
            notes=data.get('notes') or '',
            status=data.get('status', 'assigned'),
            coordinates=Coordinates.from_value(data.get('coordinates')),
            customer_name=data.get('customer_name', ''),
        )


@dataclass
class RouteStopRecord:
    id: str
    order_id: str
    sequence: int
    coordinates: Optional[Coordinates] = None
    address: str = ''
    status: str = STOP_PENDING
    estimated_distance: float = 0.0
    estimated_time: float = 0.0
    estimated_arrival: Optional[datetime] = None
    actual_distance: Optional[float] = None
    actual_time: Optional[float] = None
    completed_at: Optional[datetime] = None
    optimization_score: float = 0.0
    notes: str = ''
    order_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RouteHistoryEntry:
    id: str
    action: str
    description: str
    timestamp: datetime
    stop_count: int = 0
    total_distance: float = 0.0
    total_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PersistentRoute:
    """
    A driver's route for one shift together with its stops and history.
    persisted is False for routes that only exist in memory because the
    durable store is not provisioned.
    """
    id: str
    driver_id: str
    shift_date: date
    status: str = ROUTE_ACTIVE
    stops: List[RouteStopRecord] = field(default_factory=list)
    history: List[RouteHistoryEntry] = field(default_factory=list)
    total_distance: float = 0.0
    total_time: float = 0.0
    completed_distance: float = 0.0
    completed_time: float = 0.0
    center: Optional[Coordinates] = None
    optimization_metrics: Dict[str, Any] = field(default_factory=dict)
    persisted: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ROUTE_ACTIVE

    def get_stop(self, stop_id: str) -> Optional[RouteStopRecord]:
        for stop in self.stops:
            if stop.id == stop_id:
                return stop
        return None

    @property
    def pending_stops(self) -> List[RouteStopRecord]:
        return [s for s in self.stops if s.status == STOP_PENDING]


TRIGGER_PRIORITY_ORDER = {
    TRIGGER_LOW: 0,
    TRIGGER_MEDIUM: 1,
    TRIGGER_HIGH: 2,
    TRIGGER_CRITICAL: 3,
}


@dataclass
class Trigger:
    type: str
    priority: str
    description: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DriverUpdate:
    """
    A driver/vehicle status fix from the live location feed.
    """
    driver_id: str
    timestamp: datetime
    location: Optional[Coordinates] = None
    status: str = 'active'
    current_load: Optional[float] = None
    fuel_level: Optional[float] = None
    engine_warnings: List[str] = field(default_factory=list)
    completed_delivery_ids: List[str] = field(default_factory=list)
    new_delivery_ids: List[str] = field(default_factory=list)


@dataclass
class ReoptimizationOutcome:
    driver_id: str
    triggered: bool
    triggers: List[Trigger] = field(default_factory=list)
    alerts: List[str] = field(default_factory=list)
    result: Optional[OptimizationResult] = None
    time_saved: float = 0.0
    distance_saved: float = 0.0
    deliveries_affected: int = 0
    reason: str = ''
    order_ids: List[str] = field(default_factory=list)
