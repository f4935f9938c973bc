"""
Durable storage for driver routes.

DjangoRouteStore maps PersistentRoute dataclasses onto the DriverRoute,
RouteStop and RouteHistory models. InMemoryRouteStore keeps the same
contract in a dictionary for tests and single-process deployments.
"""
import copy
import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterator, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, connection, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from delivery_routing.core.constants import ROUTE_ACTIVE
from delivery_routing.core.types import (
    Coordinates,
    Order,
    PersistentRoute,
    RouteHistoryEntry,
    RouteStopRecord,
    TimeWindow,
)
from delivery_routing.models import DriverRoute, RouteHistory, RouteStop

logger = logging.getLogger(__name__)


def order_to_snapshot(order: Order) -> Dict[str, Any]:
    """JSON-safe copy of the order fields needed to rebuild a delivery stop."""
    window = None
    if order.time_window is not None:
        window = {
            'start': order.time_window.start.isoformat(),
            'end': order.time_window.end.isoformat(),
            'priority': order.time_window.priority,
        }
    return {
        'id': order.id,
        'address': order.address,
        'priority': order.priority,
        'time_window': window,
        'package_weight': order.package_weight,
        'special_requirements': list(order.special_requirements),
        'notes': order.notes,
        'status': order.status,
        'customer_name': order.customer_name,
    }


def order_from_snapshot(data: Dict[str, Any], coordinates: Optional[Coordinates] = None) -> Order:
    data = dict(data)
    window = data.get('time_window')
    if isinstance(window, dict):
        data['time_window'] = TimeWindow(
            start=parse_datetime(window['start']) if isinstance(window['start'], str) else window['start'],
            end=parse_datetime(window['end']) if isinstance(window['end'], str) else window['end'],
            priority=window.get('priority', 'normal'),
        )
    order = Order.from_dict(data)
    if coordinates is not None:
        order.coordinates = coordinates
    return order


class RouteStore:
    """Interface for route persistence."""

    def schema_available(self) -> bool:
        raise NotImplementedError

    def create(self, route: PersistentRoute) -> PersistentRoute:
        raise NotImplementedError

    def get(self, route_id: str) -> Optional[PersistentRoute]:
        raise NotImplementedError

    def find_active(self, driver_id: str, shift_date: date) -> Optional[PersistentRoute]:
        raise NotImplementedError

    def locked(self, route_id: str):
        """Context manager yielding the route (or None) with writes serialized."""
        raise NotImplementedError

    def save(self, route: PersistentRoute) -> None:
        raise NotImplementedError

    def atomic(self):
        """Context manager grouping writes so they commit or roll back together."""
        raise NotImplementedError


class InMemoryRouteStore(RouteStore):
    """
    Dictionary-backed store.

    Args:
        schema_present: Report the store as provisioned. False simulates a
            deployment where the route tables do not exist yet.
    """

    def __init__(self, schema_present: bool = True):
        self.schema_present = schema_present
        self._routes: Dict[str, PersistentRoute] = {}
        self._lock = threading.RLock()
        self._journal = threading.local()

    def schema_available(self) -> bool:
        return self.schema_present

    def _remember(self, route_id: str) -> None:
        undo = getattr(self._journal, 'undo', None)
        if undo is not None and route_id not in undo:
            undo[route_id] = self._routes.get(route_id)

    def create(self, route: PersistentRoute) -> PersistentRoute:
        with self._lock:
            self._remember(route.id)
            self._routes[route.id] = copy.deepcopy(route)
        return route

    def get(self, route_id: str) -> Optional[PersistentRoute]:
        with self._lock:
            route = self._routes.get(str(route_id))
            return copy.deepcopy(route) if route is not None else None

    def find_active(self, driver_id: str, shift_date: date) -> Optional[PersistentRoute]:
        with self._lock:
            matches = [
                r for r in self._routes.values()
                if r.driver_id == driver_id and r.shift_date == shift_date and r.status == ROUTE_ACTIVE
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda r: r.created_at or timezone.now())
            return copy.deepcopy(latest)

    @contextmanager
    def locked(self, route_id: str) -> Iterator[Optional[PersistentRoute]]:
        with self._lock:
            yield self.get(route_id)

    def save(self, route: PersistentRoute) -> None:
        with self._lock:
            self._remember(route.id)
            route.updated_at = timezone.now()
            self._routes[route.id] = copy.deepcopy(route)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Routes written by this thread inside the block are restored if it raises."""
        self._journal.undo = {}
        try:
            yield
        except Exception:
            with self._lock:
                for route_id, previous in self._journal.undo.items():
                    if previous is None:
                        self._routes.pop(route_id, None)
                    else:
                        self._routes[route_id] = previous
            raise
        finally:
            self._journal.undo = None


class DjangoRouteStore(RouteStore):
    """
    ORM-backed store. Writes for one route run in a transaction holding a
    row lock on the DriverRoute.
    """

    def __init__(self, using: str = 'default'):
        self.using = using
        self._schema_confirmed = False

    def schema_available(self) -> bool:
        if self._schema_confirmed:
            return True
        try:
            tables = set(connection.introspection.table_names())
        except DatabaseError as e:
            logger.warning(f"Could not inspect route tables: {e}")
            return False
        required = {m._meta.db_table for m in (DriverRoute, RouteStop, RouteHistory)}
        missing = required - tables
        if missing:
            logger.warning(f"Route tables missing: {', '.join(sorted(missing))}")
            return False
        self._schema_confirmed = True
        return True

    # --- conversion -----------------------------------------------------

    @staticmethod
    def _stop_from_row(row) -> RouteStopRecord:
        coords = None
        if row.latitude is not None and row.longitude is not None:
            coords = Coordinates(row.latitude, row.longitude)
        return RouteStopRecord(
            id=str(row.id),
            order_id=row.order_id,
            sequence=row.sequence,
            coordinates=coords,
            address=row.address,
            status=row.status,
            estimated_distance=row.estimated_distance,
            estimated_time=row.estimated_time,
            estimated_arrival=row.estimated_arrival,
            actual_distance=row.actual_distance,
            actual_time=row.actual_time,
            completed_at=row.completed_at,
            optimization_score=row.optimization_score,
            notes=row.notes,
            order_data=row.order_data or {},
        )

    @staticmethod
    def _history_from_row(row) -> RouteHistoryEntry:
        return RouteHistoryEntry(
            id=str(row.id),
            action=row.action,
            description=row.description,
            timestamp=row.timestamp,
            stop_count=row.stop_count,
            total_distance=row.total_distance,
            total_time=row.total_time,
            metadata=row.metadata or {},
        )

    def _route_from_row(self, row) -> PersistentRoute:
        center = None
        if row.center_latitude is not None and row.center_longitude is not None:
            center = Coordinates(row.center_latitude, row.center_longitude)
        return PersistentRoute(
            id=str(row.id),
            driver_id=row.driver_id,
            shift_date=row.shift_date,
            status=row.status,
            stops=[self._stop_from_row(s) for s in row.stops.all().order_by('sequence')],
            history=[self._history_from_row(h) for h in row.history.all().order_by('timestamp')],
            total_distance=row.total_distance,
            total_time=row.total_time,
            completed_distance=row.completed_distance,
            completed_time=row.completed_time,
            center=center,
            optimization_metrics=row.optimization_metrics or {},
            persisted=True,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _stop_fields(stop: RouteStopRecord) -> Dict[str, Any]:
        return {
            'order_id': stop.order_id,
            'sequence': stop.sequence,
            'address': stop.address,
            'latitude': stop.coordinates.latitude if stop.coordinates else None,
            'longitude': stop.coordinates.longitude if stop.coordinates else None,
            'estimated_time': stop.estimated_time,
            'estimated_distance': stop.estimated_distance,
            'estimated_arrival': stop.estimated_arrival,
            'actual_time': stop.actual_time,
            'actual_distance': stop.actual_distance,
            'status': stop.status,
            'completed_at': stop.completed_at,
            'optimization_score': stop.optimization_score,
            'notes': stop.notes,
            'order_data': stop.order_data,
        }

    # --- operations -----------------------------------------------------

    def create(self, route: PersistentRoute) -> PersistentRoute:

        with transaction.atomic(using=self.using):
            row = DriverRoute.objects.using(self.using).create(
                id=route.id,
                driver_id=route.driver_id,
                shift_date=route.shift_date,
                status=route.status,
                center_latitude=route.center.latitude if route.center else None,
                center_longitude=route.center.longitude if route.center else None,
            )
            route.created_at = row.created_at
            self._write(row, route)
        logger.info(f"Persisted route {route.id} with {len(route.stops)} stops")
        return route

    def get(self, route_id: str) -> Optional[PersistentRoute]:
        try:
            row = DriverRoute.objects.using(self.using).get(pk=route_id)
        except (DriverRoute.DoesNotExist, DjangoValidationError, ValueError):
            return None
        return self._route_from_row(row)

    def find_active(self, driver_id: str, shift_date: date) -> Optional[PersistentRoute]:
        row = (
            DriverRoute.objects.using(self.using)
            .filter(driver_id=driver_id, shift_date=shift_date, status=ROUTE_ACTIVE)
            .order_by('-created_at')
            .first()
        )
        return self._route_from_row(row) if row is not None else None

    @contextmanager
    def locked(self, route_id: str) -> Iterator[Optional[PersistentRoute]]:
        with transaction.atomic(using=self.using):
            try:
                row = DriverRoute.objects.using(self.using).select_for_update().get(pk=route_id)
            except (DriverRoute.DoesNotExist, DjangoValidationError, ValueError):
                row = None
            yield self._route_from_row(row) if row is not None else None

    def save(self, route: PersistentRoute) -> None:
        with transaction.atomic(using=self.using):
            row = DriverRoute.objects.using(self.using).get(pk=route.id)
            self._write(row, route)

    def atomic(self):
        return transaction.atomic(using=self.using)

    def _write(self, row, route: PersistentRoute) -> None:

        row.status = route.status
        row.total_distance = route.total_distance
        row.total_time = route.total_time
        row.completed_distance = route.completed_distance
        row.completed_time = route.completed_time
        row.optimization_metrics = route.optimization_metrics
        row.save()
        route.updated_at = row.updated_at

        existing = {str(s.id): s for s in RouteStop.objects.using(self.using).filter(route=row)}
        keep = set()
        for stop in route.stops:
            fields = self._stop_fields(stop)
            keep.add(stop.id)
            stop_row = existing.get(stop.id)
            if stop_row is None:
                RouteStop.objects.using(self.using).create(id=stop.id, route=row, **fields)
                continue
            changed = [name for name, value in fields.items() if getattr(stop_row, name) != value]
            if changed:
                for name in changed:
                    setattr(stop_row, name, fields[name])
                stop_row.save(update_fields=changed + ['updated_at'])

        removed = [stop_id for stop_id in existing if stop_id not in keep]
        if removed:
            RouteStop.objects.using(self.using).filter(pk__in=removed).delete()

        stored_history = {
            str(pk) for pk in RouteHistory.objects.using(self.using).filter(route=row).values_list('id', flat=True)
        }
        for entry in route.history:
            if entry.id in stored_history:
                continue
            RouteHistory.objects.using(self.using).create(
                id=entry.id,
                route=row,
                timestamp=entry.timestamp,
                action=entry.action,
                description=entry.description,
                stop_count=entry.stop_count,
                total_distance=entry.total_distance,
                total_time=entry.total_time,
                metadata=entry.metadata,
            )
