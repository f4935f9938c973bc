import uuid
from datetime import timedelta
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase

from delivery_routing.core.constants import (
    HISTORY_COMPLETED,
    HISTORY_CREATED,
    ROUTE_ACTIVE,
    ROUTE_CANCELLED,
    STOP_COMPLETED,
)
from delivery_routing.core.exceptions import PersistenceUnavailable
from delivery_routing.core.types import Coordinates, Order, TimeWindow
from delivery_routing.models import DriverRoute, RouteHistory, RouteStop
from delivery_routing.services.route_state_service import RouteStateManager
from delivery_routing.services.route_store import DjangoRouteStore, order_from_snapshot, order_to_snapshot
from delivery_routing.tests.services.helpers import NOW, TickingClock, make_geocoder, make_optimizer, make_orders


class OrderSnapshotTest(TestCase):
    def test_snapshot_round_trip_keeps_time_window(self):
        order = Order(
            id='o1', address='1 King St W', priority='urgent', package_weight=2.5,
            time_window=TimeWindow(start=NOW, end=NOW + timedelta(hours=2)),
            special_requirements=['fragile'], notes='side door',
        )
        snapshot = order_to_snapshot(order)
        self.assertEqual(snapshot['time_window']['end'], (NOW + timedelta(hours=2)).isoformat())

        restored = order_from_snapshot(snapshot, Coordinates(43.66, -79.38))
        self.assertEqual(restored.time_window.end, NOW + timedelta(hours=2))
        self.assertEqual(restored.special_requirements, ['fragile'])
        self.assertEqual(restored.coordinates, Coordinates(43.66, -79.38))


class DjangoRouteStoreTest(TestCase):
    def setUp(self):
        self.optimizer = make_optimizer()
        self.store = DjangoRouteStore()
        self.manager = RouteStateManager(self.optimizer, make_geocoder(), self.store, clock=TickingClock())

    def tearDown(self):
        self.optimizer.shutdown()

    def test_schema_available(self):
        self.assertTrue(self.store.schema_available())

    def test_create_writes_route_stops_and_history(self):
        route = self.manager.create_route('driver-7', make_orders(), now=NOW)

        row = DriverRoute.objects.get(pk=route.id)
        self.assertEqual(row.driver_id, 'driver-7')
        self.assertEqual(row.stops.count(), 3)
        self.assertEqual(RouteHistory.objects.filter(route=row, action=HISTORY_CREATED).count(), 1)
        self.assertAlmostEqual(row.total_distance, route.total_distance)

        loaded = self.store.get(route.id)
        self.assertEqual([s.sequence for s in loaded.stops], [1, 2, 3])
        self.assertEqual([s.id for s in loaded.stops], [s.id for s in route.stops])
        self.assertEqual(loaded.center, route.center)
        self.assertTrue(loaded.persisted)

    def test_mutations_are_persisted(self):
        route = self.manager.create_route('driver-7', make_orders(), now=NOW)
        stop_id = route.stops[0].id
        self.manager.complete_delivery(route.id, stop_id, actual_time=9.0, actual_distance=1.5)

        stop_row = RouteStop.objects.get(pk=stop_id)
        self.assertEqual(stop_row.status, STOP_COMPLETED)
        self.assertEqual(stop_row.actual_distance, 1.5)

        loaded = self.store.get(route.id)
        self.assertEqual([h.action for h in loaded.history], [HISTORY_CREATED, HISTORY_COMPLETED])
        self.assertEqual(loaded.completed_distance, 1.5)

    def test_added_delivery_gets_a_new_row(self):
        route = self.manager.create_route('driver-7', make_orders(), now=NOW)
        self.manager.add_delivery(route.id, Order(id='o4', coordinates=Coordinates(43.68, -79.41)))
        self.assertEqual(RouteStop.objects.filter(route_id=route.id).count(), 4)
        self.assertEqual(
            sorted(RouteStop.objects.filter(route_id=route.id).values_list('sequence', flat=True)), [1, 2, 3, 4],
        )

    def test_find_active_returns_replacement(self):
        first = self.manager.create_route('driver-7', make_orders(), now=NOW)
        second = self.manager.create_route('driver-7', make_orders(), now=NOW)
        self.assertEqual(DriverRoute.objects.get(pk=first.id).status, ROUTE_CANCELLED)
        self.assertEqual(self.store.find_active('driver-7', NOW.date()).id, second.id)
        self.assertIsNone(self.store.find_active('driver-8', NOW.date()))

    def test_failed_supersede_rolls_back_replacement(self):
        first = self.manager.create_route('driver-7', make_orders(), now=NOW)
        with patch.object(self.store, 'save', side_effect=DatabaseError("connection lost")):
            with self.assertRaises(PersistenceUnavailable):
                self.manager.create_route('driver-7', make_orders(), now=NOW)

        self.assertEqual(DriverRoute.objects.filter(driver_id='driver-7').count(), 1)
        self.assertEqual(DriverRoute.objects.get(pk=first.id).status, ROUTE_ACTIVE)
        self.assertEqual(self.store.find_active('driver-7', NOW.date()).id, first.id)

    def test_unknown_or_malformed_ids(self):
        self.assertIsNone(self.store.get(str(uuid.uuid4())))
        self.assertIsNone(self.store.get('not-a-uuid'))
        with self.store.locked(str(uuid.uuid4())) as route:
            self.assertIsNone(route)
