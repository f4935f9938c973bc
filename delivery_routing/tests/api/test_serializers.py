from datetime import datetime, timezone

from django.test import TestCase

from delivery_routing.api.serializers import (
    CoordinatesField,
    DriverUpdateSerializer,
    OptimizationResultSerializer,
    OrderSerializer,
    TimeWindowSerializer,
    build_order,
)
from delivery_routing.core.types import Coordinates, DriverUpdate, OptimizationResult


class CoordinatesFieldTest(TestCase):
    def test_accepts_pairs_and_objects(self):
        field = CoordinatesField()
        self.assertEqual(field.to_internal_value([43.65, -79.38]), Coordinates(43.65, -79.38))
        self.assertEqual(field.to_internal_value({'lat': 43.65, 'lng': -79.38}), Coordinates(43.65, -79.38))
        self.assertEqual(field.to_representation(Coordinates(43.65, -79.38)), [43.65, -79.38])

    def test_rejects_bad_values(self):
        for value in ('north', [1.0], [91.0, 0.0]):
            serializer = OrderSerializer(data={'id': 'o1', 'coordinates': value})
            self.assertFalse(serializer.is_valid(), value)
            self.assertIn('coordinates', serializer.errors)


class OrderSerializerTest(TestCase):
    def test_requires_address_or_coordinates(self):
        serializer = OrderSerializer(data={'id': 'o1', 'address': '   '})
        self.assertFalse(serializer.is_valid())

    def test_builds_order(self):
        serializer = OrderSerializer(data={
            'id': 'o1',
            'address': '1 King St W',
            'priority': 'urgent',
            'time_window': {'start': '2024-05-06T12:00:00Z', 'end': '2024-05-06T14:00:00Z'},
            'special_requirements': ['fragile'],
        })
        self.assertTrue(serializer.is_valid(), serializer.errors)
        order = build_order(serializer.validated_data)
        self.assertEqual(order.priority, 'urgent')
        self.assertEqual(order.time_window.end, datetime(2024, 5, 6, 14, 0, tzinfo=timezone.utc))
        self.assertEqual(order.special_requirements, ['fragile'])
        self.assertIsNone(order.coordinates)

    def test_unknown_priority(self):
        serializer = OrderSerializer(data={'id': 'o1', 'address': 'x', 'priority': 'whenever'})
        self.assertFalse(serializer.is_valid())
        self.assertIn('priority', serializer.errors)


class TimeWindowSerializerTest(TestCase):
    def test_end_must_follow_start(self):
        serializer = TimeWindowSerializer(data={'start': '2024-05-06T14:00:00Z', 'end': '2024-05-06T12:00:00Z'})
        self.assertFalse(serializer.is_valid())


class DriverUpdateSerializerTest(TestCase):
    def test_save_builds_update_with_default_timestamp(self):
        serializer = DriverUpdateSerializer(data={'driver_id': 'd1', 'location': [43.65, -79.38]})
        self.assertTrue(serializer.is_valid(), serializer.errors)
        update = serializer.save()
        self.assertIsInstance(update, DriverUpdate)
        self.assertIsNotNone(update.timestamp)
        self.assertEqual(update.engine_warnings, [])

    def test_keeps_given_timestamp(self):
        serializer = DriverUpdateSerializer(data={'driver_id': 'd1', 'timestamp': '2024-05-06T12:00:00Z'})
        self.assertTrue(serializer.is_valid(), serializer.errors)
        self.assertEqual(serializer.save().timestamp, datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc))


class OptimizationResultSerializerTest(TestCase):
    def test_serializes_result(self):
        result = OptimizationResult(
            route=[1, 0], total_distance=3.5, algorithm='hybrid',
            estimated_arrival_times=[datetime(2024, 5, 6, 12, 10, tzinfo=timezone.utc)],
            warnings=['Traffic data unavailable, using default estimates'],
        )
        data = OptimizationResultSerializer(result).data
        self.assertEqual(data['route'], [1, 0])
        self.assertEqual(data['algorithm'], 'hybrid')
        self.assertEqual(data['estimated_arrival_times'], ['2024-05-06T12:10:00Z'])
