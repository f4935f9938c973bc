"""
Serializers for the delivery routing API.

Request serializers validate input and build the core dataclasses; response
serializers read those dataclasses directly.
"""
import logging

from django.utils import timezone
from rest_framework import serializers

from delivery_routing.core.constants import DEFAULT_DELIVERY_PRIORITY, DEFAULT_SERVICE_TIME_MINUTES, PRIORITIES
from delivery_routing.core.types import (
    Coordinates,
    DeliveryStop,
    DriverUpdate,
    Order,
    TimeWindow,
)
from delivery_routing.settings import DEFAULT_MAX_STOPS

logger = logging.getLogger(__name__)


class CoordinatesField(serializers.Field):
    """[latitude, longitude] pair; objects with latitude/longitude keys are accepted on input."""

    default_error_messages = {
        'invalid': 'Expected [latitude, longitude] or an object with latitude and longitude.',
        'out_of_range': 'Coordinates are out of range.',
    }

    def to_internal_value(self, data):
        coords = Coordinates.from_value(data)
        if coords is None:
            self.fail('invalid')
        if not coords.is_valid():
            self.fail('out_of_range')
        return coords

    def to_representation(self, value):
        if value is None:
            return None
        return value.as_list()


class TimeWindowSerializer(serializers.Serializer):
    start = serializers.DateTimeField(help_text="Earliest delivery time.")
    end = serializers.DateTimeField(help_text="Latest delivery time.")
    priority = serializers.ChoiceField(choices=PRIORITIES, default=DEFAULT_DELIVERY_PRIORITY)

    def validate(self, attrs):
        if attrs['end'] <= attrs['start']:
            raise serializers.ValidationError("Time window end must be after its start.")
        return attrs


def _time_window(data):
    return TimeWindow(**data) if data else None


class OrderSerializer(serializers.Serializer):
    """An order to deliver. Either address or coordinates must be given."""
    id = serializers.CharField(max_length=100, help_text="Order identifier.")
    address = serializers.CharField(max_length=500, required=False, allow_blank=True, default='')
    priority = serializers.ChoiceField(choices=PRIORITIES, default=DEFAULT_DELIVERY_PRIORITY)
    time_window = TimeWindowSerializer(required=False, allow_null=True)
    package_weight = serializers.FloatField(required=False, allow_null=True, min_value=0)
    special_requirements = serializers.ListField(child=serializers.CharField(max_length=100), default=list)
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    status = serializers.CharField(max_length=50, default='assigned')
    coordinates = CoordinatesField(required=False, allow_null=True,
                                   help_text="Pre-resolved [latitude, longitude]; skips geocoding.")
    customer_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')

    class Meta:
        ref_name = 'DeliveryOrder'

    def validate(self, attrs):
        if not attrs.get('address', '').strip() and attrs.get('coordinates') is None:
            raise serializers.ValidationError("Either address or coordinates is required.")
        return attrs


def build_order(data) -> Order:
    return Order(
        id=data['id'],
        address=data.get('address', ''),
        priority=data.get('priority', DEFAULT_DELIVERY_PRIORITY),
        time_window=_time_window(data.get('time_window')),
        package_weight=data.get('package_weight'),
        special_requirements=list(data.get('special_requirements', [])),
        notes=data.get('notes', ''),
        status=data.get('status', 'assigned'),
        coordinates=data.get('coordinates'),
        customer_name=data.get('customer_name', ''),
    )


class DeliveryStopSerializer(serializers.Serializer):
    id = serializers.CharField(max_length=100)
    coordinates = CoordinatesField()
    time_window = TimeWindowSerializer(required=False, allow_null=True)
    service_time = serializers.FloatField(default=DEFAULT_SERVICE_TIME_MINUTES, min_value=0)
    package_weight = serializers.FloatField(required=False, allow_null=True, min_value=0)
    priority = serializers.ChoiceField(choices=PRIORITIES, default=DEFAULT_DELIVERY_PRIORITY)
    special_requirements = serializers.ListField(child=serializers.CharField(max_length=100), default=list)
    order_id = serializers.CharField(max_length=100, required=False, allow_null=True)


def build_stop(data) -> DeliveryStop:
    return DeliveryStop(
        id=data['id'],
        coordinates=data['coordinates'],
        time_window=_time_window(data.get('time_window')),
        service_time=data.get('service_time', DEFAULT_SERVICE_TIME_MINUTES),
        package_weight=data.get('package_weight'),
        priority=data.get('priority', DEFAULT_DELIVERY_PRIORITY),
        special_requirements=list(data.get('special_requirements', [])),
        order_id=data.get('order_id'),
    )


class VehicleConstraintsSerializer(serializers.Serializer):
    max_capacity = serializers.FloatField(help_text="Vehicle capacity in package weight units.")
    current_load = serializers.FloatField(default=0.0)
    max_stops = serializers.IntegerField(default=DEFAULT_MAX_STOPS, min_value=1)
    working_hours_start = serializers.DateTimeField(required=False, allow_null=True)
    working_hours_end = serializers.DateTimeField(required=False, allow_null=True)


class OptimizeRequestSerializer(serializers.Serializer):
    start = CoordinatesField(help_text="Driver location the route starts from.")
    stops = DeliveryStopSerializer(many=True)
    constraints = VehicleConstraintsSerializer()
    now = serializers.DateTimeField(required=False, allow_null=True,
                                    help_text="Reference time for time windows; defaults to now.")


class OptimizationResultSerializer(serializers.Serializer):
    route = serializers.ListField(child=serializers.IntegerField(),
                                  help_text="Indices into the submitted stops, in visiting order.")
    total_distance = serializers.FloatField()
    total_time = serializers.FloatField()
    algorithm = serializers.CharField()
    iterations = serializers.IntegerField()
    estimated_arrival_times = serializers.ListField(child=serializers.DateTimeField())
    traffic_adjustments = serializers.ListField(child=serializers.FloatField())
    leg_distances = serializers.ListField(child=serializers.FloatField())
    leg_times = serializers.ListField(child=serializers.FloatField())
    is_valid = serializers.BooleanField()
    errors = serializers.ListField(child=serializers.CharField())
    warnings = serializers.ListField(child=serializers.CharField())
    computation_time_ms = serializers.FloatField()


class CreateRouteRequestSerializer(serializers.Serializer):
    driver_id = serializers.CharField(max_length=100)
    orders = OrderSerializer(many=True, allow_empty=False)
    driver_location = CoordinatesField(required=False, allow_null=True)


class RouteStopSerializer(serializers.Serializer):
    id = serializers.CharField()
    order_id = serializers.CharField()
    sequence = serializers.IntegerField()
    coordinates = CoordinatesField(allow_null=True)
    address = serializers.CharField(allow_blank=True)
    status = serializers.CharField()
    estimated_distance = serializers.FloatField()
    estimated_time = serializers.FloatField()
    estimated_arrival = serializers.DateTimeField(allow_null=True)
    actual_distance = serializers.FloatField(allow_null=True)
    actual_time = serializers.FloatField(allow_null=True)
    completed_at = serializers.DateTimeField(allow_null=True)
    optimization_score = serializers.FloatField()
    notes = serializers.CharField(allow_blank=True)
    order_data = serializers.DictField()


class RouteHistorySerializer(serializers.Serializer):
    id = serializers.CharField()
    action = serializers.CharField()
    description = serializers.CharField()
    timestamp = serializers.DateTimeField()
    stop_count = serializers.IntegerField()
    total_distance = serializers.FloatField()
    total_time = serializers.FloatField()
    metadata = serializers.DictField()


class PersistentRouteSerializer(serializers.Serializer):
    id = serializers.CharField()
    driver_id = serializers.CharField()
    shift_date = serializers.DateField()
    status = serializers.CharField()
    stops = RouteStopSerializer(many=True)
    history = RouteHistorySerializer(many=True)
    total_distance = serializers.FloatField()
    total_time = serializers.FloatField()
    completed_distance = serializers.FloatField()
    completed_time = serializers.FloatField()
    center = CoordinatesField(allow_null=True)
    optimization_metrics = serializers.DictField()
    persisted = serializers.BooleanField()


class CompleteDeliverySerializer(serializers.Serializer):
    actual_time = serializers.FloatField(required=False, allow_null=True, min_value=0,
                                         help_text="Minutes actually spent on the stop.")
    actual_distance = serializers.FloatField(required=False, allow_null=True, min_value=0,
                                             help_text="Kilometres actually driven to the stop.")


class CancelDeliverySerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class AddDeliverySerializer(serializers.Serializer):
    order = OrderSerializer()


class RecalculateRouteSerializer(serializers.Serializer):
    pending_orders = OrderSerializer(many=True, required=False, default=list)


class DriverUpdateSerializer(serializers.Serializer):
    driver_id = serializers.CharField(max_length=100)
    timestamp = serializers.DateTimeField(required=False, allow_null=True)
    location = CoordinatesField(required=False, allow_null=True)
    status = serializers.CharField(max_length=50, default='active')
    current_load = serializers.FloatField(required=False, allow_null=True, min_value=0)
    fuel_level = serializers.FloatField(required=False, allow_null=True, min_value=0, max_value=1)
    engine_warnings = serializers.ListField(child=serializers.CharField(max_length=255), default=list)
    completed_delivery_ids = serializers.ListField(child=serializers.CharField(max_length=100), default=list)
    new_delivery_ids = serializers.ListField(child=serializers.CharField(max_length=100), default=list)

    def create(self, validated_data):
        data = dict(validated_data)
        data['timestamp'] = data.get('timestamp') or timezone.now()
        return DriverUpdate(**data)


class TriggerSerializer(serializers.Serializer):
    type = serializers.CharField()
    priority = serializers.CharField()
    description = serializers.CharField()
    data = serializers.DictField()


class ReoptimizationOutcomeSerializer(serializers.Serializer):
    driver_id = serializers.CharField()
    triggered = serializers.BooleanField()
    triggers = TriggerSerializer(many=True)
    alerts = serializers.ListField(child=serializers.CharField())
    result = OptimizationResultSerializer(allow_null=True)
    time_saved = serializers.FloatField()
    distance_saved = serializers.FloatField()
    deliveries_affected = serializers.IntegerField()
    reason = serializers.CharField(allow_blank=True)
    order_ids = serializers.ListField(child=serializers.CharField())
