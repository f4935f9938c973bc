import uuid

from django.db import models
from django.utils import timezone

from delivery_routing.core.constants import (
    HISTORY_CANCELLED,
    HISTORY_COMPLETED,
    HISTORY_CREATED,
    HISTORY_RECALCULATED,
    HISTORY_UPDATED,
    ROUTE_ACTIVE,
    ROUTE_CANCELLED,
    ROUTE_COMPLETED,
    STOP_CANCELLED,
    STOP_COMPLETED,
    STOP_FAILED,
    STOP_PENDING,
)


class DriverRoute(models.Model):
    STATUS_CHOICES = [
        (ROUTE_ACTIVE, 'Active'),
        (ROUTE_COMPLETED, 'Completed'),
        (ROUTE_CANCELLED, 'Cancelled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    driver_id = models.CharField(max_length=64, db_index=True)
    shift_date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=ROUTE_ACTIVE)

    total_distance = models.FloatField(default=0.0, help_text="Planned distance in km")
    total_time = models.FloatField(default=0.0, help_text="Planned time in minutes")
    completed_distance = models.FloatField(default=0.0)
    completed_time = models.FloatField(default=0.0)

    center_latitude = models.FloatField(null=True, blank=True)
    center_longitude = models.FloatField(null=True, blank=True)
    optimization_metrics = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Driver Route"
        verbose_name_plural = "Driver Routes"
        indexes = [
            models.Index(fields=['driver_id', 'shift_date']),
            models.Index(fields=['status']),
        ]

    def __str__(self):
        return f"Route {self.id} for {self.driver_id} on {self.shift_date} ({self.status})"


class RouteStop(models.Model):
    STATUS_CHOICES = [
        (STOP_PENDING, 'Pending'),
        (STOP_COMPLETED, 'Completed'),
        (STOP_FAILED, 'Failed'),
        (STOP_CANCELLED, 'Cancelled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    route = models.ForeignKey(DriverRoute, on_delete=models.CASCADE, related_name='stops')
    order_id = models.CharField(max_length=64)
    sequence = models.PositiveIntegerField()
    address = models.CharField(max_length=512, blank=True, default='')
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)

    estimated_time = models.FloatField(default=0.0, help_text="Travel plus service time in minutes")
    estimated_distance = models.FloatField(default=0.0, help_text="Leg distance in km")
    estimated_arrival = models.DateTimeField(null=True, blank=True)
    actual_time = models.FloatField(null=True, blank=True)
    actual_distance = models.FloatField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STOP_PENDING)
    completed_at = models.DateTimeField(null=True, blank=True)
    optimization_score = models.FloatField(default=0.0)
    notes = models.TextField(blank=True, default='')
    order_data = models.JSONField(default=dict, blank=True, help_text="Order snapshot used for re-optimization")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['sequence']
        constraints = [
            models.UniqueConstraint(fields=['route', 'order_id'], name='unique_route_order'),
        ]
        indexes = [
            models.Index(fields=['route', 'sequence']),
            models.Index(fields=['status']),
        ]

    def __str__(self):
        return f"Stop {self.sequence} ({self.order_id}, {self.status})"


class RouteHistory(models.Model):
    ACTION_CHOICES = [
        (HISTORY_CREATED, 'Created'),
        (HISTORY_UPDATED, 'Updated'),
        (HISTORY_COMPLETED, 'Completed'),
        (HISTORY_CANCELLED, 'Cancelled'),
        (HISTORY_RECALCULATED, 'Recalculated'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    route = models.ForeignKey(DriverRoute, on_delete=models.CASCADE, related_name='history')
    timestamp = models.DateTimeField(default=timezone.now)
    action = models.CharField(max_length=20, choices=ACTION_CHOICES)
    description = models.TextField()
    stop_count = models.PositiveIntegerField(default=0)
    total_distance = models.FloatField(default=0.0)
    total_time = models.FloatField(default=0.0)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ['timestamp']
        verbose_name_plural = "Route History"
        indexes = [
            models.Index(fields=['route', 'timestamp']),
        ]

    def __str__(self):
        return f"{self.action} @ {self.timestamp:%Y-%m-%d %H:%M} ({self.route_id})"
