from django.contrib import admin

from .models import DriverRoute, RouteHistory, RouteStop


class RouteStopInline(admin.TabularInline):
    model = RouteStop
    extra = 0
    fields = ('sequence', 'order_id', 'status', 'estimated_distance', 'estimated_time', 'completed_at')
    ordering = ('sequence',)


@admin.register(DriverRoute)
class DriverRouteAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'driver_id',
        'shift_date',
        'status',
        'total_distance',
        'completed_distance',
        'created_at'
    )
    list_filter = ('status', 'shift_date')
    search_fields = ('driver_id',)
    ordering = ('-created_at',)
    inlines = [RouteStopInline]


@admin.register(RouteHistory)
class RouteHistoryAdmin(admin.ModelAdmin):
    list_display = ('route', 'action', 'timestamp', 'stop_count', 'total_distance')
    list_filter = ('action',)
    ordering = ('-timestamp',)
