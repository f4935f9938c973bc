"""
URL configuration for the delivery routing API.
"""
from django.urls import path

from delivery_routing.api.views import (
    AddDeliveryView,
    CancelDeliveryView,
    CompleteDeliveryView,
    CurrentRouteView,
    DriverUpdateView,
    EndShiftView,
    OptimizeRouteView,
    RecalculateRouteView,
    RouteCreateView,
    health_check,
)

app_name = 'delivery_routing'

urlpatterns = [
    path('health/', health_check, name='health_check_get'),

    path('optimize/', OptimizeRouteView.as_view(), name='optimize_route_create'),

    path('routes/', RouteCreateView.as_view(), name='route_create'),
    path('routes/current/<str:driver_id>/', CurrentRouteView.as_view(), name='route_current_read'),
    path('routes/<str:route_id>/stops/<str:stop_id>/complete/', CompleteDeliveryView.as_view(),
         name='route_stop_complete'),
    path('routes/<str:route_id>/stops/<str:stop_id>/cancel/', CancelDeliveryView.as_view(),
         name='route_stop_cancel'),
    path('routes/<str:route_id>/deliveries/', AddDeliveryView.as_view(), name='route_delivery_add'),
    path('routes/<str:route_id>/recalculate/', RecalculateRouteView.as_view(), name='route_recalculate'),
    path('routes/<str:route_id>/end-shift/', EndShiftView.as_view(), name='route_end_shift'),

    path('drivers/updates/', DriverUpdateView.as_view(), name='driver_update_create'),
]
