"""
Project-level URLs: the routing API plus its generated OpenAPI documentation.
"""
from django.urls import include, path
from drf_yasg import openapi
from drf_yasg.views import get_schema_view
from rest_framework import permissions

from delivery_routing import __version__

schema_view = get_schema_view(
    openapi.Info(
        title="Delivery Routing API",
        default_version=f"v{__version__}",
        description="Route optimization and route lifecycle for delivery drivers.",
    ),
    public=True,
    permission_classes=[permissions.AllowAny],
)

urlpatterns = [
    path('api/', include('delivery_routing.api.urls')),
    path('swagger/', schema_view.with_ui('swagger', cache_timeout=0), name='schema-swagger-ui'),
]
