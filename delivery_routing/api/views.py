"""
API views for the delivery route engine.

Routing errors map onto HTTP statuses: invalid input is 400, unknown routes
or stops 404, illegal state transitions 409 and an unavailable route store
503. Anything else is logged and answered with 500.
"""
import logging

from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response
from rest_framework.views import APIView

from delivery_routing.api.serializers import (
    AddDeliverySerializer,
    CancelDeliverySerializer,
    CompleteDeliverySerializer,
    CreateRouteRequestSerializer,
    DriverUpdateSerializer,
    OptimizationResultSerializer,
    OptimizeRequestSerializer,
    PersistentRouteSerializer,
    RecalculateRouteSerializer,
    ReoptimizationOutcomeSerializer,
    build_order,
    build_stop,
)
from delivery_routing.core.exceptions import (
    PersistenceUnavailable,
    RouteNotFound,
    RouteStateError,
    RoutingError,
    ValidationError,
)
from delivery_routing.core.types import VehicleConstraints
from delivery_routing.services.container import get_services

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (RouteNotFound, status.HTTP_404_NOT_FOUND),
    (RouteStateError, status.HTTP_409_CONFLICT),
    (PersistenceUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)

STORE_UNAVAILABLE = {"error": "Route storage is not available; the route could not be loaded."}


def routing_error_response(error: RoutingError) -> Response:
    for error_type, http_status in ERROR_STATUS:
        if isinstance(error, error_type):
            return Response({"error": str(error)}, status=http_status)
    logger.error(f"Unmapped routing error: {error}")
    return Response({"error": str(error)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)


def unexpected_error_response(action: str) -> Response:
    return Response(
        {"error": f"An unexpected error occurred while trying to {action}. Please try again later."},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def route_response(route, http_status=status.HTTP_200_OK) -> Response:
    if route is None:
        return Response(STORE_UNAVAILABLE, status=status.HTTP_503_SERVICE_UNAVAILABLE)
    return Response(PersistentRouteSerializer(route).data, status=http_status)


class OptimizeRouteView(APIView):
    """
    Stateless optimization of a stop list for one vehicle.
    """

    @swagger_auto_schema(
        request_body=OptimizeRequestSerializer,
        responses={
            200: OptimizationResultSerializer,
            400: "Bad Request - Invalid input data",
            500: "Internal Server Error - Optimization failed",
        },
        operation_id="optimize_route_create",
        operation_description="""Orders the given stops starting from the driver location. Degraded results
        (fallback ordering, dropped stops) are returned with is_valid false and the reasons in errors/warnings.""",
        tags=['Route Optimization']
    )
    def post(self, request, format=None):
        serializer = OptimizeRequestSerializer(data=request.data)
        if not serializer.is_valid():
            logger.error(f"OptimizeRouteView validation error: {serializer.errors}")
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            stops = [build_stop(stop) for stop in data['stops']]
            constraints = VehicleConstraints(**data['constraints'])
            result = get_services().optimizer.optimize(data['start'], stops, constraints, now=data.get('now'))
        except Exception:
            logger.exception("Critical error during route optimization")
            return unexpected_error_response("optimize the route")
        return Response(OptimizationResultSerializer(result).data, status=status.HTTP_200_OK)


class RouteCreateView(APIView):
    """
    Creates and persists a driver's optimized route for today.
    """

    @swagger_auto_schema(
        request_body=CreateRouteRequestSerializer,
        responses={
            201: PersistentRouteSerializer,
            400: "Bad Request - Invalid orders",
            503: "Service Unavailable - Route storage failed",
        },
        operation_id="route_create",
        operation_description="Geocodes the orders, optimizes the visiting order and stores the route.",
        tags=['Routes']
    )
    def post(self, request, format=None):
        serializer = CreateRouteRequestSerializer(data=request.data)
        if not serializer.is_valid():
            logger.error(f"RouteCreateView validation error: {serializer.errors}")
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        data = serializer.validated_data
        try:
            route = get_services().state_manager.create_route(
                data['driver_id'],
                [build_order(order) for order in data['orders']],
                driver_location=data.get('driver_location'),
            )
        except RoutingError as e:
            return routing_error_response(e)
        except Exception:
            logger.exception(f"Failed to create route for driver {data['driver_id']}")
            return unexpected_error_response("create the route")
        return route_response(route, status.HTTP_201_CREATED)


class CurrentRouteView(APIView):
    """
    Today's active route for a driver.
    """

    @swagger_auto_schema(
        responses={
            200: PersistentRouteSerializer,
            404: openapi.Response("No active route for this driver today."),
        },
        operation_id="route_current_read",
        tags=['Routes']
    )
    def get(self, request, driver_id, format=None):
        try:
            route = get_services().state_manager.get_current_route(driver_id)
        except RoutingError as e:
            return routing_error_response(e)
        except Exception:
            logger.exception(f"Failed to load current route for driver {driver_id}")
            return unexpected_error_response("load the route")
        if route is None:
            return Response({"error": f"No active route for driver {driver_id}"}, status=status.HTTP_404_NOT_FOUND)
        return route_response(route)


class RouteMutationView(APIView):
    """
    Shared flow for endpoints that change a stored route.
    """
    serializer_class = None
    action_description = 'update the route'

    def apply(self, manager, route_id, data, **kwargs):
        raise NotImplementedError

    def run(self, request, route_id, **kwargs):
        data = {}
        if self.serializer_class is not None:
            serializer = self.serializer_class(data=request.data)
            if not serializer.is_valid():
                logger.error(f"{self.__class__.__name__} validation error: {serializer.errors}")
                return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
            data = serializer.validated_data

        try:
            route = self.apply(get_services().state_manager, route_id, data, **kwargs)
        except RoutingError as e:
            return routing_error_response(e)
        except Exception:
            logger.exception(f"Failed to {self.action_description} for route {route_id}")
            return unexpected_error_response(self.action_description)
        return route_response(route)


class CompleteDeliveryView(RouteMutationView):
    serializer_class = CompleteDeliverySerializer
    action_description = 'complete the delivery'

    def apply(self, manager, route_id, data, stop_id=None):
        return manager.complete_delivery(
            route_id, stop_id, actual_time=data.get('actual_time'), actual_distance=data.get('actual_distance'),
        )

    @swagger_auto_schema(
        request_body=CompleteDeliverySerializer,
        responses={200: PersistentRouteSerializer, 404: "Unknown route or stop", 409: "Stop is not pending"},
        operation_id="route_stop_complete",
        tags=['Routes']
    )
    def post(self, request, route_id, stop_id, format=None):
        return self.run(request, route_id, stop_id=stop_id)


class CancelDeliveryView(RouteMutationView):
    serializer_class = CancelDeliverySerializer
    action_description = 'cancel the delivery'

    def apply(self, manager, route_id, data, stop_id=None):
        return manager.cancel_delivery(route_id, stop_id, reason=data.get('reason', ''))

    @swagger_auto_schema(
        request_body=CancelDeliverySerializer,
        responses={200: PersistentRouteSerializer, 404: "Unknown route or stop", 409: "Stop is not pending"},
        operation_id="route_stop_cancel",
        tags=['Routes']
    )
    def post(self, request, route_id, stop_id, format=None):
        return self.run(request, route_id, stop_id=stop_id)


class AddDeliveryView(RouteMutationView):
    serializer_class = AddDeliverySerializer
    action_description = 'add the delivery'

    def apply(self, manager, route_id, data):
        return manager.add_delivery(route_id, build_order(data['order']))

    @swagger_auto_schema(
        request_body=AddDeliverySerializer,
        responses={200: PersistentRouteSerializer, 400: "Invalid or duplicate order", 409: "Route is not active"},
        operation_id="route_delivery_add",
        operation_description="Adds an order and re-optimizes the pending stops only.",
        tags=['Routes']
    )
    def post(self, request, route_id, format=None):
        return self.run(request, route_id)


class RecalculateRouteView(RouteMutationView):
    serializer_class = RecalculateRouteSerializer
    action_description = 'recalculate the route'

    def apply(self, manager, route_id, data):
        orders = [build_order(order) for order in data.get('pending_orders', [])]
        return manager.recalculate_route(route_id, orders or None)

    @swagger_auto_schema(
        request_body=RecalculateRouteSerializer,
        responses={200: PersistentRouteSerializer, 409: "Route is not active"},
        operation_id="route_recalculate",
        tags=['Routes']
    )
    def post(self, request, route_id, format=None):
        return self.run(request, route_id)


class EndShiftView(RouteMutationView):
    action_description = 'end the shift'

    def apply(self, manager, route_id, data):
        return manager.end_shift(route_id)

    @swagger_auto_schema(
        responses={200: PersistentRouteSerializer, 409: "Route already closed"},
        operation_id="route_end_shift",
        tags=['Routes']
    )
    def post(self, request, route_id, format=None):
        return self.run(request, route_id)


class DriverUpdateView(APIView):
    """
    Live driver/vehicle status. May re-optimize the driver's remaining deliveries.
    """

    @swagger_auto_schema(
        request_body=DriverUpdateSerializer,
        responses={200: ReoptimizationOutcomeSerializer, 400: "Bad Request - Invalid update"},
        operation_id="driver_update_create",
        operation_description="Classifies the update into triggers and re-optimizes when they warrant it. "
                              "Alerts are returned whether or not a re-optimization ran.",
        tags=['Real-time']
    )
    def post(self, request, format=None):
        serializer = DriverUpdateSerializer(data=request.data)
        if not serializer.is_valid():
            logger.error(f"DriverUpdateView validation error: {serializer.errors}")
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        update = serializer.save()
        try:
            outcome = process_driver_update(update)
        except RoutingError as e:
            return routing_error_response(e)
        except Exception:
            logger.exception(f"Failed to process update for driver {update.driver_id}")
            return unexpected_error_response("process the driver update")
        return Response(ReoptimizationOutcomeSerializer(outcome).data, status=status.HTTP_200_OK)


def process_driver_update(update):
    """
    Feed an update to the reoptimizer, first loading the driver's current
    route when the driver is not tracked yet.
    """
    services = get_services()
    services.track_driver(update.driver_id)
    return services.reoptimizer.process_update(update)


@swagger_auto_schema(
    method='get',
    operation_id="health_check_get",
    operation_description="Performs a health check of the API. Returns the operational status of the service.",
    responses={
        200: openapi.Response(
            description="API is healthy and operational.",
            examples={"application/json": {"status": "healthy"}}
        ),
    },
    tags=['Health Check']
)
@api_view(['GET'])
def health_check(request):
    """
    Health check endpoint to verify the API is running.
    """
    return Response({"status": "healthy"}, status=status.HTTP_200_OK)
