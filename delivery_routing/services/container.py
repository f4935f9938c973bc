"""
Process-scoped wiring of the routing services.

The container is owned by the app config; nothing here is created at import
time.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from delivery_routing.core.cache import DjangoTTLCache, InMemoryTTLCache
from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.rate_limiter import RateLimiter
from delivery_routing.core.route_optimizer import RouteOptimizerEngine
from delivery_routing.core.traffic import SimulatedTrafficModel
from delivery_routing.services.geocoding_service import GeoResolver
from delivery_routing.services.realtime_service import RealTimeReoptimizer
from delivery_routing.services.route_state_service import RouteStateManager
from delivery_routing.services.route_stats_service import RouteStatsService
from delivery_routing.services.route_store import DjangoRouteStore, RouteStore
from delivery_routing.settings import DISTANCE_CACHE_TTL_HOURS, GEOCODING_CACHE_TTL_DAYS, GEOCODING_MIN_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class RoutingServices:
    estimator: DistanceEstimator
    optimizer: RouteOptimizerEngine
    geocoder: GeoResolver
    store: RouteStore
    stats: RouteStatsService
    state_manager: RouteStateManager
    reoptimizer: RealTimeReoptimizer
    rate_limiter: RateLimiter

    @classmethod
    def build(cls, store: Optional[RouteStore] = None, geocoder: Optional[GeoResolver] = None,
              use_django_cache: bool = True) -> 'RoutingServices':
        """
        Wire the default service graph. The geocode cache lives in the Django
        cache so several workers share it; distance pairs stay in-process.
        One rate limiter gates every provider request the process makes.
        """
        rate_limiter = RateLimiter(GEOCODING_MIN_INTERVAL_SECONDS)
        estimator = DistanceEstimator(InMemoryTTLCache(DISTANCE_CACHE_TTL_HOURS * 3600))
        optimizer = RouteOptimizerEngine(estimator, traffic_model=SimulatedTrafficModel(estimator))
        if geocoder is None:
            geo_ttl = GEOCODING_CACHE_TTL_DAYS * 24 * 3600
            cache = DjangoTTLCache(default_ttl=geo_ttl) if use_django_cache else InMemoryTTLCache(geo_ttl)
            geocoder = GeoResolver(cache=cache, rate_limiter=rate_limiter)
        store = store or DjangoRouteStore()
        stats = RouteStatsService(estimator)
        services = cls(
            estimator=estimator,
            optimizer=optimizer,
            geocoder=geocoder,
            store=store,
            stats=stats,
            state_manager=RouteStateManager(optimizer, geocoder, store, stats_service=stats),
            reoptimizer=RealTimeReoptimizer(optimizer),
            rate_limiter=rate_limiter,
        )
        logger.info("Routing services initialized")
        return services

    def track_driver(self, driver_id: str) -> None:
        """Load a driver's current route into the reoptimizer unless already tracked."""
        if self.reoptimizer.is_tracking(driver_id):
            return
        route = self.state_manager.get_current_route(driver_id)
        if route is not None:
            self.reoptimizer.register_route(route)

    def shutdown(self) -> None:
        self.geocoder.shutdown()
        self.optimizer.shutdown()


def get_services() -> RoutingServices:
    """The running app's service container."""
    from django.apps import apps
    return apps.get_app_config('delivery_routing').services
