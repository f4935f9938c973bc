from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from delivery_routing.core.distance_estimator import DistanceEstimator
from delivery_routing.core.route_optimizer import RouteOptimizerEngine
from delivery_routing.core.traffic import NoTrafficModel
from delivery_routing.core.types import Coordinates, Order
from delivery_routing.services.geocoding_service import GeocodeResult, GeoResolver

NOW = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)
GEOCODED = Coordinates(43.70, -79.40)


class TickingClock:
    """Returns NOW, advancing one second per call so history stays ordered."""

    def __init__(self, start=NOW):
        self.current = start

    def __call__(self):
        value = self.current
        self.current += timedelta(seconds=1)
        return value


def make_optimizer():
    return RouteOptimizerEngine(DistanceEstimator(), traffic_model=NoTrafficModel())


def make_geocoder():
    geocoder = MagicMock(spec=GeoResolver)
    geocoder.resolve_with_fallback.side_effect = lambda addresses: [
        GeocodeResult(address=a, coordinates=GEOCODED, is_fallback=True) for a in addresses
    ]
    return geocoder


def make_orders():
    return [
        Order(id='o1', address='1 King St W', coordinates=Coordinates(43.66, -79.38)),
        Order(id='o2', address='2 Queen St E', coordinates=Coordinates(43.64, -79.39), priority='high'),
        Order(id='o3', address='3 Bloor St', coordinates=Coordinates(43.67, -79.40),
              special_requirements=['signature']),
    ]
