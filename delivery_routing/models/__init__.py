from .routes import DriverRoute, RouteStop, RouteHistory
