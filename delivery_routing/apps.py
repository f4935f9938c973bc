import logging
import threading

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class DeliveryRoutingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'delivery_routing'
    verbose_name = 'Delivery Route Engine'

    def ready(self):
        """
        Prepare the service container slot. Services are built on first use
        so management commands that never route do not start worker pools.
        """
        self._services = None
        self._services_lock = threading.Lock()

    @property
    def services(self):
        if self._services is None:
            with self._services_lock:
                if self._services is None:
                    from delivery_routing.services.container import RoutingServices
                    self._services = RoutingServices.build()
        return self._services

    def set_services(self, services) -> None:
        """Replace the container, e.g. with one wired to test doubles."""
        with self._services_lock:
            self._services = services
