from django.core.management.base import BaseCommand

from delivery_routing.consumers.driver_updates import start_driver_update_consumer
from delivery_routing.settings import KAFKA_DRIVER_UPDATES_TOPIC


class Command(BaseCommand):
    help = 'Start Kafka consumer that re-optimizes routes from live driver updates'

    def handle(self, *args, **kwargs):
        self.stdout.write(self.style.SUCCESS(f'Starting driver update consumer on {KAFKA_DRIVER_UPDATES_TOPIC}...'))
        start_driver_update_consumer()
