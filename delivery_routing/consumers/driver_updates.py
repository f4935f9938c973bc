import json
import logging
from typing import Optional, Set

from confluent_kafka import Consumer, KafkaException

from delivery_routing.api.serializers import DriverUpdateSerializer
from delivery_routing.services.container import RoutingServices, get_services
from delivery_routing.settings import (
    KAFKA_BOOTSTRAP_SERVERS,
    KAFKA_CONSUMER_GROUP,
    KAFKA_DRIVER_UPDATES_TOPIC,
)

logger = logging.getLogger(__name__)

# Updates handled before queued drivers are re-evaluated, even without an idle poll.
DRAIN_EVERY = 50


def create_kafka_consumer():
    return Consumer({
        'bootstrap.servers': KAFKA_BOOTSTRAP_SERVERS,
        'group.id': KAFKA_CONSUMER_GROUP,
        'auto.offset.reset': 'latest',
    })


def handle_driver_update(event, services: Optional[RoutingServices] = None) -> Optional[str]:
    """
    Validate one driver update event and queue it for its driver.

    Returns:
        The driver id, or None when the payload was rejected.
    """
    serializer = DriverUpdateSerializer(data=event)
    if not serializer.is_valid():
        logger.error(f"Invalid driver update payload: {serializer.errors}")
        return None

    services = services or get_services()
    update = serializer.save()
    services.track_driver(update.driver_id)
    services.reoptimizer.enqueue(update)
    return update.driver_id


def drain_drivers(driver_ids: Set[str], services: Optional[RoutingServices] = None) -> int:
    """Process the queued updates of each driver. Returns how many re-optimizations fired."""
    services = services or get_services()
    fired = 0
    for driver_id in sorted(driver_ids):
        outcome = services.reoptimizer.drain(driver_id)
        if outcome is None:
            continue
        for alert in outcome.alerts:
            logger.info(f"Alert for driver {driver_id}: {alert}")
        if outcome.triggered:
            fired += 1
    driver_ids.clear()
    return fired


def _decode(msg):
    try:
        return json.loads(msg.value().decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Skipping undecodable driver update: {e}")
        return None


def start_driver_update_consumer(services: Optional[RoutingServices] = None):
    consumer = create_kafka_consumer()
    consumer.subscribe([KAFKA_DRIVER_UPDATES_TOPIC])
    pending: Set[str] = set()
    handled = 0

    try:
        while True:
            msg = consumer.poll(1.0)
            if msg is None:
                if pending:
                    drain_drivers(pending, services)
                continue
            if msg.error():
                raise KafkaException(msg.error())

            event = _decode(msg)
            if event is None:
                continue
            driver_id = handle_driver_update(event, services)
            if driver_id is not None:
                pending.add(driver_id)
                handled += 1
            if handled % DRAIN_EVERY == 0 and pending:
                drain_drivers(pending, services)
    except KeyboardInterrupt:
        logger.info("Driver update consumer stopped")
    finally:
        if pending:
            drain_drivers(pending, services)
        consumer.close()


def run_consumer_once(services: Optional[RoutingServices] = None, timeout: float = 5.0) -> int:
    consumer = create_kafka_consumer()
    consumer.subscribe([KAFKA_DRIVER_UPDATES_TOPIC])
    fired = 0
    msg = consumer.poll(timeout=timeout)
    if msg and not msg.error():
        event = _decode(msg)
        driver_id = handle_driver_update(event, services) if event is not None else None
        if driver_id is not None:
            fired = drain_drivers({driver_id}, services)
    consumer.close()
    return fired
