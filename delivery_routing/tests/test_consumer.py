import json
from unittest.mock import MagicMock, patch

from django.core.management import call_command
from django.test import TestCase

from delivery_routing.consumers.driver_updates import drain_drivers, handle_driver_update, run_consumer_once


def kafka_message(payload):
    msg = MagicMock()
    msg.error.return_value = None
    msg.value.return_value = payload if isinstance(payload, bytes) else json.dumps(payload).encode('utf-8')
    return msg


class DriverUpdateConsumerTest(TestCase):
    def setUp(self):
        self.services = MagicMock()
        self.services.reoptimizer.drain.return_value = MagicMock(triggered=True, alerts=["Low fuel level"])

    def test_valid_update_is_queued_for_its_driver(self):
        driver_id = handle_driver_update(
            {"driver_id": "driver-1", "location": [43.65, -79.38], "fuel_level": 0.5}, self.services,
        )
        self.assertEqual(driver_id, "driver-1")
        self.services.track_driver.assert_called_once_with("driver-1")
        update = self.services.reoptimizer.enqueue.call_args[0][0]
        self.assertEqual(update.fuel_level, 0.5)

    def test_invalid_update_is_dropped(self):
        with self.assertLogs('delivery_routing.consumers.driver_updates', level='ERROR'):
            self.assertIsNone(handle_driver_update({"location": [43.65, -79.38]}, self.services))
        self.services.reoptimizer.enqueue.assert_not_called()

    def test_drain_counts_reoptimizations_and_clears_pending(self):
        pending = {"driver-1", "driver-2"}
        self.services.reoptimizer.drain.side_effect = [MagicMock(triggered=True, alerts=[]), None]
        self.assertEqual(drain_drivers(pending, self.services), 1)
        self.assertEqual(pending, set())

    @patch('delivery_routing.consumers.driver_updates.Consumer')
    def test_run_consumer_once(self, mock_consumer_cls):
        consumer = mock_consumer_cls.return_value
        consumer.poll.return_value = kafka_message({"driver_id": "driver-1", "fuel_level": 0.1})

        self.assertEqual(run_consumer_once(self.services, timeout=0.1), 1)
        self.services.reoptimizer.drain.assert_called_once_with("driver-1")
        consumer.close.assert_called_once()

    @patch('delivery_routing.consumers.driver_updates.Consumer')
    def test_run_consumer_once_skips_undecodable_message(self, mock_consumer_cls):
        consumer = mock_consumer_cls.return_value
        consumer.poll.return_value = kafka_message(b'\xff not json')

        with self.assertLogs('delivery_routing.consumers.driver_updates', level='ERROR'):
            self.assertEqual(run_consumer_once(self.services, timeout=0.1), 0)
        self.services.reoptimizer.enqueue.assert_not_called()

    @patch('delivery_routing.management.commands.consume_driver_updates.start_driver_update_consumer')
    def test_management_command_starts_consumer(self, mock_start):
        call_command('consume_driver_updates')
        mock_start.assert_called_once()
