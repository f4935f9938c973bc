import threading
from unittest import TestCase
from unittest.mock import MagicMock, patch

from requests.exceptions import HTTPError, Timeout

from delivery_routing.core.cache import InMemoryTTLCache
from delivery_routing.core.exceptions import RoutingError, TransientProviderError
from delivery_routing.core.rate_limiter import RateLimiter
from delivery_routing.services.geocoding_service import (
    ACCURACY_HIGH,
    ACCURACY_LOW,
    ACCURACY_MEDIUM,
    GeoResolver,
    NominatimProvider,
    normalize_address,
)

TORONTO = {
    'lat': '43.6532', 'lon': '-79.3832', 'importance': 0.82,
    'display_name': 'Toronto City Hall', 'address': {'city': 'Toronto', 'country': 'Canada'},
}
MISSISSAUGA = {
    'lat': '43.5890', 'lon': '-79.6441', 'importance': 0.45,
    'display_name': 'Mississauga', 'address': {'town': 'Mississauga', 'country': 'Canada'},
}


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class GeoResolverTest(TestCase):
    def setUp(self):
        self.provider = MagicMock()
        self.provider.search.return_value = [MISSISSAUGA, TORONTO]
        self.clock = FakeClock()
        self.sleep = MagicMock()
        self.resolver = GeoResolver(
            provider=self.provider,
            cache=InMemoryTTLCache(default_ttl=3600, clock=self.clock),
            rate_limiter=RateLimiter(0, sleep=self.sleep),
            retry_delay=2.0,
            backoff_factor=2,
            max_retries=3,
            batch_size=2,
            batch_delay=1.5,
            sleep=self.sleep,
        )

    def tearDown(self):
        self.resolver.shutdown()

    def test_normalize_address(self):
        self.assertEqual(normalize_address('  100 Queen St W,\n Toronto '), '100 queen st w, toronto')
        self.assertEqual(normalize_address(None), '')

    def test_resolve_picks_most_important_candidate(self):
        result = self.resolver.resolve('100 Queen St W, Toronto')
        self.assertEqual(result.coordinates.as_tuple(), (43.6532, -79.3832))
        self.assertEqual(result.accuracy, ACCURACY_HIGH)
        self.assertEqual(result.city, 'Toronto')
        self.assertEqual(result.country, 'Canada')
        self.assertFalse(result.from_cache)
        self.provider.search.assert_called_once_with('100 Queen St W, Toronto')

    def test_accuracy_tiers(self):
        self.assertEqual(GeoResolver.accuracy_for(0.9), ACCURACY_HIGH)
        self.assertEqual(GeoResolver.accuracy_for(0.5), ACCURACY_MEDIUM)
        self.assertEqual(GeoResolver.accuracy_for(0.4), ACCURACY_LOW)

    def test_cached_result_is_reused_until_expiry(self):
        first = self.resolver.resolve('100 Queen St W, Toronto')
        second = self.resolver.resolve('100  queen st w, TORONTO')
        self.assertTrue(second.from_cache)
        self.assertEqual(first.coordinates, second.coordinates)
        self.assertEqual(second.address, '100  queen st w, TORONTO')
        self.assertEqual(self.provider.search.call_count, 1)

        self.clock.now += 3601
        third = self.resolver.resolve('100 Queen St W, Toronto')
        self.assertFalse(third.from_cache)
        self.assertEqual(self.provider.search.call_count, 2)

    def test_empty_address_is_not_looked_up(self):
        self.assertIsNone(self.resolver.resolve('   '))
        self.assertIsNone(self.resolver.resolve(None))
        self.provider.search.assert_not_called()

    def test_transient_errors_are_retried_with_backoff(self):
        self.provider.search.side_effect = [
            TransientProviderError("HTTP 503"),
            TransientProviderError("HTTP 429", retry_after=7),
            [TORONTO],
        ]
        result = self.resolver.resolve('City Hall')
        self.assertIsNotNone(result)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [2.0, 7.0])
        self.assertEqual(self.resolver.lookups, 3)

    def test_gives_up_after_max_retries(self):
        self.provider.search.side_effect = TransientProviderError("HTTP 503")
        with self.assertLogs('delivery_routing.services.geocoding_service', level='ERROR'):
            self.assertIsNone(self.resolver.resolve('City Hall'))
        self.assertEqual(self.provider.search.call_count, 4)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [2.0, 4.0, 8.0])

    def test_permanent_error_is_not_retried(self):
        self.provider.search.side_effect = RoutingError("HTTP 400")
        self.assertIsNone(self.resolver.resolve('City Hall'))
        self.assertEqual(self.provider.search.call_count, 1)
        self.sleep.assert_not_called()

    def test_no_usable_candidate(self):
        self.provider.search.return_value = [{'lat': 'abc', 'lon': None}]
        with self.assertLogs('delivery_routing.services.geocoding_service', level='WARNING'):
            self.assertIsNone(self.resolver.resolve('Nowhere'))
        self.assertNotIn('geo:nowhere', self.resolver.cache)

    def test_concurrent_lookups_share_one_request(self):
        started = threading.Event()
        release = threading.Event()

        def slow_search(query):
            started.set()
            release.wait(2)
            return [TORONTO]

        self.provider.search.side_effect = slow_search
        results = []
        first = threading.Thread(target=lambda: results.append(self.resolver.resolve('City Hall')))
        first.start()
        started.wait(2)
        second = threading.Thread(target=lambda: results.append(self.resolver.resolve('city hall')))
        second.start()
        release.set()
        first.join(2)
        second.join(2)

        self.assertEqual(len(results), 2)
        self.assertTrue(all(r is not None for r in results))
        self.assertEqual(self.provider.search.call_count, 1)

    def test_resolve_batch_keeps_input_order_and_sleeps_between_batches(self):
        addresses = ['A street', 'B street', 'C street', 'a street', '']
        results = self.resolver.resolve_batch(addresses)
        self.assertEqual([r.address for r in results], addresses)
        self.assertIsNone(results[4].coordinates)
        self.assertIsNotNone(results[3].coordinates)
        # three distinct addresses in batches of two
        self.assertEqual(self.provider.search.call_count, 3)
        self.sleep.assert_called_once_with(1.5)

    def test_resolve_batch_skips_cached_addresses(self):
        self.resolver.resolve('A street')
        self.provider.search.reset_mock()
        results = self.resolver.resolve_batch(['A street', 'B street'])
        self.assertTrue(results[0].from_cache)
        self.provider.search.assert_called_once_with('B street')

    def test_fallback_coordinates_are_deterministic_and_regional(self):
        first = self.resolver.fallback_coordinates('42 Unknown Rd')
        second = self.resolver.fallback_coordinates('  42 unknown rd ')
        self.assertEqual(first, second)
        self.assertNotEqual(first, self.resolver.fallback_coordinates('43 Unknown Rd'))
        center_lat, center_lon = self.resolver.default_center
        self.assertLessEqual(abs(first.latitude - center_lat), 0.15)
        self.assertLessEqual(abs(first.longitude - center_lon), 0.27)

    def test_resolve_with_fallback_answers_immediately_then_caches(self):
        self.resolver.resolve('A street')
        results = self.resolver.resolve_with_fallback(['A street', 'B street'])
        self.assertTrue(results[0].from_cache)
        self.assertFalse(results[0].is_fallback)
        self.assertTrue(results[1].is_fallback)
        self.assertEqual(results[1].address, 'B street')
        self.assertEqual(results[1].coordinates, self.resolver.fallback_coordinates('B street'))

        self.resolver.wait_for_background(timeout=5)
        self.assertIn('geo:b street', self.resolver.cache)

    def test_cache_stats(self):
        self.resolver.resolve('A street')
        self.resolver.resolve('A street')
        stats = self.resolver.cache_stats()
        self.assertEqual(stats['total'], 1)
        self.assertEqual(stats['accuracy'][ACCURACY_HIGH], 1)
        self.assertEqual(stats['cities'], {'Toronto': 1})
        self.assertEqual(stats['lookups'], 1)
        self.assertEqual(stats['hits'], 1)

        self.resolver.clear_cache()
        self.assertEqual(self.resolver.cache_stats()['total'], 0)


class NominatimProviderTest(TestCase):
    def setUp(self):
        self.provider = NominatimProvider(base_url='https://geo.example.com/search', user_agent='tests')

    @patch('delivery_routing.services.geocoding_service.requests.get')
    def test_search_returns_candidates(self, mock_get):
        response = MagicMock()
        response.json.return_value = [TORONTO]
        mock_get.return_value = response

        self.assertEqual(self.provider.search('City Hall'), [TORONTO])
        _, kwargs = mock_get.call_args
        self.assertEqual(kwargs['params']['q'], 'City Hall')
        self.assertEqual(kwargs['headers'], {'User-Agent': 'tests'})
        self.assertEqual(self.provider.request_count, 1)

    @patch('delivery_routing.services.geocoding_service.requests.get')
    def test_rate_limited_response_is_transient(self, mock_get):
        response = MagicMock()
        response.status_code = 429
        response.headers = {'Retry-After': '3'}
        response.raise_for_status.side_effect = HTTPError(response=response)
        mock_get.return_value = response

        with self.assertRaises(TransientProviderError) as ctx:
            self.provider.search('City Hall')
        self.assertEqual(ctx.exception.retry_after, 3.0)

    @patch('delivery_routing.services.geocoding_service.requests.get')
    def test_client_error_is_permanent(self, mock_get):
        response = MagicMock()
        response.status_code = 400
        response.headers = {}
        response.raise_for_status.side_effect = HTTPError(response=response)
        mock_get.return_value = response

        with self.assertRaises(RoutingError) as ctx:
            self.provider.search('City Hall')
        self.assertNotIsInstance(ctx.exception, TransientProviderError)

    @patch('delivery_routing.services.geocoding_service.requests.get')
    def test_timeout_is_transient(self, mock_get):
        mock_get.side_effect = Timeout("read timed out")
        with self.assertRaises(TransientProviderError):
            self.provider.search('City Hall')

    @patch('delivery_routing.services.geocoding_service.requests.get')
    def test_undecodable_body(self, mock_get):
        response = MagicMock()
        response.json.side_effect = ValueError("no json")
        mock_get.return_value = response
        with self.assertRaises(RoutingError):
            self.provider.search('City Hall')
