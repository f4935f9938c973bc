from unittest import TestCase
from unittest.mock import MagicMock

from django.core.cache import caches

from delivery_routing.core.cache import DjangoTTLCache, InMemoryTTLCache
from delivery_routing.core.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class InMemoryTTLCacheTest(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = InMemoryTTLCache(default_ttl=10, clock=self.clock)

    def test_get_before_and_after_expiry(self):
        self.cache.set('k', 'v')
        self.clock.now += 9.9
        self.assertEqual(self.cache.get('k'), 'v')
        self.clock.now += 0.2
        self.assertIsNone(self.cache.get('k'))
        # Expired entries are purged on read
        self.assertEqual(len(self.cache), 0)

    def test_explicit_ttl_overrides_default(self):
        self.cache.set('short', 1, ttl_seconds=1)
        self.clock.now += 2
        self.assertNotIn('short', self.cache)

    def test_get_default(self):
        self.assertEqual(self.cache.get('missing', 'fallback'), 'fallback')

    def test_stats_track_hits_and_misses(self):
        self.cache.set('k', 'v')
        self.cache.get('k')
        self.cache.get('nope')
        stats = self.cache.stats()
        self.assertEqual(stats['size'], 1)
        self.assertEqual(stats['hits'], 1)
        self.assertEqual(stats['misses'], 1)
        self.assertAlmostEqual(stats['hit_rate'], 0.5)
        self.assertEqual(stats['oldest_entry'], 1000.0)

    def test_purge_expired_and_values(self):
        self.cache.set('a', 1, ttl_seconds=5)
        self.cache.set('b', 2, ttl_seconds=50)
        self.clock.now += 10
        self.assertEqual(self.cache.values(), [2])
        self.assertEqual(self.cache.purge_expired(), 1)
        self.assertEqual(len(self.cache), 1)

    def test_delete_and_clear(self):
        self.cache.set('a', 1)
        self.cache.set('b', 2)
        self.cache.delete('a')
        self.assertNotIn('a', self.cache)
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)
        self.assertEqual(self.cache.stats()['hits'], 0)


class DjangoTTLCacheTest(TestCase):
    def setUp(self):
        caches['default'].clear()
        self.clock = FakeClock()
        self.cache = DjangoTTLCache(default_ttl=30, key_prefix='test', clock=self.clock)

    def test_round_trip_and_lazy_expiry(self):
        self.cache.set('geo:x', {'lat': 1})
        self.assertEqual(self.cache.get('geo:x'), {'lat': 1})
        self.clock.now += 31
        self.assertIsNone(self.cache.get_entry('geo:x'))
        self.assertIsNone(caches['default'].get('test:geo:x'))

    def test_delete(self):
        self.cache.set('k', 1)
        self.cache.delete('k')
        self.assertNotIn('k', self.cache)


class RateLimiterTest(TestCase):
    def test_first_acquire_does_not_wait(self):
        sleep = MagicMock()
        limiter = RateLimiter(0.5, clock=FakeClock(), sleep=sleep)
        self.assertEqual(limiter.acquire(), 0.0)
        sleep.assert_not_called()

    def test_back_to_back_acquires_queue_behind_each_other(self):
        sleep = MagicMock()
        limiter = RateLimiter(0.5, clock=FakeClock(100.0), sleep=sleep)
        waits = [limiter.acquire() for _ in range(3)]
        self.assertEqual(waits, [0.0, 0.5, 1.0])
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [0.5, 1.0])

    def test_no_wait_once_interval_elapsed(self):
        clock = FakeClock(100.0)
        sleep = MagicMock()
        limiter = RateLimiter(0.5, clock=clock, sleep=sleep)
        limiter.acquire()
        clock.now += 0.6
        self.assertEqual(limiter.acquire(), 0.0)
        sleep.assert_not_called()

    def test_reset(self):
        sleep = MagicMock()
        limiter = RateLimiter(0.5, clock=FakeClock(), sleep=sleep)
        limiter.acquire()
        limiter.reset()
        self.assertEqual(limiter.acquire(), 0.0)
