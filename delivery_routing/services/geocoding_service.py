"""
Address geocoding with caching, rate limiting and deterministic fallback.

This module provides the GeoResolver service, which turns delivery addresses
into coordinates through a pluggable provider (Nominatim by default).
"""
import hashlib
import logging
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError, HTTPError, RequestException, Timeout

from delivery_routing.core.cache import InMemoryTTLCache, TTLCache
from delivery_routing.core.exceptions import RoutingError, TransientProviderError
from delivery_routing.core.rate_limiter import RateLimiter
from delivery_routing.core.types import Coordinates
from delivery_routing.settings import (
    BACKOFF_FACTOR,
    DEFAULT_CENTER,
    FALLBACK_JITTER,
    FALLBACK_LAT_SPAN,
    FALLBACK_LON_SPAN,
    GEOCODING_API_URL,
    GEOCODING_BACKGROUND_WORKERS,
    GEOCODING_BATCH_DELAY_SECONDS,
    GEOCODING_BATCH_SIZE,
    GEOCODING_CACHE_TTL_DAYS,
    GEOCODING_HIGH_ACCURACY_THRESHOLD,
    GEOCODING_MAX_RETRIES,
    GEOCODING_MEDIUM_ACCURACY_THRESHOLD,
    GEOCODING_MIN_INTERVAL_SECONDS,
    GEOCODING_REQUEST_TIMEOUT,
    GEOCODING_RESULT_LIMIT,
    GEOCODING_USER_AGENT,
    RETRY_DELAY_SECONDS,
)

logger = logging.getLogger(__name__)

ACCURACY_HIGH = 'high'
ACCURACY_MEDIUM = 'medium'
ACCURACY_LOW = 'low'
UNKNOWN = 'Unknown'


@dataclass
class GeocodeResult:
    address: str
    coordinates: Optional[Coordinates]
    accuracy: str = ACCURACY_LOW
    city: str = UNKNOWN
    country: str = UNKNOWN
    display_name: str = ''
    importance: float = 0.0
    from_cache: bool = False
    is_fallback: bool = False


def normalize_address(address: Any) -> str:
    if not isinstance(address, str):
        return ''
    return re.sub(r'\s+', ' ', address.strip()).lower()


class NominatimProvider:
    """
    Nominatim-compatible search client.

    search() returns the raw candidate list. Timeouts, connection failures,
    HTTP 429 and 5xx responses raise TransientProviderError; other failures
    raise RoutingError.
    """

    def __init__(self, base_url: str = GEOCODING_API_URL, user_agent: str = GEOCODING_USER_AGENT,
                 timeout: float = GEOCODING_REQUEST_TIMEOUT, limit: int = GEOCODING_RESULT_LIMIT):
        self.base_url = base_url
        self.user_agent = user_agent
        self.timeout = timeout
        self.limit = limit
        self.request_count = 0

    def search(self, query: str) -> List[Dict[str, Any]]:
        params = {
            'format': 'json',
            'q': query,
            'limit': self.limit,
            'addressdetails': 1,
        }
        headers = {'User-Agent': self.user_agent}
        self.request_count += 1

        try:
            response = requests.get(self.base_url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except HTTPError as http_err:
            status = http_err.response.status_code if http_err.response is not None else None
            if status == 429 or (status is not None and status >= 500):
                retry_after = None
                if http_err.response is not None:
                    retry_after = self._parse_retry_after(http_err.response.headers.get('Retry-After'))
                raise TransientProviderError(f"Geocoding provider returned HTTP {status}",
                                             retry_after=retry_after) from http_err
            raise RoutingError(f"Geocoding request failed with HTTP {status}") from http_err
        except (Timeout, RequestsConnectionError) as req_err:
            raise TransientProviderError(f"Geocoding provider unreachable: {req_err}") from req_err
        except RequestException as req_err:
            raise RoutingError(f"Geocoding request failed: {req_err}") from req_err

        try:
            data = response.json()
        except ValueError as json_err:
            raise RoutingError(f"Failed to decode geocoding response: {json_err}") from json_err

        if not isinstance(data, list):
            raise RoutingError("Unexpected geocoding response shape")
        return data

    @staticmethod
    def _parse_retry_after(value: Optional[str]) -> Optional[float]:
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None


class GeoResolver:
    """
    Resolves addresses to coordinates.

    Args:
        provider: Object with a search(query) method returning candidates.
        cache: Address cache; defaults to an in-memory cache with a 30 day TTL.
        rate_limiter: Gate on provider requests. Resolvers built with the same
            instance share one request budget; a private gate is made otherwise.
        default_center: Center of the region used for fallback coordinates.
        sleep: Sleep function used for retry and batch delays.
    """

    def __init__(
        self,
        provider=None,
        cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        default_center: Tuple[float, float] = DEFAULT_CENTER,
        max_retries: int = GEOCODING_MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        backoff_factor: float = BACKOFF_FACTOR,
        batch_size: int = GEOCODING_BATCH_SIZE,
        batch_delay: float = GEOCODING_BATCH_DELAY_SECONDS,
        background_workers: int = GEOCODING_BACKGROUND_WORKERS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider or NominatimProvider()
        self.cache = cache if cache is not None else InMemoryTTLCache(GEOCODING_CACHE_TTL_DAYS * 24 * 3600)
        self.rate_limiter = rate_limiter or RateLimiter(GEOCODING_MIN_INTERVAL_SECONDS, sleep=sleep)
        self.default_center = default_center
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._sleep = sleep
        self._pending: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=background_workers, thread_name_prefix='geocoder')
        self._background: List[Future] = []
        self.lookups = 0

    # --- cache ----------------------------------------------------------

    def _cached(self, key: str, address: str) -> Optional[GeocodeResult]:
        entry = self.cache.get_entry(f"geo:{key}")
        if entry is None:
            return None
        return replace(entry.value, address=address, from_cache=True)

    def _store(self, key: str, result: GeocodeResult) -> None:
        self.cache.set(f"geo:{key}", replace(result, from_cache=False))

    # --- lookups --------------------------------------------------------

    @staticmethod
    def accuracy_for(importance: float) -> str:
        if importance > GEOCODING_HIGH_ACCURACY_THRESHOLD:
            return ACCURACY_HIGH
        if importance > GEOCODING_MEDIUM_ACCURACY_THRESHOLD:
            return ACCURACY_MEDIUM
        return ACCURACY_LOW

    def _best_candidate(self, address: str, candidates: List[Dict[str, Any]]) -> Optional[GeocodeResult]:
        def importance(candidate):
            try:
                return float(candidate.get('importance') or 0)
            except (TypeError, ValueError):
                return 0.0

        for candidate in sorted(candidates, key=importance, reverse=True):
            coords = Coordinates.from_value({'lat': candidate.get('lat'), 'lon': candidate.get('lon')})
            if coords is None or not coords.is_valid():
                continue
            details = candidate.get('address') or {}
            score = importance(candidate)
            return GeocodeResult(
                address=address,
                coordinates=coords,
                accuracy=self.accuracy_for(score),
                city=details.get('city') or details.get('town') or details.get('municipality') or UNKNOWN,
                country=details.get('country') or UNKNOWN,
                display_name=candidate.get('display_name', ''),
                importance=score,
            )
        return None

    def _lookup(self, address: str) -> Optional[GeocodeResult]:
        query = re.sub(r'\s+', ' ', address.strip())
        for attempt in range(self.max_retries + 1):
            self.rate_limiter.acquire()
            self.lookups += 1
            try:
                candidates = self.provider.search(query)
            except TransientProviderError as e:
                if attempt < self.max_retries:
                    delay = e.retry_after or self.retry_delay * (self.backoff_factor ** attempt)
                    logger.info(f"Transient geocoding error for '{query}': {e}. Retrying in {delay:.2f} seconds...")
                    self._sleep(delay)
                    continue
                logger.error(f"Max retries reached geocoding '{query}': {e}")
                return None
            except RoutingError as e:
                logger.error(f"Geocoding failed for '{query}': {e}")
                return None

            best = self._best_candidate(address, candidates)
            if best is None:
                logger.warning(f"No valid coordinates found for address: {query}")
            return best
        return None

    def resolve(self, address: str) -> Optional[GeocodeResult]:
        """
        Resolve a single address.

        Returns:
            GeocodeResult, or None for empty or unresolvable input.
        """
        key = normalize_address(address)
        if not key:
            return None

        cached = self._cached(key, address)
        if cached is not None:
            logger.debug(f"Using cached coordinates for: {address}")
            return cached

        with self._pending_lock:
            pending = self._pending.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._pending[key] = pending

        if not owner:
            result = pending.result()
            return replace(result, address=address) if result is not None else None

        try:
            result = self._lookup(address)
            if result is not None:
                self._store(key, result)
            pending.set_result(result)
            return result
        except Exception:
            logger.exception(f"Unexpected geocoding failure for '{address}'")
            pending.set_result(None)
            return None
        finally:
            with self._pending_lock:
                self._pending.pop(key, None)

    def resolve_batch(self, addresses: Sequence[str]) -> List[GeocodeResult]:
        """
        Resolve many addresses, only rate-limiting those not in the cache.

        Returns:
            One GeocodeResult per input address, in input order.
        """
        results: List[Optional[GeocodeResult]] = [None] * len(addresses)
        uncached: Dict[str, List[int]] = {}

        for position, address in enumerate(addresses):
            key = normalize_address(address)
            cached = self._cached(key, address) if key else None
            if cached is not None:
                results[position] = cached
            elif key:
                uncached.setdefault(key, []).append(position)
            else:
                results[position] = GeocodeResult(address=address, coordinates=None)

        keys = list(uncached)
        batches = [keys[i:i + self.batch_size] for i in range(0, len(keys), self.batch_size)]
        for batch_number, batch in enumerate(batches):
            if batch_number > 0 and self.batch_delay > 0:
                self._sleep(self.batch_delay)
            for key in batch:
                positions = uncached[key]
                resolved = self.resolve(addresses[positions[0]])
                for position in positions:
                    address = addresses[position]
                    if resolved is None:
                        results[position] = GeocodeResult(address=address, coordinates=None)
                    else:
                        results[position] = replace(resolved, address=address, from_cache=False)

        successful = sum(1 for r in results if r.coordinates is not None)
        logger.info(f"Batch geocoding completed: {successful}/{len(results)} successful "
                    f"({len(results) - len(keys)} from cache)")
        return results

    def fallback_coordinates(self, address: str) -> Coordinates:
        """
        Deterministic pseudo-coordinate for an address inside the default region.
        """
        digest = hashlib.md5(normalize_address(address).encode('utf-8')).digest()
        lat_unit = int.from_bytes(digest[0:4], 'big') / 0xFFFFFFFF
        lon_unit = int.from_bytes(digest[4:8], 'big') / 0xFFFFFFFF
        jitter_lat = (int.from_bytes(digest[8:12], 'big') / 0xFFFFFFFF - 0.5) * FALLBACK_JITTER
        jitter_lon = (int.from_bytes(digest[12:16], 'big') / 0xFFFFFFFF - 0.5) * FALLBACK_JITTER
        center_lat, center_lon = self.default_center
        return Coordinates(
            center_lat + (lat_unit - 0.5) * FALLBACK_LAT_SPAN + jitter_lat,
            center_lon + (lon_unit - 0.5) * FALLBACK_LON_SPAN + jitter_lon,
        )

    def resolve_with_fallback(self, addresses: Sequence[str]) -> List[GeocodeResult]:
        """
        Usable coordinates for every address without waiting on the provider.

        Cached addresses return their cached result; the others get a
        fallback coordinate and are resolved in the background.
        """
        results = []
        uncached = []
        for address in addresses:
            key = normalize_address(address)
            cached = self._cached(key, address) if key else None
            if cached is not None:
                results.append(cached)
                continue
            results.append(GeocodeResult(
                address=address,
                coordinates=self.fallback_coordinates(address or ''),
                is_fallback=True,
            ))
            if key:
                uncached.append(address)

        if uncached:
            logger.info(f"Starting background geocoding for {len(uncached)} addresses")
            future = self._executor.submit(self.resolve_batch, uncached)
            future.add_done_callback(self._log_background_result)
            self._background = [f for f in self._background if not f.done()] + [future]
        return results

    @staticmethod
    def _log_background_result(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.warning(f"Background geocoding failed: {error}")
            return
        found = sum(1 for r in future.result() if r.coordinates is not None)
        logger.info(f"Background geocoding resolved {found}/{len(future.result())} addresses")

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        """Block until scheduled background lookups finish."""
        for future in list(self._background):
            future.result(timeout=timeout)

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        values = self.cache.values()
        accuracy = {ACCURACY_HIGH: 0, ACCURACY_MEDIUM: 0, ACCURACY_LOW: 0}
        cities: Dict[str, int] = {}
        for value in values:
            accuracy[value.accuracy] = accuracy.get(value.accuracy, 0) + 1
            cities[value.city] = cities.get(value.city, 0) + 1
        stats = {
            'total': len(values),
            'accuracy': accuracy,
            'cities': cities,
            'lookups': self.lookups,
            'pending': len(self._pending),
        }
        stats.update(self.cache.stats())
        return stats

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
