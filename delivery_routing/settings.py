import os
import sys

from delivery_routing.utils.env_loader import load_env_from_file, env_float, env_int

# Try different possible locations for the env file
env_paths = [
    os.path.join(os.path.dirname(__file__), 'env_var.env'),  # App directory
    os.path.join(os.path.dirname(os.path.dirname(__file__)), 'env_var.env'),  # Root directory
]

for path in env_paths:
    if load_env_from_file(path):
        break

# Determine if we're in test mode
TESTING = 'test' in sys.argv or 'pytest' in sys.modules

# Geocoding provider (Nominatim-compatible search endpoint)
GEOCODING_API_URL = os.getenv('GEOCODING_API_URL', 'https://nominatim.openstreetmap.org/search')
GEOCODING_USER_AGENT = os.getenv('GEOCODING_USER_AGENT', 'DeliveryRouting/0.1 (route optimization service)')
GEOCODING_REQUEST_TIMEOUT = env_float('GEOCODING_REQUEST_TIMEOUT', 10.0)
GEOCODING_RESULT_LIMIT = 5

# API request settings
GEOCODING_MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # Exponential backoff
RETRY_DELAY_SECONDS = 2.0
GEOCODING_CACHE_TTL_DAYS = env_int('GEOCODING_CACHE_TTL_DAYS', 30)

# Rate limiting and batching
GEOCODING_MIN_INTERVAL_SECONDS = env_float('GEOCODING_MIN_INTERVAL_SECONDS', 0.5)
GEOCODING_BATCH_SIZE = 3
GEOCODING_BATCH_DELAY_SECONDS = 1.5
GEOCODING_BACKGROUND_WORKERS = 2

# Accuracy tiers derived from provider importance
GEOCODING_HIGH_ACCURACY_THRESHOLD = 0.7
GEOCODING_MEDIUM_ACCURACY_THRESHOLD = 0.4

# Default locations (lat, lon)
DEFAULT_CENTER = (
    env_float('DEFAULT_CENTER_LAT', 43.6532),
    env_float('DEFAULT_CENTER_LON', -79.3832),
)
DEFAULT_DEPOT = (
    env_float('DEFAULT_DEPOT_LAT', 43.6426),
    env_float('DEFAULT_DEPOT_LON', -79.3871),
)
FALLBACK_LAT_SPAN = 0.28
FALLBACK_LON_SPAN = 0.52
FALLBACK_JITTER = 0.002

# Distance estimation
DISTANCE_CACHE_TTL_HOURS = 24

# Optimizer
OPTIMIZATION_TIMEOUT_SECONDS = env_float('OPTIMIZATION_TIMEOUT_SECONDS', 30.0)
MAX_STOPS_PER_ROUTE = 100
HYBRID_CLUSTER_LIMIT = 8
CAPACITY_TOLERANCE = 1.2
WORKING_HOURS_BUFFER_HOURS = 2
TRAFFIC_REFRESH_INTERVAL_SECONDS = 300
TRAFFIC_SEED = env_int('TRAFFIC_SEED', 42)

# Route state
DEFAULT_VEHICLE_CAPACITY = 50
DEFAULT_MAX_STOPS = 20
DEFAULT_SHIFT_HOURS = 8

# Real-time reoptimization
LOCATION_CHANGE_THRESHOLD_KM = 0.5
REOPTIMIZATION_COOLDOWN_SECONDS = 120
LOW_FUEL_THRESHOLD = 0.2
REOPTIMIZATION_MAX_HOURS = 6

# Kafka driver location feed
KAFKA_BOOTSTRAP_SERVERS = os.getenv('KAFKA_BOOTSTRAP_SERVERS', 'localhost:9092')
KAFKA_DRIVER_UPDATES_TOPIC = os.getenv('KAFKA_DRIVER_UPDATES_TOPIC', 'driver-updates')
KAFKA_CONSUMER_GROUP = os.getenv('KAFKA_CONSUMER_GROUP', 'delivery-routing')
