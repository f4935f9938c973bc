# Earth geometry
EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.0

# Distance blending thresholds (km)
SHORT_DISTANCE_KM = 2.0
LONG_DISTANCE_KM = 10.0

# Road inflation factors applied to straight-line estimates
SHORT_ROAD_FACTOR = 1.1
LONG_ROAD_FACTOR = 1.3

# Average speeds by road type (km/h)
ROAD_SPEEDS_KMH = {
    'highway': 80.0,
    'arterial': 50.0,
    'local': 40.0,
    'residential': 30.0,
    'default': 35.0,
}

# Stop/turn buffer: minutes per km, capped
BUFFER_MINUTES_PER_KM = 2.0
MAX_BUFFER_MINUTES = 10.0

# Bounds for valid distance values
MAX_SAFE_DISTANCE = 1e6        # Maximum safe distance value (km)
MIN_SAFE_DISTANCE = 0.0        # Minimum safe distance value (km)

# Bounds for valid time values
MAX_SAFE_TIME = 7 * 24 * 60    # Maximum safe route time (minutes)
MIN_SAFE_TIME = 0.0

# --- Delivery Priorities ---
PRIORITY_URGENT = 'urgent'
PRIORITY_HIGH = 'high'
PRIORITY_NORMAL = 'normal'
PRIORITY_LOW = 'low'
PRIORITIES = (PRIORITY_URGENT, PRIORITY_HIGH, PRIORITY_NORMAL, PRIORITY_LOW)
DEFAULT_DELIVERY_PRIORITY = PRIORITY_NORMAL

# Urgency score used by the time-window heuristic
PRIORITY_URGENCY = {
    PRIORITY_URGENT: 100,
    PRIORITY_HIGH: 75,
    PRIORITY_NORMAL: 50,
    PRIORITY_LOW: 25,
}

# Weight used by the hybrid heuristic
PRIORITY_WEIGHTS = {
    PRIORITY_URGENT: 4.0,
    PRIORITY_HIGH: 2.0,
    PRIORITY_NORMAL: 1.0,
    PRIORITY_LOW: 0.5,
}

# Deadline proximity bonus: (hours remaining below, bonus)
DEADLINE_BONUSES = ((1.0, 50), (2.0, 30), (4.0, 15))

DEFAULT_SERVICE_TIME_MINUTES = 10.0
DEFAULT_PACKAGE_WEIGHT = 1.0

# Algorithm names
ALGORITHM_NEAREST = 'nearest_neighbor_from_start'
ALGORITHM_TIME_WINDOW = 'time_window_priority'
ALGORITHM_HYBRID = 'hybrid'
ALGORITHM_SEQUENTIAL = 'simple_sequential'
ALGORITHM_FALLBACK = 'fallback_sequential'

# Stop / route / history states
STOP_PENDING = 'pending'
STOP_COMPLETED = 'completed'
STOP_FAILED = 'failed'
STOP_CANCELLED = 'cancelled'
TERMINAL_STOP_STATUSES = (STOP_COMPLETED, STOP_FAILED, STOP_CANCELLED)

ROUTE_ACTIVE = 'active'
ROUTE_COMPLETED = 'completed'
ROUTE_CANCELLED = 'cancelled'

HISTORY_CREATED = 'created'
HISTORY_UPDATED = 'updated'
HISTORY_COMPLETED = 'completed'
HISTORY_CANCELLED = 'cancelled'
HISTORY_RECALCULATED = 'recalculated'

# Trigger priorities, ordered
TRIGGER_LOW = 'low'
TRIGGER_MEDIUM = 'medium'
TRIGGER_HIGH = 'high'
TRIGGER_CRITICAL = 'critical'
