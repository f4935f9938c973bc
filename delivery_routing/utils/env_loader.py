"""
Environment variable loading utility.

Reads simple KEY=VALUE files so local deployments can configure the
geocoding provider, Kafka and routing defaults without exporting variables.
"""
import os
import logging

logger = logging.getLogger(__name__)


def load_env_from_file(file_path, override=False):
    """
    Load environment variables from a file.

    Blank lines, comments and lines without '=' are skipped. Surrounding
    quotes on values are stripped. Existing variables are kept unless
    override is set.

    Args:
        file_path: Path to the environment variable file.
        override: Replace variables already present in the environment.

    Returns:
        True if file was loaded successfully, False otherwise.
    """
    if not os.path.exists(file_path):
        logger.debug(f"Environment file not found: {file_path}")
        return False

    loaded = 0
    try:
        with open(file_path, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#') or '=' not in line:
                    continue

                key, value = line.split('=', 1)
                key = key.strip()
                value = value.strip().strip('"').strip("'")
                if not override and key in os.environ:
                    continue
                os.environ[key] = value
                loaded += 1

        logger.info(f"Loaded {loaded} environment variables from {file_path}")
        return True
    except OSError as e:
        logger.error(f"Error loading environment variables from {file_path}: {str(e)}")
        return False


def env_float(name, default):
    """Read a float from the environment, falling back to default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid float for {name}: {raw!r}; using {default}")
        return default


def env_int(name, default):
    """Read an int from the environment, falling back to default on bad input."""
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid int for {name}: {raw!r}; using {default}")
        return default
