import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _int_setting(key: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}")
    if value < minimum:
        raise RuntimeError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float_setting(key: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number, got {raw!r}")
    if value < minimum:
        raise RuntimeError(f"{key} must be >= {minimum}, got {value}")
    return value


def _bool_setting(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Environment
ENVIRONMENT = os.environ.get('ENVIRONMENT', 'production')
DEBUG = _bool_setting('DEBUG', ENVIRONMENT == 'development')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
SERVICE_NAME = "Diagram Gateway"
SERVICE_VERSION = "2.0.0"

# CORS
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', 'http://localhost:9002').split(',')

# Rendering engine
RENDER_ENGINE_URL = os.environ.get('RENDER_ENGINE_URL', 'http://kroki-service:8000').rstrip('/')
RENDER_TIMEOUT_SECONDS = _float_setting('RENDER_TIMEOUT_SECONDS', 30.0, minimum=0.1)
MAX_CONCURRENT_RENDERS = _int_setting('MAX_CONCURRENT_RENDERS', 16, minimum=1)
MAX_RESPONSE_BYTES = _int_setting('MAX_RESPONSE_BYTES', 10 * 1024 * 1024, minimum=1)
USER_AGENT = f"Diagram-Gateway/{SERVICE_VERSION}"

# Input limits
MAX_SOURCE_LENGTH = _int_setting('MAX_SOURCE_LENGTH', 50000, minimum=1)
MAX_BATCH_ITEMS = _int_setting('MAX_BATCH_ITEMS', 10, minimum=1)

# Rate limiting
RATE_LIMIT_WINDOW_SECONDS = _float_setting('RATE_LIMIT_WINDOW_SECONDS', 60.0, minimum=1.0)
RATE_LIMIT_MAX_REQUESTS = _int_setting('RATE_LIMIT_MAX_REQUESTS', 100, minimum=1)
RATE_WINDOW_IDLE_SECONDS = _float_setting('RATE_WINDOW_IDLE_SECONDS', 600.0, minimum=1.0)
SPEED_LIMIT_DELAY_AFTER = _int_setting('SPEED_LIMIT_DELAY_AFTER', 80)
SPEED_LIMIT_DELAY_MS = _int_setting('SPEED_LIMIT_DELAY_MS', 100)
SPEED_LIMIT_MAX_DELAY_MS = _int_setting('SPEED_LIMIT_MAX_DELAY_MS', 2000)
TRUST_PROXY_HEADERS = _bool_setting('TRUST_PROXY_HEADERS', False)
RATE_LIMITED_PATHS = ("/generate", "/generate/batch", "/validate")

# Security scanning
SECURITY_BLOCK_SEVERITY = os.environ.get('SECURITY_BLOCK_SEVERITY', 'high').lower()
if SECURITY_BLOCK_SEVERITY not in ("low", "medium", "high"):
    raise RuntimeError("SECURITY_BLOCK_SEVERITY must be one of: low, medium, high")

# Health polling
HEALTH_POLL_INTERVAL_SECONDS = _float_setting('HEALTH_POLL_INTERVAL_SECONDS', 30.0, minimum=1.0)
HEALTH_CHECK_TIMEOUT_SECONDS = _float_setting('HEALTH_CHECK_TIMEOUT_SECONDS', 3.0, minimum=0.1)
HEALTH_FAILURE_THRESHOLD = _int_setting('HEALTH_FAILURE_THRESHOLD', 1, minimum=1)
RATE_WINDOW_EVICTION_INTERVAL_SECONDS = 60

if HEALTH_CHECK_TIMEOUT_SECONDS >= RENDER_TIMEOUT_SECONDS:
    raise RuntimeError("HEALTH_CHECK_TIMEOUT_SECONDS must be shorter than RENDER_TIMEOUT_SECONDS")


def _parse_extra_health_checks(raw: str) -> dict:
    checks = {}
    for item in raw.split(','):
        item = item.strip()
        if not item:
            continue
        name, sep, url = item.partition('=')
        if not sep or not name.strip() or not url.strip():
            raise RuntimeError(f"EXTRA_HEALTH_CHECKS entry must look like name=url, got {item!r}")
        checks[name.strip()] = url.strip()
    return checks


EXTRA_HEALTH_CHECKS = _parse_extra_health_checks(os.environ.get('EXTRA_HEALTH_CHECKS', ''))
