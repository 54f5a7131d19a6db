import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "web-relay-proxy")
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "3.0.0")

PROXY_PATH = "/" + os.environ.get("PROXY_PATH", "/browse").strip("/")
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")
SESSION_PARAM = os.environ.get("SESSION_PARAM", "session")
DEFAULT_SESSION_ID = os.environ.get("DEFAULT_SESSION_ID", "default")

PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", "30"))
MAX_REDIRECTS = int(os.getenv("MAX_REDIRECTS", "10"))

# Content cache limits (bytes / seconds)
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", str(100 * 1024 * 1024)))
CACHE_MAX_ITEM_SIZE = int(os.getenv("CACHE_MAX_ITEM_SIZE", str(5 * 1024 * 1024)))
CACHE_TTL = float(os.getenv("CACHE_TTL", "300"))
CACHE_SWEEP_INTERVAL = float(os.getenv("CACHE_SWEEP_INTERVAL", "60"))

# Browsing sessions idle out after COOKIE_MAX_AGE seconds without a request
COOKIE_MAX_AGE = float(os.getenv("COOKIE_MAX_AGE", "1800"))
COOKIE_SWEEP_INTERVAL = float(os.getenv("COOKIE_SWEEP_INTERVAL", "300"))

UPSTREAM_USER_AGENT = os.getenv(
    "UPSTREAM_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)
UPSTREAM_ACCEPT = os.getenv(
    "UPSTREAM_ACCEPT",
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8",
)
UPSTREAM_ACCEPT_LANGUAGE = os.getenv("UPSTREAM_ACCEPT_LANGUAGE", "en-US,en;q=0.9")

CORS_ALLOW_ORIGINS = [
    o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()
]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
