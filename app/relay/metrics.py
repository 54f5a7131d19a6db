from prometheus_client import Counter

CACHE_LOOKUPS = Counter(
    "relay_cache_lookups_total",
    "Content cache lookups by result",
    ["result"],
)

UPSTREAM_REQUESTS = Counter(
    "relay_upstream_requests_total",
    "Upstream fetches by outcome",
    ["outcome"],
)
