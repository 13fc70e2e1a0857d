from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

API_REQUESTS = Counter(
    "boxreg_api_requests_total",
    "Total API requests",
    ["operation", "outcome"],  # outcome: ok or the error kind
)

DNS_LOOKUPS = Counter(
    "boxreg_dns_lookups_total",
    "Total PowerDNS lookups",
    ["qtype", "answered"],
)

REQUEST_DURATION = Histogram(
    "boxreg_request_duration_seconds",
    "API request latency",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
