"""Prometheus metrics."""

from .metrics import API_REQUESTS, DNS_LOOKUPS, REQUEST_DURATION, generate_metrics, get_content_type

__all__ = [
    "API_REQUESTS",
    "DNS_LOOKUPS",
    "REQUEST_DURATION",
    "generate_metrics",
    "get_content_type",
]
