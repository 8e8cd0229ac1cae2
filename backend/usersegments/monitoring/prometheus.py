# backend/usersegments/monitoring/prometheus.py
from prometheus_client import Counter, Gauge, Histogram


def get_http_requests_total():
    """
    Returns a singleton Counter for total HTTP requests.
    Ensures the metric is only registered once per process.
    """
    if not hasattr(get_http_requests_total, "_counter"):
        get_http_requests_total._counter = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"]
        )
    return get_http_requests_total._counter


def get_http_request_duration_seconds():
    """
    Returns a singleton Histogram for HTTP request duration.
    """
    if not hasattr(get_http_request_duration_seconds, "_histogram"):
        get_http_request_duration_seconds._histogram = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"]
        )
    return get_http_request_duration_seconds._histogram


def get_http_requests_in_progress():
    """
    Returns a singleton Gauge for in-progress HTTP requests.
    """
    if not hasattr(get_http_requests_in_progress, "_gauge"):
        get_http_requests_in_progress._gauge = Gauge(
            "http_requests_in_progress",
            "Number of HTTP requests in progress"
        )
    return get_http_requests_in_progress._gauge


def get_api_errors_total():
    """
    Returns a singleton Counter for API errors by type.
    """
    if not hasattr(get_api_errors_total, "_counter"):
        get_api_errors_total._counter = Counter(
            "api_errors_total",
            "Total count of API errors",
            ["error_type", "endpoint", "status_code"]
        )
    return get_api_errors_total._counter


def get_segment_relations_total():
    """
    Returns a singleton Counter for relation state changes.

    The operation label is one of assigned, unassigned, deactivated_with_segment
    or expired.
    """
    if not hasattr(get_segment_relations_total, "_counter"):
        get_segment_relations_total._counter = Counter(
            "segment_relations_total",
            "User-segment relations changed, by operation",
            ["operation"]
        )
    return get_segment_relations_total._counter


def get_ttl_sweeps_total():
    """
    Returns a singleton Counter for TTL sweeper ticks by outcome.
    """
    if not hasattr(get_ttl_sweeps_total, "_counter"):
        get_ttl_sweeps_total._counter = Counter(
            "segment_ttl_sweeps_total",
            "TTL sweeper ticks",
            ["outcome"]
        )
    return get_ttl_sweeps_total._counter


def get_ttl_sweep_duration_seconds():
    """
    Returns a singleton Histogram for TTL sweep duration.
    """
    if not hasattr(get_ttl_sweep_duration_seconds, "_histogram"):
        get_ttl_sweep_duration_seconds._histogram = Histogram(
            "segment_ttl_sweep_duration_seconds",
            "TTL sweeper tick duration in seconds"
        )
    return get_ttl_sweep_duration_seconds._histogram
