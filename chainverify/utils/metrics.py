from prometheus_client import Counter, Histogram, Gauge

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path"],
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests in progress",
)

VERIFICATION_ATTEMPTS = Counter(
    "payment_verification_attempts_total",
    "Chain verification attempts",
    ["symbol", "outcome"],
)
PAYMENT_TRANSITIONS = Counter(
    "payment_status_transitions_total",
    "Payment status transitions",
    ["status"],
)
VERIFICATION_TICK_DURATION = Histogram(
    "payment_verification_tick_seconds",
    "Duration of one scheduler tick",
)
FRAUD_SCORE = Histogram(
    "payment_fraud_score",
    "Fraud score assigned at submission",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)


def get_route_name(scope: dict) -> str:
    route = scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return scope.get("path", "unknown")
