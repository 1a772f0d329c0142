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
CREDIT_OPERATIONS = Counter(
    "credit_operations_total",
    "Credit ledger operations",
    ["operation", "outcome"],
)
CREDITS_MOVED = Counter(
    "credits_moved_total",
    "Credits added to or removed from balances",
    ["direction"],
)


def get_route_name(scope: dict) -> str:
    route = scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return scope.get("path", "unknown")


def record_credit_operation(operation: str, outcome: str, delta: int = 0) -> None:
    CREDIT_OPERATIONS.labels(operation, outcome).inc()
    if delta > 0:
        CREDITS_MOVED.labels("in").inc(delta)
    elif delta < 0:
        CREDITS_MOVED.labels("out").inc(-delta)
