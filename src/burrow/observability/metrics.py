from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

TUNNEL_CONNECTIONS = Counter(
    "burrow_tunnel_connections_total",
    "Total tunnel connections",
    ["outcome"],  # outcome: registered/rejected
)

HTTP_REQUESTS = Counter(
    "burrow_http_requests_total",
    "Total public HTTP requests",
    ["method", "status"],
)

BYTES_TRANSFERRED = Counter(
    "burrow_bytes_total",
    "Body bytes relayed through tunnels",
    ["direction"],  # direction: in/out
)

PROTOCOL_ERRORS = Counter(
    "burrow_protocol_errors_total",
    "Tunnel frames that could not be decoded",
)

ACTIVE_TUNNELS = Gauge(
    "burrow_active_tunnels",
    "Current registered tunnels",
)

PENDING_REQUESTS = Gauge(
    "burrow_pending_requests",
    "Public requests waiting for a tunnel response",
)

REQUEST_DURATION = Histogram(
    "burrow_request_duration_seconds",
    "Public request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
