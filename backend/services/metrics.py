"""Prometheus metrics shared by the request pipeline."""

from prometheus_client import Counter, Gauge, Histogram

RENDERS_TOTAL = Counter(
    "diagram_renders_total",
    "Render calls to the rendering engine by diagram type and outcome",
    ["diagram_type", "outcome"],
)
RENDER_LATENCY_SECONDS = Histogram(
    "diagram_render_latency_seconds",
    "Latency of render calls to the rendering engine",
    ["diagram_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)
RENDERS_IN_FLIGHT = Gauge(
    "diagram_renders_in_flight",
    "Render calls currently holding a concurrency slot",
)
SECURITY_FINDINGS_TOTAL = Counter(
    "security_findings_total",
    "Security scanner findings by rule and severity",
    ["rule", "severity"],
)
RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "rate_limit_decisions_total",
    "Admission decisions taken by the rate controller",
    ["decision"],
)
DEPENDENCY_UP = Gauge(
    "dependency_up",
    "1 when the dependency's last health probe succeeded, else 0",
    ["dependency"],
)
