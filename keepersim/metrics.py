from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

# Keep metrics module-level singletons
upkeeps_registered_total = Counter("upkeeps_registered_total", "Total upkeeps registered via the control plane")
upkeeps_unregistered_total = Counter("upkeeps_unregistered_total", "Total upkeeps unregistered")
active_upkeeps = Gauge("active_upkeeps", "Number of upkeeps currently being watched")
error_count = Counter("error_count", "Total errors returned by the control plane")
request_latency_seconds = Histogram("request_latency_seconds", "HTTP request latency seconds")

# Engine metrics
checks_total = Counter("checks_total", "Check calls made against upkeep contracts", ["convention"])
performs_total = Counter("performs_total", "Confirmed performUpkeep transactions", ["trigger"])
perform_latency_seconds = Histogram("perform_latency_seconds", "Time from perform submission to confirmation")
ticks_skipped_total = Counter("ticks_skipped_total", "Interval ticks dropped while a cycle was in flight")
duplicate_events_total = Counter("duplicate_events_total", "Log deliveries dropped as already handled")
probe_fallbacks_total = Counter("probe_fallbacks_total", "checkLog probes that fell back to checkUpkeep")
execution_errors_total = Counter("execution_errors_total", "Failed check/perform cycles", ["trigger"])


def metrics_response():
    # Return prometheus metrics as a Response
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
