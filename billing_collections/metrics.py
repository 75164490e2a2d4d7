from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP 5xx responses",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "billing_job_duration_seconds",
    "Billing job duration",
    ["job", "status"],
)
BATCH_ROWS = Counter(
    "billing_direct_debit_rows_total",
    "Direct-debit rows presented or imported",
    ["direction", "status"],
)


def observe_job(job_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(job=job_name, status=status).observe(duration)


def observe_batch_rows(direction: str, status: str, count: int) -> None:
    if count:
        BATCH_ROWS.labels(direction=direction, status=status).inc(count)
