"""Prometheus metrics for the monitoring engine."""

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("pricewatch", "Price Watch application info")
app_info.info({"version": "0.1.0", "name": "price-watch"})

# Check cycle metrics
checks_total = Counter(
    "pricewatch_checks_total",
    "Total number of product check cycles by outcome",
    ["outcome"],  # accepted, needs_review, extraction_failed, skipped, error
)

check_duration_seconds = Histogram(
    "pricewatch_check_duration_seconds",
    "Time spent running one fetch-arbitrate-record cycle",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

fetch_errors_total = Counter(
    "pricewatch_fetch_errors_total",
    "Total number of failed page fetches",
    ["error_type"],
)

fetch_duration_seconds = Histogram(
    "pricewatch_fetch_duration_seconds",
    "Time spent fetching product pages",
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

strategy_candidates_total = Counter(
    "pricewatch_strategy_candidates_total",
    "Price candidates produced per extraction strategy",
    ["method"],
)

strategy_failures_total = Counter(
    "pricewatch_strategy_failures_total",
    "Extraction strategy failures and timeouts",
    ["method", "reason"],
)

reviews_raised_total = Counter(
    "pricewatch_reviews_raised_total",
    "Number of products moved into the pending review state",
)

stale_writes_total = Counter(
    "pricewatch_stale_writes_total",
    "History writes rejected because they violated ordering",
    ["table"],
)

# Notification metrics
notifications_triggered_total = Counter(
    "pricewatch_notifications_triggered_total",
    "Notification rules that fired",
    ["notification_type"],
)

notifications_sent_total = Counter(
    "pricewatch_notifications_sent_total",
    "Channel delivery attempts",
    ["channel", "status"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "pricewatch_scheduler_runs_total",
    "Total number of due-product scans",
    ["status"],
)

scheduler_last_run_timestamp = Gauge(
    "pricewatch_scheduler_last_run_timestamp",
    "Timestamp of last due-product scan",
)

checks_in_flight = Gauge(
    "pricewatch_checks_in_flight",
    "Check cycles currently running",
)

# Encryption metrics
encryption_errors_total = Counter(
    "pricewatch_encryption_errors_total",
    "Errors encrypting or decrypting secret columns",
    ["operation"],
)

# LLM metrics
llm_calls_total = Counter(
    "pricewatch_llm_calls_total",
    "Chat completion calls by purpose and status",
    ["purpose", "status"],
)

llm_call_duration_seconds = Histogram(
    "pricewatch_llm_call_duration_seconds",
    "Time spent waiting for chat completions",
    ["purpose"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)
