from prometheus_client import Counter, Gauge, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "tutor_memory_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "tutor_memory_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Pipeline metrics
MEMORY_SAVES_TOTAL = Counter(
    "tutor_memory_saves_total",
    "Memory save requests by outcome",
    ["outcome"],
)
MEMORY_SUMMARIES_TOTAL = Counter(
    "tutor_memory_summaries_total",
    "Summarizer invocations by status (ok|fallback)",
    ["status"],
)
SUMMARY_SECONDS = Histogram(
    "tutor_memory_summary_seconds",
    "Duration of summarizer completion calls in seconds",
)

# Job metrics
MEMORY_JOBS_TOTAL = Counter(
    "tutor_memory_jobs_total",
    "Memory job outcomes",
    ["status"],
)
MEMORY_JOB_SECONDS = Histogram(
    "tutor_memory_job_seconds",
    "Duration of memory jobs in seconds",
)
MEMORY_JOB_RETRIES_TOTAL = Counter(
    "tutor_memory_job_retries_total",
    "Memory job retries",
)
MEMORY_ENQUEUE_LAT_SECONDS = Histogram(
    "tutor_memory_enqueue_latency_seconds",
    "Latency from enqueue to dequeue in seconds",
)
MEMORY_QUEUE_DEPTH = Gauge(
    "tutor_memory_queue_depth",
    "Memory job queue depth (in-memory provider only)",
    ["provider"],
)

# SQS client metrics
SQS_SEND_SECONDS = Histogram("tutor_memory_sqs_send_seconds", "Duration of SQS send_message in seconds")
SQS_RECEIVE_SECONDS = Histogram("tutor_memory_sqs_receive_seconds", "Duration of SQS receive_message in seconds")
SQS_ENQUEUED_TOTAL = Counter("tutor_memory_sqs_messages_enqueued_total", "SQS messages enqueued", ["status"])
SQS_POLLED_TOTAL = Counter("tutor_memory_sqs_messages_polled_total", "SQS poll outcomes", ["outcome"])
SQS_DELETED_TOTAL = Counter("tutor_memory_sqs_messages_deleted_total", "SQS message deletions", ["status"])
SQS_VISIBILITY_TOTAL = Counter("tutor_memory_sqs_visibility_changes_total", "SQS visibility changes", ["status"])
