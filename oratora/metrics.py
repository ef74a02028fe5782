from prometheus_client import Counter, Gauge, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "oratora_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "oratora_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Evaluation queue
EVAL_JOB_SECONDS = Histogram(
    "oratora_evaluation_job_seconds",
    "Duration of one scoring call in seconds",
    ["game_type"],
)
EVAL_ENQUEUE_LAT_SECONDS = Histogram(
    "oratora_evaluation_enqueue_latency_seconds",
    "Latency from enqueue to dequeue in seconds",
)
EVAL_JOBS_TOTAL = Counter(
    "oratora_evaluation_jobs_total",
    "Evaluation job outcomes",
    ["game_type", "status"],
)
EVAL_QUEUE_DEPTH = Gauge(
    "oratora_evaluation_queue_depth",
    "Evaluation queue depth",
)
EVAL_SESSIONS_COMPLETED_TOTAL = Counter(
    "oratora_sessions_completed_total",
    "Sessions that reached a terminal status",
    ["game_type", "status"],
)

# Retention
SESSIONS_EVICTED_TOTAL = Counter(
    "oratora_sessions_evicted_total",
    "Registry entries removed by the retention sweeper",
)
AUDIO_FILES_EVICTED_TOTAL = Counter(
    "oratora_audio_files_evicted_total",
    "Audio blobs removed by the retention sweeper",
)

# Session store mirror
STORE_MIRROR_TOTAL = Counter(
    "oratora_session_store_mirror_total",
    "Session store mirror outcomes",
    ["operation", "outcome"],
)
