"""Centralized constants for Veilguard system configuration.

Thresholds that operators tune live in the YAML files under ``config/``;
the values here are structural defaults.
"""


# ===== AUDIT & RETENTION =====
class AuditConstants:
    HASH_ALGORITHM = "sha256"
    WRITE_MAX_ATTEMPTS = 3
    WRITE_BACKOFF_SECONDS = 0.05
    WRITE_MAX_BACKOFF_SECONDS = 1.0

    # Retention horizons by severity (None = keep indefinitely)
    RETENTION_DAYS_INFO = 90
    RETENTION_DAYS_WARNING = 90
    RETENTION_DAYS_ERROR = 365
    RETENTION_DAYS_CRITICAL = None
    RETENTION_DAYS_CLOSED_FLAGS = 90
    RETENTION_DAYS_ACTION_RECORDS = 90
    RETENTION_DAYS_ANOMALY_SCORES = 90
    RETENTION_DAYS_REQUEST_BUCKETS = 2


# ===== DEVICES & SESSIONS =====
class DeviceConstants:
    TOKEN_MIN_LENGTH = 3
    TOKEN_MAX_LENGTH = 128
    DEFAULT_TOKEN_PATTERN = r"^[A-Za-z0-9_-]+$"
    UUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
    REQUEST_BUCKET_SECONDS = 300

    # Suspicion heuristic
    SUSPICIOUS_FAILED_AUTHS_PER_HOUR = 5
    SUSPICIOUS_REQUEST_COUNT = 1000


class SessionConstants:
    DEFAULT_TIMEOUT_HOURS = 24
    REFRESH_AHEAD_SECONDS = 3600
    REFRESH_DEBOUNCE_SECONDS = 60
    CAS_MAX_ATTEMPTS = 5


# ===== ANOMALY DETECTION =====
class DetectionConstants:
    SCORE_MIN = 0
    SCORE_MAX = 100
    BASELINE_WINDOW_DAYS = 30
    DEFAULT_BASELINE_REQUESTS_PER_HOUR = 10.0
    BASELINE_CACHE_SECONDS = 300
    RECENT_WINDOW_SECONDS = 3600
    EVERY_N_REQUESTS = 100


# ===== RATE LIMITING & CHURN =====
class RateLimitConstants:
    LEDGER_CAS_MAX_ATTEMPTS = 16
    CHURN_WINDOW_HOURS = 24
    CHURN_TARGET_MIN_ACTIONS = 3
    CHURN_FLAG_MIN_TARGETS = 5
    CHURN_ACTION_TYPES = ("follow", "unfollow")


# ===== DATA & QUERY LIMITS =====
class DataConstants:
    DEFAULT_QUERY_LIMIT = 100
    PENDING_FLAGS_LIMIT = 50
    AUDIT_SCAN_LIMIT = 5000


# ===== PERFORMANCE =====
class PerformanceConstants:
    CHECK_BUDGET_MS = 50
    EXECUTOR_MAX_WORKERS = 8
