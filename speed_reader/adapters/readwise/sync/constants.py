"""Constants for Readwise Reader synchronization."""

# Length of one rate-limit budget window.
WINDOW_SECONDS = 60

PAGE_CURSOR_PREFIX = "page:"
UPDATED_AFTER_PREFIX = "updated:"
CURSOR_SEGMENT_SEPARATOR = "|"

MODE_INITIAL = "initial"
MODE_INCREMENTAL = "incremental"

# Run outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_DEFERRED = "deferred"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_BUDGET_EXHAUSTED = "budget_exhausted"

# Back-off after a failed run, and the age at which a held lock is presumed dead.
FAILURE_BACKOFF_SECONDS = 60
STALE_LOCK_SECONDS = 300
