"""Default values shared across nurture components."""

DEFAULT_SCAN_INTERVAL = 5.0
DEFAULT_BATCH_SIZE = 50
DEFAULT_CLAIM_LEASE_SECONDS = 60.0
DEFAULT_EXECUTION_TIMEOUT_SECONDS = 30.0
DEFAULT_CONCURRENCY = 4

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.5
DEFAULT_BACKOFF_JITTER = 0.5

DEFAULT_CALL_TIMEOUT_SECONDS = 10.0
DEFAULT_TIMEZONE = "UTC"

NOTIFY_TEMPLATE_REF = "internal_notification"

TRIGGER_TYPES = (
    "subscriber_joined",
    "tag_added",
    "tag_removed",
    "form_submitted",
    "link_clicked",
    "email_opened",
    "purchase_made",
    "cart_abandoned",
    "date_based",
    "api_event",
    "manual",
    "segment_entered",
    "segment_exited",
)
