from __future__ import annotations


JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_DEAD_LETTER = "dead_letter"
JOB_STATUSES = (JOB_QUEUED, JOB_PROCESSING, JOB_COMPLETED, JOB_DEAD_LETTER)

PRIORITY_HIGH = "high"
PRIORITY_NORMAL = "normal"
PRIORITY_LOW = "low"
# Lower rank is dequeued first.
PRIORITY_RANKS: dict[str, int] = {PRIORITY_HIGH: 1, PRIORITY_NORMAL: 5, PRIORITY_LOW: 10}

FIELD_MESSAGES = "messages"
FIELD_ACCOUNT_UPDATE = "account_update"
FIELD_CAPABILITY_UPDATE = "business_capability_update"
FIELD_QUALITY_UPDATE = "phone_number_quality_update"
# Risk-bearing fields go through the kill-switch and jump the queue.
RISK_FIELDS = frozenset({FIELD_ACCOUNT_UPDATE, FIELD_CAPABILITY_UPDATE, FIELD_QUALITY_UPDATE})

DEAD_LETTER_MAX_ATTEMPTS = "max_attempts_exceeded"
DEAD_LETTER_NON_RETRYABLE = "non_retryable"
