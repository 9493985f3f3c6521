"""
Shared constants for the generation scheduler.

Runtime-tunable values live in config.py; the numbers here are the defaults
used when a component is built without an app config.
"""

# Two titles at or above this normalized Levenshtein similarity are duplicates
DUPLICATE_SIMILARITY_THRESHOLD = 0.80

# Hex characters kept from the sha1 of a normalized title
TREND_ID_LENGTH = 16

DEFAULT_DAILY_ARTICLE_SLOTS = 24
DEFAULT_STALE_JOB_MINUTES = 10
DEFAULT_MAX_JOB_RETRIES = 2
DEFAULT_MIN_QUALITY_SCORE = 60
DEFAULT_MIN_ARTICLE_WORDS = 150
DEFAULT_PROCESSED_TOPIC_TTL_HOURS = 48

# Quota usage status bands, as a share of the monthly ceiling
QUOTA_WARNING_RATIO = 0.7
QUOTA_CRITICAL_RATIO = 0.9

QUOTA_PERIOD_DAY = 'day'
QUOTA_PERIOD_MONTH = 'month'

# Tick result statuses
TICK_GENERATED = 'generated'
TICK_REJECTED = 'rejected'
TICK_FAILED = 'failed'
TICK_IDLE = 'idle'
TICK_DEGRADED = 'degraded'
TICK_ERROR = 'error'

# Reasons attached to an idle tick
REASON_NO_DUE_JOB = 'no_due_job'
REASON_OUTSIDE_ACTIVE_HOURS = 'outside_active_hours'
REASON_QUOTA_EXHAUSTED = 'quota_exhausted'
REASON_SCHEDULER_STOPPED = 'scheduler_stopped'
REASON_CLAIM_LOST = 'claim_lost'
REASON_NO_PLAN = 'no_plan'

DEFAULT_CATEGORY = 'general'
