"""Shared defaults for runwire."""

DEFAULT_CLAIM_TIMEOUT_SECONDS = 60
DEFAULT_GRACE_PERIOD_SECONDS = 60
DEFAULT_RUN_TIMEOUT_MS = 300_000
DEFAULT_TRANSITION_RETRIES = 3

# Events buffered per in-memory subscriber before new ones are dropped
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000

# OAuth tokens expiring within this window are refreshed before use
DEFAULT_REFRESH_MARGIN_SECONDS = 300
DEFAULT_OAUTH_HTTP_TIMEOUT = 10.0

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///runwire.db"

BLANK_MESSAGE = "This field can't be blank."
