DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_RETRY_BACKOFF_BASE = 1.5
DEFAULT_RETRY_JITTER = 0.5
DEFAULT_LEASE_TTL = 60.0
