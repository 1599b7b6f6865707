"""Shared constants for KeyGate.

Quota ceilings, storage defaults and timeouts used across modules are defined
here. No magic numbers in other modules — import from here.
"""

# ─── Quota ────────────────────────────────────────────────────────────────────

# Lifetime number of admitted requests per API key.
# Once a key's count reaches this value every further request is rejected
# with HTTP 429; there is no reset path.
MAX_REQUESTS: int = 10

# ─── Persistence ──────────────────────────────────────────────────────────────

# Default on-disk locations of the two JSON documents (relative to the working
# directory unless storage paths are overridden in config or KEYGATE_DATA_DIR).
DEFAULT_KEY_STORE_PATH: str = "./api_keys.json"
DEFAULT_QUOTA_STORE_PATH: str = "./request_counts.json"

# Upper bound on a single snapshot write. A write that takes longer is
# reported as a PersistenceError instead of hanging the request path.
DEFAULT_WRITE_TIMEOUT_S: float = 5.0

# File mode applied to the key store after every write (owner read/write only).
KEY_STORE_FILE_MODE: int = 0o600

# ─── HTTP ─────────────────────────────────────────────────────────────────────

DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 3000

# Per-client cap on key issuance requests (slowapi rate string).
DEFAULT_ISSUANCE_RATE: str = "20/minute"

# Header consulted for the API key when the apiKey query parameter is absent.
API_KEY_HEADER: str = "X-API-Key"
