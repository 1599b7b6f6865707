"""Exception hierarchy for KeyGate.

HTTP mapping (applied in keygate/main.py exception handlers and routers):
  InvalidEmailError     → 400 Bad Request
  PersistenceError      → 500 Internal Server Error
  QuotaInvariantError   → 500 Internal Server Error
  LoadError             → process refuses to start (lifespan raises)

Unauthenticated (401) and rate-limited (429) outcomes are gate results, not
exceptions — see keygate/service.py.
"""

from __future__ import annotations


class KeyGateError(Exception):
    """Base class for all KeyGate errors."""

    code: str = "keygate_error"

    def __init__(self, message: str = "KeyGate error") -> None:
        super().__init__(message)
        self.message = message


class InvalidEmailError(KeyGateError):
    """Raised when an issuance request carries a malformed email address."""

    code = "invalid_email"

    def __init__(self, message: str = "Invalid email address") -> None:
        super().__init__(message)


class PersistenceError(KeyGateError):
    """Raised when a snapshot write fails or exceeds the write timeout."""

    code = "persistence_error"

    def __init__(self, message: str = "Failed to persist state") -> None:
        super().__init__(message)


class LoadError(KeyGateError):
    """Raised at startup when the key store cannot be loaded.

    Fatal: the service must not serve traffic with an empty or partial
    identity store.
    """

    code = "load_error"

    def __init__(self, message: str = "Failed to load key store") -> None:
        super().__init__(message)


class QuotaInvariantError(KeyGateError):
    """Raised when an authenticated key has no quota record."""

    code = "quota_invariant_violation"

    def __init__(self, message: str = "Authenticated key has no quota record") -> None:
        super().__init__(message)
