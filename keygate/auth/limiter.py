"""Shared per-client rate limiter for KeyGate issuance endpoints.

Uses slowapi (Starlette-compatible rate limiting) keyed by client address to
stop a single caller from minting keys for arbitrary addresses in a tight
loop. This is independent of the per-key lifetime quota in quota.py.

The Limiter instance is created here and shared between:
  - keygate/auth/router.py  (route decorators)
  - keygate/main.py         (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from keygate.constants import DEFAULT_ISSUANCE_RATE

# Shared by main.py and auth/router.py
limiter = Limiter(key_func=get_remote_address)

# Effective issuance rate. Written once by the lifespan from
# config.limits.issuance_rate, before the app is marked ready.
_issuance_rate: str = DEFAULT_ISSUANCE_RATE


def set_issuance_rate(rate: str) -> None:
    global _issuance_rate
    _issuance_rate = rate


def issuance_rate() -> str:
    """Limit provider for slowapi (re-evaluated on every request)."""
    return _issuance_rate
