"""KeyGate key management and quota enforcement package.

Public API:
  - KeyStore            — idempotent issuance + authentication
  - QuotaTracker        — atomic per-key check-and-increment
  - Admission           — ADMITTED / REJECTED / UNKNOWN_KEY
  - reconcile_quotas()  — consistent counts from loaded documents
  - validate_email()    — basic email shape check
  - generate_api_key()  — random UUID4 key
"""

from __future__ import annotations

from keygate.auth.keys import KeyStore, generate_api_key, validate_email
from keygate.auth.quota import Admission, QuotaTracker, reconcile_quotas

__all__ = [
    "Admission",
    "KeyStore",
    "QuotaTracker",
    "generate_api_key",
    "reconcile_quotas",
    "validate_email",
]
