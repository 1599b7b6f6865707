"""KeyGate API key issuance and authentication.

Implements:
  - validate_email()   — basic syntactic email shape check
  - generate_api_key() — random UUID4 string (122 random bits)
  - KeyStore           — email → key map with key → email secondary index

Issuance is idempotent per email: the first call for an address creates a key,
every later call returns that same key. A new key is only committed to memory
after BOTH the key store and the quota store have been written, so a caller
never receives a key that was not durably recorded.

Key uniqueness is statistical (UUID4 collision probability is negligible), not
an enforced constraint. issue() still redraws if a fresh key is already
indexed.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from typing import Mapping, Optional, Protocol

from keygate.auth.quota import QuotaTracker
from keygate.errors import InvalidEmailError, PersistenceError
from keygate.utils.logger import get_logger, mask_key

logger = get_logger(__name__)

# Local part: dot-separated atoms without specials/whitespace, or a quoted
# string. Domain: anything non-empty without whitespace or '@'.
_EMAIL_RE = re.compile(
    r'(?:[^<>()\[\]\\.,;:\s@"]+(?:\.[^<>()\[\]\\.,;:\s@"]+)*|".+")@[^\s@]+'
)


def validate_email(email: object) -> bool:
    """Return True if email has a basic local-part@domain shape."""
    return isinstance(email, str) and _EMAIL_RE.fullmatch(email) is not None


def generate_api_key() -> str:
    """Generate a new opaque API key (random UUID4, canonical string form)."""
    return str(uuid.uuid4())


class KeyPersister(Protocol):
    async def persist_keys(self, keys: Mapping[str, str]) -> None: ...


class KeyStore:
    """Owns the email → key mapping.

    Usage:
        store = KeyStore(gateway, quotas, records=state.keys)
        key = await store.issue("a@b.com")
        store.authenticate(key)  # True
    """

    def __init__(
        self,
        persister: KeyPersister,
        quotas: QuotaTracker,
        records: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._persister = persister
        self._quotas = quotas
        self._by_email: dict[str, str] = dict(records or {})
        self._by_key: dict[str, str] = {key: email for email, key in self._by_email.items()}
        self._issue_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._by_email)

    def key_for(self, email: str) -> Optional[str]:
        return self._by_email.get(email)

    def snapshot(self) -> dict[str, str]:
        return dict(self._by_email)

    # ── Authentication ────────────────────────────────────────────────────────

    def authenticate(self, candidate: object) -> bool:
        """Return True iff candidate exactly matches an issued key.

        Absent, empty or non-string input is simply not authenticated.
        """
        if not isinstance(candidate, str) or not candidate:
            return False
        return candidate in self._by_key

    # ── Issuance ──────────────────────────────────────────────────────────────

    async def issue(self, email: str) -> str:
        """Return the key bound to email, creating and persisting it on first use.

        Raises:
            InvalidEmailError: If email fails the shape check (no state change).
            PersistenceError:  If either store write fails. Nothing is committed
                               in memory and no key is returned.
        """
        if not validate_email(email):
            raise InvalidEmailError()

        existing = self._by_email.get(email)
        if existing is not None:
            logger.debug("API key reused", key=mask_key(existing))
            return existing

        async with self._issue_lock:
            # Re-check: another issuance for the same email may have committed
            # while this one waited on the lock.
            existing = self._by_email.get(email)
            if existing is not None:
                return existing

            key = generate_api_key()
            while key in self._by_key:
                key = generate_api_key()

            pending_keys = dict(self._by_email)
            pending_keys[email] = key

            await self._persister.persist_keys(pending_keys)
            try:
                await self._quotas.persist(pending={key: 0})
            except PersistenceError:
                await self._restore_key_store()
                raise

            self._by_email[email] = key
            self._by_key[key] = email
            self._quotas.register(key)

        logger.info("API key issued", key=mask_key(key))
        return key

    async def _restore_key_store(self) -> None:
        """Best-effort rewrite of the committed key snapshot after a failed issuance."""
        logger.warning("Rolling back key issuance after quota write failure")
        try:
            await self._persister.persist_keys(self.snapshot())
        except PersistenceError as exc:
            logger.error("Key store rollback failed", error=exc.message)
