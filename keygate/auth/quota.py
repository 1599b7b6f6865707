"""Per-key admission control — fixed lifetime quota.

Each issued key owns a request counter that starts at 0 and may only grow,
one step per admitted request, up to max_requests. A key at the ceiling is
rejected forever (no reset path).

Atomicity:
  try_consume() performs check-then-increment under a threading.Lock with no
  await inside the critical section, so concurrent admissions for a key
  sitting at max_requests - 1 admit exactly one caller — whether they race on
  the event loop or from worker threads.

Persistence (write-behind):
  admit() schedules a background snapshot write and returns immediately.
  Bursts coalesce into one write task that always writes the latest counts.
  Write failures are logged and never fail the admitted request.
"""

from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from keygate.constants import MAX_REQUESTS
from keygate.errors import PersistenceError
from keygate.utils.logger import get_logger, mask_key

logger = get_logger(__name__)


class Admission(str, Enum):
    """Outcome of a single admission check."""

    ADMITTED = "admitted"
    REJECTED = "rejected"
    UNKNOWN_KEY = "unknown_key"


class QuotaPersister(Protocol):
    async def persist_quotas(self, quotas: Mapping[str, int]) -> None: ...


def reconcile_quotas(
    issued_keys: Mapping[str, str],
    raw_quotas: Mapping[str, Any],
    max_requests: int,
) -> dict[str, int]:
    """Build a consistent key → count map from the loaded documents.

    - Entries for keys that were never issued are dropped.
    - Issued keys with no entry (or a non-integer entry) start at 0.
    - Counts are clamped to [0, max_requests].
    """
    issued = set(issued_keys.values())
    counts: dict[str, int] = {}
    dropped = 0
    for key, value in raw_quotas.items():
        if key not in issued:
            dropped += 1
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            logger.warning("Ignoring non-integer request count", key=mask_key(key))
            continue
        counts[key] = min(max(value, 0), max_requests)
    for key in issued:
        counts.setdefault(key, 0)
    if dropped:
        logger.warning("Dropped request counts for unissued keys", dropped=dropped)
    return counts


class QuotaTracker:
    """Owns the key → request-count mapping."""

    def __init__(
        self,
        persister: Optional[QuotaPersister] = None,
        max_requests: int = MAX_REQUESTS,
        counts: Optional[Mapping[str, int]] = None,
    ) -> None:
        self.max_requests = max_requests
        self._persister = persister
        self._counts: dict[str, int] = dict(counts or {})
        self._lock = threading.Lock()
        self._write_lock = asyncio.Lock()
        self._dirty = False
        self._write_task: Optional[asyncio.Task[None]] = None

    def __contains__(self, key: object) -> bool:
        return key in self._counts

    def __len__(self) -> int:
        return len(self._counts)

    # ── Admission ─────────────────────────────────────────────────────────────

    def try_consume(self, key: str) -> Admission:
        """Atomically check the ceiling and count one request against key.

        No I/O. Unknown keys are a no-op signalled as UNKNOWN_KEY.
        """
        with self._lock:
            count = self._counts.get(key)
            if count is None:
                return Admission.UNKNOWN_KEY
            if count >= self.max_requests:
                return Admission.REJECTED
            self._counts[key] = count + 1
            return Admission.ADMITTED

    async def admit(self, key: str) -> Admission:
        """Admit or reject one request for key and schedule persistence."""
        result = self.try_consume(key)
        if result is Admission.ADMITTED:
            self._schedule_write()
        elif result is Admission.REJECTED:
            logger.info("Quota exhausted", key=mask_key(key), max_requests=self.max_requests)
        return result

    def count_for(self, key: Optional[str]) -> int:
        """Return the consumed count for key, 0 when unknown."""
        if not key:
            return 0
        with self._lock:
            return self._counts.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    # ── Registration (issuance only) ──────────────────────────────────────────

    def register(self, key: str) -> None:
        """Create the zero counter for a freshly issued key."""
        with self._lock:
            self._counts.setdefault(key, 0)

    # ── Persistence ───────────────────────────────────────────────────────────

    async def persist(self, pending: Optional[Mapping[str, int]] = None) -> None:
        """Write the current counts now, optionally merged with pending entries.

        The snapshot is taken after the write lock is acquired, so a write
        can never replace newer counts with older ones.

        Raises:
            PersistenceError: Propagated from the persister.
        """
        if self._persister is None:
            return
        async with self._write_lock:
            snapshot = self.snapshot()
            if pending:
                for key, value in pending.items():
                    snapshot.setdefault(key, value)
            await self._persister.persist_quotas(snapshot)

    def _schedule_write(self) -> None:
        if self._persister is None:
            return
        self._dirty = True
        if self._write_task is None or self._write_task.done():
            self._write_task = asyncio.get_running_loop().create_task(self._write_behind())

    async def _write_behind(self) -> None:
        """Fire-and-forget writer. Loops until no admission is left unwritten."""
        while self._dirty:
            self._dirty = False
            try:
                await self.persist()
            except PersistenceError as exc:
                logger.error("Failed to persist request counts", error=exc.message)

    async def flush(self) -> None:
        """Wait for any in-flight background write to land."""
        task = self._write_task
        if task is not None and not task.done():
            await task
