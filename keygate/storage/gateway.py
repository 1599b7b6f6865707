"""PersistenceGateway — the only component that touches durable storage.

Two independent JSON documents:
  - key store   : {"<email>": "<api key>", ...}
  - quota store : {"<api key>": <request count>, ...}

Both are rewritten as whole snapshots on every mutation (no append log).
File I/O runs in a worker thread (asyncio.to_thread) so the event loop never
blocks, and every write is bounded by asyncio.wait_for(timeout=write_timeout_s).

Load semantics:
  - Key store unreadable / not JSON / wrong shape  → LoadError (fatal)
  - Key store absent                               → LoadError, unless
    initialize_missing=True (opt-in first run), in which case an empty store
    is written
  - Quota store absent / unreadable / wrong shape  → warning, empty quotas

Write semantics:
  - Snapshot is serialised before the thread hop (a mutation racing the write
    cannot tear the document).
  - Each write goes to its own temp file (tempfile.mkstemp) in the target
    directory, then os.replace()d over the target.
  - Every snapshot carries a per-document sequence number. A write that timed
    out keeps running in its thread; if it finishes after a newer snapshot has
    landed, its temp file is discarded instead of replacing the newer one.
  - Key store is chmod 0600 after every write (it holds live credentials).
  - One asyncio.Lock per document — writes to the same file never interleave.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from keygate.constants import DEFAULT_WRITE_TIMEOUT_S, KEY_STORE_FILE_MODE
from keygate.errors import LoadError, PersistenceError
from keygate.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)


@dataclass
class LoadedState:
    """Raw mappings read at startup, before reconciliation."""

    keys: dict[str, str] = field(default_factory=dict)
    quotas: dict[str, Any] = field(default_factory=dict)


class PersistenceGateway:
    """Async JSON snapshot store for API keys and request counts.

    Usage:
        gateway = PersistenceGateway("./api_keys.json", "./request_counts.json")
        state = await gateway.load_all()
        await gateway.persist_keys({"a@b.com": "6f1c..."})
        await gateway.persist_quotas({"6f1c...": 3})
    """

    def __init__(
        self,
        key_store_path: Union[str, Path],
        quota_store_path: Union[str, Path],
        write_timeout_s: float = DEFAULT_WRITE_TIMEOUT_S,
        initialize_missing: bool = False,
    ) -> None:
        self.key_store_path = Path(key_store_path).expanduser()
        self.quota_store_path = Path(quota_store_path).expanduser()
        self._write_timeout_s = write_timeout_s
        self._initialize_missing = initialize_missing
        self._key_lock = asyncio.Lock()
        self._quota_lock = asyncio.Lock()
        self._sequence = _WriteSequence()

    # ── Load ──────────────────────────────────────────────────────────────────

    async def load_all(self) -> LoadedState:
        """Load both documents. Called exactly once at startup.

        Raises:
            LoadError: If the key store cannot be read or parsed, or is absent
                       and initialize_missing is False.
        """
        keys = await self._load_keys()
        quotas = await self._load_quotas()
        logger.info(
            "State loaded",
            key_store=str(self.key_store_path),
            quota_store=str(self.quota_store_path),
            keys=len(keys),
            quotas=len(quotas),
        )
        return LoadedState(keys=keys, quotas=quotas)

    async def _load_keys(self) -> dict[str, str]:
        if not self.key_store_path.exists():
            if not self._initialize_missing:
                raise LoadError(
                    f"Key store not found: {self.key_store_path}. For a first run set "
                    "storage.initialize_missing: true or KEYGATE_INIT_STORE=true."
                )
            logger.warning(
                "Key store not found, initializing empty store",
                path=str(self.key_store_path),
            )
            try:
                await self.persist_keys({})
            except PersistenceError as exc:
                raise LoadError(f"Could not initialize key store: {exc.message}") from exc
            return {}

        try:
            raw = await asyncio.to_thread(_read_json, self.key_store_path)
        except (OSError, ValueError) as exc:
            raise LoadError(
                f"Key store {self.key_store_path} is unreadable or corrupt: {exc}"
            ) from exc

        if not isinstance(raw, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in raw.items()
        ):
            raise LoadError(
                f"Key store {self.key_store_path} must be a JSON object of "
                "email → key strings"
            )
        return raw

    async def _load_quotas(self) -> dict[str, Any]:
        try:
            raw = await asyncio.to_thread(_read_json, self.quota_store_path)
        except FileNotFoundError:
            logger.info("Quota store not found — starting with empty quotas",
                        path=str(self.quota_store_path))
            return {}
        except (OSError, ValueError) as exc:
            logger.warning(
                "Quota store unreadable — starting with empty quotas",
                path=str(self.quota_store_path),
                error=str(exc),
            )
            return {}

        if not isinstance(raw, dict):
            logger.warning(
                "Quota store is not a JSON object — starting with empty quotas",
                path=str(self.quota_store_path),
            )
            return {}
        return raw

    # ── Persist ───────────────────────────────────────────────────────────────

    async def persist_keys(self, keys: Mapping[str, str]) -> None:
        """Overwrite the key store with a full snapshot.

        Raises:
            PersistenceError: On serialisation error, OS error or timeout.
        """
        async with self._key_lock:
            await self._write(self.key_store_path, keys, mode=KEY_STORE_FILE_MODE)

    async def persist_quotas(self, quotas: Mapping[str, int]) -> None:
        """Overwrite the quota store with a full snapshot.

        Raises:
            PersistenceError: On serialisation error, OS error or timeout.
        """
        async with self._quota_lock:
            await self._write(self.quota_store_path, quotas)

    async def _write(
        self,
        path: Path,
        snapshot: Mapping[str, Any],
        mode: Optional[int] = None,
    ) -> None:
        try:
            payload = json.dumps(dict(snapshot))
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not serialise {path.name}: {exc}") from exc

        seq = self._sequence.next(path)
        try:
            with PerformanceLogger(f"write {path.name}", logger):
                await asyncio.wait_for(
                    asyncio.to_thread(_write_text, path, payload, mode, seq, self._sequence),
                    timeout=self._write_timeout_s,
                )
        except asyncio.TimeoutError as exc:
            raise PersistenceError(
                f"Timed out after {self._write_timeout_s}s writing {path}"
            ) from exc
        except OSError as exc:
            raise PersistenceError(f"Could not write {path}: {exc}") from exc


class _WriteSequence:
    """Per-document counters of issued and landed snapshot writes.

    Shared between the event loop (next) and worker threads (replace_if_newest).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._issued: dict[Path, int] = {}
        self._landed: dict[Path, int] = {}

    def next(self, path: Path) -> int:
        with self._lock:
            seq = self._issued.get(path, 0) + 1
            self._issued[path] = seq
            return seq

    def replace_if_newest(self, tmp: str, path: Path, seq: int) -> bool:
        """Move tmp over path unless a newer snapshot already landed there."""
        with self._lock:
            if seq <= self._landed.get(path, 0):
                return False
            os.replace(tmp, path)
            self._landed[path] = seq
            return True


# ─── Blocking helpers (run via asyncio.to_thread) ─────────────────────────────


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_text(
    path: Path,
    payload: str,
    mode: Optional[int],
    seq: int,
    sequence: _WriteSequence,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        if mode is not None:
            os.chmod(tmp, mode)
        if not sequence.replace_if_newest(tmp, path, seq):
            logger.warning("Discarded stale snapshot write", path=str(path), seq=seq)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)
