"""KeyGateService — the single owner of KeyGate's mutable state.

Constructed once during application lifespan startup (see keygate/main.py) and
stored on ``app.state.service``. Routes reach it through the ``get_service``
dependency; nothing in KeyGate keeps state in module globals.

Composition:
  PersistenceGateway ← QuotaTracker ← KeyStore
                 ↖_____________________↙
                        KeyGateService
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from keygate.auth.keys import KeyStore
from keygate.auth.quota import Admission, QuotaTracker, reconcile_quotas
from keygate.config import Config
from keygate.errors import QuotaInvariantError
from keygate.storage.gateway import PersistenceGateway
from keygate.utils.logger import get_logger, mask_key

logger = get_logger(__name__)


class GateResult(str, Enum):
    """Combined authenticate + admit decision handed to the HTTP layer."""

    ADMITTED = "admitted"
    UNAUTHENTICATED = "unauthenticated"
    TOO_MANY_REQUESTS = "too_many_requests"


class KeyGateService:
    """Key issuance, authentication and quota enforcement."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        keys: KeyStore,
        quotas: QuotaTracker,
    ) -> None:
        self.gateway = gateway
        self.keys = keys
        self.quotas = quotas

    @classmethod
    async def start(cls, config: Config) -> "KeyGateService":
        """Load persisted state and build the service.

        Raises:
            LoadError: If the key store cannot be loaded (fatal at startup).
        """
        gateway = PersistenceGateway(
            key_store_path=config.storage.key_store_path,
            quota_store_path=config.storage.quota_store_path,
            write_timeout_s=config.storage.write_timeout_s,
            initialize_missing=config.storage.initialize_missing,
        )
        state = await gateway.load_all()
        counts = reconcile_quotas(state.keys, state.quotas, config.quota.max_requests)
        quotas = QuotaTracker(gateway, max_requests=config.quota.max_requests, counts=counts)
        keys = KeyStore(gateway, quotas, records=state.keys)
        return cls(gateway, keys, quotas)

    @property
    def max_requests(self) -> int:
        return self.quotas.max_requests

    async def issue(self, email: str) -> str:
        return await self.keys.issue(email)

    def authenticate(self, candidate: object) -> bool:
        return self.keys.authenticate(candidate)

    def count_for(self, key: Optional[str]) -> int:
        return self.quotas.count_for(key)

    async def gate(self, candidate: object) -> GateResult:
        """Authenticate candidate, then count the request against its quota.

        Raises:
            QuotaInvariantError: An issued key has no quota record.
        """
        if not self.keys.authenticate(candidate):
            return GateResult.UNAUTHENTICATED

        assert isinstance(candidate, str)
        admission = await self.quotas.admit(candidate)
        if admission is Admission.ADMITTED:
            return GateResult.ADMITTED
        if admission is Admission.REJECTED:
            return GateResult.TOO_MANY_REQUESTS

        logger.error("Authenticated key has no quota record", key=mask_key(candidate))
        raise QuotaInvariantError()

    async def close(self) -> None:
        """Flush pending quota writes before shutdown."""
        await self.quotas.flush()
        logger.info("Service state flushed", keys=len(self.keys))
