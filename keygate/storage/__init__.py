"""KeyGate durable state package.

Public API:
  - PersistenceGateway — JSON snapshot store for keys and quotas
  - LoadedState        — raw mappings returned by PersistenceGateway.load_all()
"""

from __future__ import annotations

from keygate.storage.gateway import LoadedState, PersistenceGateway

__all__ = [
    "LoadedState",
    "PersistenceGateway",
]
