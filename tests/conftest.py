"""Root test configuration for KeyGate.

Every test runs in its own temporary working directory with KEYGATE_DATA_DIR
pointing there and first-run store initialization enabled, so no test ever reads or writes api_keys.json /
request_counts.json in the repository or picks up a developer's
.keygate/config.yaml.
"""

from pathlib import Path

import pytest

from keygate.config import Config
from keygate.service import KeyGateService
from keygate.storage.gateway import PersistenceGateway


@pytest.fixture(autouse=True)
def isolate_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run each test in tmp_path with storage redirected into it."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("KEYGATE_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("KEYGATE_CONFIG", raising=False)
    monkeypatch.delenv("KEYGATE_PORT", raising=False)
    monkeypatch.setenv("KEYGATE_INIT_STORE", "true")
    monkeypatch.setattr("keygate.config.DEFAULT_CONFIG_PATHS", [".keygate/config.yaml"])


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test rate limit bleed where multiple tests hitting the
    issuance endpoint within the same minute would trigger a 429.
    """
    from keygate.auth.limiter import limiter, set_issuance_rate
    from keygate.constants import DEFAULT_ISSUANCE_RATE

    set_issuance_rate(DEFAULT_ISSUANCE_RATE)
    limiter.reset()


@pytest.fixture
def key_store_path(tmp_path: Path) -> Path:
    return tmp_path / "api_keys.json"


@pytest.fixture
def quota_store_path(tmp_path: Path) -> Path:
    return tmp_path / "request_counts.json"


@pytest.fixture
def gateway(key_store_path: Path, quota_store_path: Path) -> PersistenceGateway:
    return PersistenceGateway(key_store_path, quota_store_path, write_timeout_s=2.0)


@pytest.fixture
async def service() -> KeyGateService:
    """A started service backed by the per-test data directory."""
    from keygate.config import _apply_env_overrides

    config = Config.defaults()
    _apply_env_overrides(config)
    svc = await KeyGateService.start(config)
    yield svc
    await svc.close()
