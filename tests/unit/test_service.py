"""Unit tests for keygate/service.py — the combined gate and restart behaviour."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from keygate.config import Config, _apply_env_overrides
from keygate.errors import LoadError, QuotaInvariantError
from keygate.service import GateResult, KeyGateService


async def _restart(max_requests: int = 10) -> KeyGateService:
    config = Config.defaults()
    config.quota.max_requests = max_requests
    _apply_env_overrides(config)
    return await KeyGateService.start(config)


class TestScenario:
    async def test_issue_admit_exhaust_report(self, service: KeyGateService) -> None:
        k1 = await service.issue("a@b.com")
        assert await service.issue("a@b.com") == k1

        for _ in range(10):
            assert await service.gate(k1) is GateResult.ADMITTED
        assert service.count_for(k1) == 10

        assert await service.gate(k1) is GateResult.TOO_MANY_REQUESTS
        assert service.count_for(k1) == 10

        assert service.authenticate("not-a-real-key") is False


class TestGate:
    @pytest.mark.parametrize("candidate", [None, "", "not-a-real-key"])
    async def test_unauthenticated(self, service: KeyGateService, candidate) -> None:
        await service.issue("a@b.com")
        assert await service.gate(candidate) is GateResult.UNAUTHENTICATED

    async def test_unknown_key_increments_nothing(self, service: KeyGateService) -> None:
        key = await service.issue("a@b.com")
        await service.gate("not-a-real-key")
        assert service.quotas.snapshot() == {key: 0}

    async def test_missing_quota_record_is_invariant_violation(
        self, service: KeyGateService
    ) -> None:
        key = await service.issue("a@b.com")
        service.quotas._counts.pop(key)
        with pytest.raises(QuotaInvariantError):
            await service.gate(key)

    async def test_count_for_unknown_key_is_zero(self, service: KeyGateService) -> None:
        assert service.count_for("whatever") == 0


class TestRestart:
    async def test_round_trip_reproduces_state(self, service: KeyGateService) -> None:
        k1 = await service.issue("a@b.com")
        k2 = await service.issue("c@d.com")
        for _ in range(3):
            await service.gate(k1)
        await service.gate(k2)
        await service.close()

        reloaded = await _restart()
        assert reloaded.keys.snapshot() == {"a@b.com": k1, "c@d.com": k2}
        assert reloaded.quotas.snapshot() == {k1: 3, k2: 1}
        assert await reloaded.issue("a@b.com") == k1

    async def test_exhausted_key_stays_exhausted_after_restart(
        self, service: KeyGateService
    ) -> None:
        key = await service.issue("a@b.com")
        for _ in range(10):
            await service.gate(key)
        await service.close()

        reloaded = await _restart()
        assert await reloaded.gate(key) is GateResult.TOO_MANY_REQUESTS

    async def test_lost_quota_store_resets_counts(
        self, service: KeyGateService, tmp_path: Path
    ) -> None:
        key = await service.issue("a@b.com")
        await service.gate(key)
        await service.close()
        (tmp_path / "request_counts.json").unlink()

        reloaded = await _restart()
        assert reloaded.authenticate(key)
        assert reloaded.count_for(key) == 0

    async def test_corrupt_key_store_refuses_to_start(self, tmp_path: Path) -> None:
        (tmp_path / "api_keys.json").write_text("{oops")
        with pytest.raises(LoadError):
            await _restart()

    async def test_lower_ceiling_clamps_loaded_counts(self, tmp_path: Path) -> None:
        (tmp_path / "api_keys.json").write_text(json.dumps({"a@b.com": "k1"}))
        (tmp_path / "request_counts.json").write_text(json.dumps({"k1": 8}))

        reloaded = await _restart(max_requests=5)
        assert reloaded.count_for("k1") == 5
        assert await reloaded.gate("k1") is GateResult.TOO_MANY_REQUESTS
