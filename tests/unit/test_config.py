"""Unit tests for keygate/config.py — loading, validation and env overrides.

Covers:
  - Missing config file → Config.defaults(), no exception
  - Missing / unsupported version, invalid YAML, non-mapping → SystemExit(1)
  - Invalid quota.max_requests / storage.write_timeout_s → SystemExit(1)
  - KEYGATE_CONFIG, KEYGATE_PORT, KEYGATE_DATA_DIR and KEYGATE_INIT_STORE overrides
"""

from __future__ import annotations

import os
import textwrap
from pathlib import Path

import pytest

from keygate.config import (
    SUPPORTED_VERSIONS,
    Config,
    LimitsConfig,
    QuotaConfig,
    ServerConfig,
    StorageConfig,
    load_config,
)
from keygate.constants import MAX_REQUESTS


def _write(tmp_path: Path, content: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(content))
    return str(path)


@pytest.fixture
def no_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("KEYGATE_DATA_DIR", raising=False)
    monkeypatch.delenv("KEYGATE_INIT_STORE", raising=False)


class TestDefaults:
    def test_missing_file_returns_defaults(self, no_env_overrides: None) -> None:
        config = load_config(config_path="/nonexistent/path/config.yaml")
        assert isinstance(config, Config)
        assert config.version == 1
        assert config.server == ServerConfig()
        assert config.storage == StorageConfig()
        assert config.quota == QuotaConfig()
        assert config.limits == LimitsConfig()
        assert config.path is None

    def test_default_quota_is_ten(self) -> None:
        assert MAX_REQUESTS == 10
        assert Config.defaults().quota.max_requests == 10

    def test_default_bind(self) -> None:
        config = Config.defaults()
        assert config.server.host == "127.0.0.1"
        assert config.server.port == 3000

    def test_default_store_paths(self) -> None:
        storage = Config.defaults().storage
        assert storage.key_store_path == "./api_keys.json"
        assert storage.quota_store_path == "./request_counts.json"
        assert storage.initialize_missing is False

    def test_supported_versions(self) -> None:
        assert SUPPORTED_VERSIONS == frozenset({1})


class TestFileLoading:
    def test_full_config(self, tmp_path: Path, no_env_overrides: None) -> None:
        path = _write(
            tmp_path,
            """
            version: 1
            server:
              host: 0.0.0.0
              port: 8080
            storage:
              key_store_path: /var/lib/keygate/keys.json
              quota_store_path: /var/lib/keygate/counts.json
              write_timeout_s: 2
              initialize_missing: true
            quota:
              max_requests: 100
            limits:
              issuance_rate: 5/minute
            """,
        )
        config = load_config(config_path=path)
        assert config.path == path
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8080
        assert config.storage.key_store_path == "/var/lib/keygate/keys.json"
        assert config.storage.quota_store_path == "/var/lib/keygate/counts.json"
        assert config.storage.write_timeout_s == 2.0
        assert config.storage.initialize_missing is True
        assert config.quota.max_requests == 100
        assert config.limits.issuance_rate == "5/minute"

    def test_version_only_populates_defaults(self, tmp_path: Path) -> None:
        config = load_config(config_path=_write(tmp_path, "version: 1\n"))
        assert config.quota.max_requests == 10
        assert config.server.port == 3000

    def test_keygate_config_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "version: 1\nquota:\n  max_requests: 3\n")
        monkeypatch.setenv("KEYGATE_CONFIG", path)
        assert load_config().quota.max_requests == 3

    def test_explicit_path_wins_over_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text("version: 1\nquota:\n  max_requests: 7\n")
        monkeypatch.setenv("KEYGATE_CONFIG", _write(tmp_path, "version: 1\n"))
        assert load_config(config_path=str(explicit)).quota.max_requests == 7


class TestInvalidConfig:
    @pytest.mark.parametrize(
        "content",
        [
            "server:\n  port: 1\n",
            "",
            "version: 2\n",
            "version: [1\n",
            "- just\n- a list\n",
            "version: 1\nquota:\n  max_requests: 0\n",
            "version: 1\nquota:\n  max_requests: ten\n",
            "version: 1\nquota:\n  max_requests: true\n",
            "version: 1\nstorage:\n  write_timeout_s: -1\n",
            "version: 1\nstorage:\n  write_timeout_s: soon\n",
        ],
    )
    def test_exits_non_zero(self, tmp_path: Path, content: str) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_config(config_path=_write(tmp_path, content))
        assert exc_info.value.code == 1

    def test_error_message_on_stderr(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit):
            load_config(config_path=_write(tmp_path, "server: {}\n"))
        assert "missing the required 'version' field" in capsys.readouterr().err


class TestEnvOverrides:
    def test_port_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYGATE_PORT", "9999")
        assert load_config(config_path="/nonexistent.yaml").server.port == 9999

    def test_port_override_beats_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("KEYGATE_PORT", "9999")
        path = _write(tmp_path, "version: 1\nserver:\n  port: 8080\n")
        assert load_config(config_path=path).server.port == 9999

    def test_invalid_port_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KEYGATE_PORT", "not-a-port")
        with pytest.raises(SystemExit) as exc_info:
            load_config(config_path="/nonexistent.yaml")
        assert exc_info.value.code == 1

    def test_data_dir_relocates_both_stores(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        data_dir = tmp_path / "data"
        monkeypatch.setenv("KEYGATE_DATA_DIR", str(data_dir))
        path = _write(
            tmp_path,
            """
            version: 1
            storage:
              key_store_path: /elsewhere/keys.json
            """,
        )
        config = load_config(config_path=path)
        assert config.storage.key_store_path == os.path.join(str(data_dir), "keys.json")
        assert config.storage.quota_store_path == os.path.join(
            str(data_dir), "request_counts.json"
        )

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("true", True), ("1", True), ("false", False), ("", False)],
    )
    def test_init_store_override(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, value: str, expected: bool
    ) -> None:
        monkeypatch.setenv("KEYGATE_INIT_STORE", value)
        path = _write(tmp_path, "version: 1\nstorage:\n  initialize_missing: true\n")
        assert load_config(config_path=path).storage.initialize_missing is expected

    def test_first_run_is_opt_in(self, no_env_overrides: None) -> None:
        config = load_config(config_path="/nonexistent.yaml")
        assert config.storage.initialize_missing is False
