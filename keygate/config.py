"""Config loading for KeyGate.

Reads `.keygate/config.yaml` (or `~/.keygate/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. KEYGATE_CONFIG environment variable (if set)
  3. `.keygate/config.yaml` (working directory — for development)
  4. `~/.keygate/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  KEYGATE_PORT     — overrides server.port (takes precedence over config file value)
  KEYGATE_DATA_DIR — relocates both JSON stores into this directory
  KEYGATE_CONFIG   — sets an explicit config file path to try first
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from keygate.constants import (
    DEFAULT_HOST,
    DEFAULT_ISSUANCE_RATE,
    DEFAULT_KEY_STORE_PATH,
    DEFAULT_PORT,
    DEFAULT_QUOTA_STORE_PATH,
    DEFAULT_WRITE_TIMEOUT_S,
    MAX_REQUESTS,
)
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (KEYGATE_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".keygate/config.yaml",
    os.path.expanduser("~/.keygate/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


@dataclass
class StorageConfig:
    """Locations and write behaviour of the two JSON state documents.

    key_store_path:     email → key document. Unreadable or corrupt = fatal.
    quota_store_path:   key → count document. Unreadable = start from zero.
    write_timeout_s:    bound on a single snapshot write.
    initialize_missing: create an empty key store when none exists (first
                        run only; off by default, so a missing store is fatal).
    """

    key_store_path: str = DEFAULT_KEY_STORE_PATH
    quota_store_path: str = DEFAULT_QUOTA_STORE_PATH
    write_timeout_s: float = DEFAULT_WRITE_TIMEOUT_S
    initialize_missing: bool = False


@dataclass
class QuotaConfig:
    """Per-key admission ceiling."""

    max_requests: int = MAX_REQUESTS


@dataclass
class LimitsConfig:
    """Per-client request rate limits (slowapi rate strings)."""

    issuance_rate: str = DEFAULT_ISSUANCE_RATE


@dataclass
class Config:
    """Root configuration object populated from .keygate/config.yaml.

    All fields have safe defaults — KeyGate can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a non-positive quota.max_requests or
                           storage.write_timeout_s.
        """
        # ── Server ────────────────────────────────────────────────────────────
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", DEFAULT_HOST),
            port=server_raw.get("port", DEFAULT_PORT),
        )

        # ── Storage ───────────────────────────────────────────────────────────
        storage_raw = raw.get("storage") or {}
        write_timeout_s = storage_raw.get("write_timeout_s", DEFAULT_WRITE_TIMEOUT_S)
        if (
            isinstance(write_timeout_s, bool)
            or not isinstance(write_timeout_s, (int, float))
            or write_timeout_s <= 0
        ):
            _config_error(
                f"Invalid storage.write_timeout_s: '{write_timeout_s}'. "
                "Must be a positive number of seconds."
            )
        storage = StorageConfig(
            key_store_path=storage_raw.get("key_store_path", DEFAULT_KEY_STORE_PATH),
            quota_store_path=storage_raw.get("quota_store_path", DEFAULT_QUOTA_STORE_PATH),
            write_timeout_s=float(write_timeout_s),
            initialize_missing=bool(storage_raw.get("initialize_missing", False)),
        )

        # ── Quota ─────────────────────────────────────────────────────────────
        quota_raw = raw.get("quota") or {}
        max_requests = quota_raw.get("max_requests", MAX_REQUESTS)
        if isinstance(max_requests, bool) or not isinstance(max_requests, int) or max_requests < 1:
            _config_error(
                f"Invalid quota.max_requests: '{max_requests}'. Must be a positive integer."
            )
        quota = QuotaConfig(max_requests=max_requests)

        # ── Limits ────────────────────────────────────────────────────────────
        limits_raw = raw.get("limits") or {}
        limits = LimitsConfig(
            issuance_rate=str(limits_raw.get("issuance_rate", DEFAULT_ISSUANCE_RATE)),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            storage=storage,
            quota=quota,
            limits=limits,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def _config_error(message: str) -> NoReturn:
    """Print a CONFIG ERROR line to stderr and exit non-zero."""
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate KeyGate configuration.

    Search order:
      1. ``config_path`` argument
      2. ``KEYGATE_CONFIG`` environment variable
      3. ``.keygate/config.yaml``
      4. ``~/.keygate/config.yaml``

    If no file is found at any of these paths, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).
    Environment overrides are applied last in both cases.

    Raises:
        SystemExit(1): On YAML parse error, non-mapping document, missing or
                       unsupported ``version``, invalid values, or an invalid
                       ``KEYGATE_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("KEYGATE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw: Any = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _config_error(
            f"Failed to parse {found_path}: {exc}\n"
            "KeyGate refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _config_error(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _config_error(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _config_error(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _config_error(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _config_error(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: KeyGate is configured to bind on 0.0.0.0 (all interfaces). "
            "Issued API keys will be reachable by network clients."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        max_requests=config.quota.max_requests,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Handles:
      KEYGATE_PORT     — overrides config.server.port (SystemExit(1) if not an int)
      KEYGATE_DATA_DIR — places both stores inside this directory, keeping
                         their file names
      KEYGATE_INIT_STORE — "true" enables storage.initialize_missing (first run)
    """
    env_port = os.environ.get("KEYGATE_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _config_error(
                f"KEYGATE_PORT environment variable is not a valid integer: '{env_port}'"
            )

    data_dir = os.environ.get("KEYGATE_DATA_DIR")
    if data_dir:
        config.storage.key_store_path = os.path.join(
            data_dir, os.path.basename(config.storage.key_store_path)
        )
        config.storage.quota_store_path = os.path.join(
            data_dir, os.path.basename(config.storage.quota_store_path)
        )

    init_store = os.environ.get("KEYGATE_INIT_STORE")
    if init_store is not None:
        config.storage.initialize_missing = init_store.strip().lower() in ("1", "true", "yes")
