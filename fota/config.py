# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Server configuration.

ServerConfig centralizes the protocol constants (chunk bounds, adaptive sizing
thresholds, compression rules, session timeouts) and the listener settings.
load_config() reads overrides from a TOML file:

.. code-block:: toml

    [server]
    host = "0.0.0.0"
    port = 8266
    connection_timeout = 30

    [chunking]
    default_chunk = 512
    min_chunk = 128
    max_chunk = 1024
    grow_back = false

    [sessions]
    session_timeout = 2700
    interrupted_timeout = 600
    sweep_interval = 300

    [catalog]
    firmware_dir = "data/firmware"
    selection_policy = "mtime"
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from catalog.config import PATHS

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.toml"


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the FOTA TCP server and protocol engine.

    Args:
        host: Listen address.
        port: Listen port.
        firmware_dir: Directory holding firmware binaries.
        db_path: SQLite database for digest cache and transfer log.
        default_chunk: Chunk size of a fresh session; also the chunk-id unit.
        min_chunk: Lower bound of any served chunk.
        max_chunk: Upper bound of any served chunk.
        connection_timeout: Idle socket timeout in seconds.
        warmup_requests: Requests a connection must issue before adaptive sizing applies.
        retry_ratio_threshold: Retry fraction above which the session chunk size is halved.
        grow_back: Allow the chunk size to double back once the retry fraction recovers.
        recovery_ratio: Retry fraction under which growth is allowed (with ``grow_back``).
        compression_min_size: Chunks at or below this length are never compressed.
        compression_ratio: A compressed chunk is sent only if smaller than ratio x original.
        session_timeout: Absolute session lifetime in seconds.
        interrupted_timeout: Lifetime of an interrupted session in seconds.
        sweep_interval: Seconds between eviction sweeps.
        selection_policy: ``"mtime"`` or ``"semver"`` latest-firmware selection.
        max_line_bytes: Longest accepted request line.
    """

    host: str = "0.0.0.0"
    port: int = 8266
    firmware_dir: Path = field(default_factory=lambda: PATHS.firmware_dir)
    db_path: Path = field(default_factory=lambda: PATHS.db_path)
    default_chunk: int = 512
    min_chunk: int = 128
    max_chunk: int = 1024
    connection_timeout: float = 30.0
    warmup_requests: int = 5
    retry_ratio_threshold: float = 0.15
    grow_back: bool = False
    recovery_ratio: float = 0.05
    compression_min_size: int = 100
    compression_ratio: float = 0.85
    session_timeout: float = 45 * 60.0
    interrupted_timeout: float = 10 * 60.0
    sweep_interval: float = 5 * 60.0
    selection_policy: str = "mtime"
    max_line_bytes: int = 4096

    def __post_init__(self):
        if not 0 < self.min_chunk <= self.default_chunk <= self.max_chunk:
            raise ValueError(
                "chunk bounds must satisfy 0 < min_chunk <= default_chunk <= max_chunk "
                f"(got {self.min_chunk}, {self.default_chunk}, {self.max_chunk})"
            )
        if self.selection_policy not in ("mtime", "semver"):
            raise ValueError(f"Unknown selection policy: {self.selection_policy!r}")
        if not 0.0 <= self.retry_ratio_threshold <= 1.0:
            raise ValueError("retry_ratio_threshold must be within [0, 1]")
        if self.interrupted_timeout <= 0 or self.session_timeout <= 0 or self.sweep_interval <= 0:
            raise ValueError("session timeouts and sweep interval must be positive")

    def clamp_chunk(self, size: int) -> int:
        """Clamp a chunk size into ``[min_chunk, max_chunk]``."""
        return max(self.min_chunk, min(self.max_chunk, size))


DEFAULT_CONFIG = ServerConfig()

_PATH_FIELDS = {"firmware_dir", "db_path"}
_SECTIONS = ("server", "chunking", "sessions", "catalog")


def config_from_mapping(data: dict[str, Any], base: ServerConfig | None = None) -> ServerConfig:
    """Build a ServerConfig from a parsed TOML document.

    Keys may sit in any of the ``[server]``, ``[chunking]``, ``[sessions]`` and
    ``[catalog]`` tables; unknown keys are ignored with a warning.
    """
    logger = logging.getLogger(__name__)
    known = {f.name for f in fields(ServerConfig)}
    overrides: dict[str, Any] = {}
    for section in _SECTIONS:
        for key, value in (data.get(section) or {}).items():
            if key not in known:
                logger.warning("Ignoring unknown config key [%s] %s", section, key)
                continue
            overrides[key] = Path(value) if key in _PATH_FIELDS else value
    return replace(base or ServerConfig(), **overrides)


def load_config(config_path: Path | None = None) -> ServerConfig:
    """Load server configuration from a TOML file.

    Args:
        config_path: Path to the TOML file. If None, uses fota/config.toml.

    Returns:
        ServerConfig with the file's overrides applied, or defaults when the
        file is missing or unreadable.

    Raises:
        ValueError: If the file parses but holds invalid values.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    logger = logging.getLogger(__name__)

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except (FileNotFoundError, OSError) as ex:
        logger.warning("Config file not found or error reading: %s. Using defaults.", ex)
        return ServerConfig()
    except tomllib.TOMLDecodeError as ex:
        logger.warning("Config file %s is not valid TOML: %s. Using defaults.", config_path, ex)
        return ServerConfig()

    cfg = config_from_mapping(data)
    logger.info(
        "Config loaded: port=%s, chunk=%s [%s..%s], policy=%s, grow_back=%s",
        cfg.port,
        cfg.default_chunk,
        cfg.min_chunk,
        cfg.max_chunk,
        cfg.selection_policy,
        cfg.grow_back,
    )
    return cfg


def setup_logging(log_name: str, level: str = "INFO", logs_dir: Path | None = None) -> Path:
    """Log to ``<logs_dir>/<log_name>.log`` and to stderr.

    Returns:
        Path of the log file.
    """
    log_dir = logs_dir or PATHS.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{log_name}.log"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file, mode="a", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    return log_file
