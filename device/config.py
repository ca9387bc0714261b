"""Device-side update client configuration.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

TRANSPORTS = ("tcp", "at")


@dataclass(frozen=True)
class DeviceConfig:
    """Settings of one device's update client.

    Attributes:
        device_id: Identifier sent with every request.
        current_version: Version of the running firmware.
        server_host: FOTA server host.
        server_port: FOTA server TCP port.
        transport: ``"tcp"`` or ``"at"`` (SIM800-style modem).
        serial_port: Modem serial port, None to auto-detect.
        baudrate: Modem baudrate.
        apn: GPRS access point name.
        apn_user: APN user name.
        apn_pass: APN password.
        request_timeout: Seconds to wait for a reply line.
        data_timeout: Seconds to wait for a chunk payload.
        connect_timeout: Seconds allowed to open the link.
        max_reconnects: Reconnect attempts before the update fails.
        max_chunk_retries: Re-requests of one chunk before the update fails.
        reconnect_backoff: Base seconds between reconnect attempts.
        buffer_size: Staging buffer in front of the flash target.
        compression: Ask the server for gzip payloads.
        hash_type: Whole-image digest kind, ``"md5"`` or ``"sha256"``.
    """

    device_id: str
    current_version: str = "1.0.0"
    server_host: str = "127.0.0.1"
    server_port: int = 8266
    transport: str = "tcp"
    serial_port: Optional[str] = None
    baudrate: int = 115200
    apn: str = "internet"
    apn_user: str = ""
    apn_pass: str = ""
    request_timeout: float = 5.0
    data_timeout: float = 30.0
    connect_timeout: float = 10.0
    max_reconnects: int = 3
    max_chunk_retries: int = 3
    reconnect_backoff: float = 2.0
    buffer_size: int = 1024
    compression: bool = False
    hash_type: str = "md5"

    def __post_init__(self):
        if not self.device_id:
            raise ValueError("device_id is required")
        if self.transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {self.transport!r}")
        if self.hash_type.lower() not in ("md5", "sha256"):
            raise ValueError(f"Unsupported hash type: {self.hash_type!r}")
        if self.buffer_size <= 0:
            raise ValueError("buffer_size must be positive")


def load_device_config(config_path: Path, **overrides) -> DeviceConfig:
    """Load the ``[device]`` table of a TOML file.

    Keyword overrides win over file values. A missing or unreadable file logs a
    warning and uses the overrides alone.

    Raises:
        ValueError: If the resulting configuration is invalid.
    """
    logger = logging.getLogger(__name__)
    data: dict = {}
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f).get("device", {})
    except (FileNotFoundError, OSError) as ex:
        logger.warning("Device config not found or error reading: %s. Using defaults.", ex)
    except tomllib.TOMLDecodeError as ex:
        logger.warning("Device config %s is not valid TOML: %s. Using defaults.", config_path, ex)

    known = {f.name for f in fields(DeviceConfig)}
    values = {k: v for k, v in data.items() if k in known}
    values.update({k: v for k, v in overrides.items() if v is not None})
    values.setdefault("device_id", "")
    return DeviceConfig(**values)
