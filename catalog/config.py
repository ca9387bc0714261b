# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Catalog storage configuration.

Resolves the filesystem locations used by the firmware catalog: the data root,
the SQLite database, the firmware directory and the log directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Paths:
    """Configuration paths for catalog storage.

    Attributes:
        data_dir: Root directory for server data.
        db_path: Path to the SQLite database file.
        firmware_dir: Directory holding ``*.bin`` firmware artifacts.
        logs_dir: Directory for log files written by the entry points.
    """

    data_dir: Path
    db_path: Path
    firmware_dir: Path
    logs_dir: Path


def resolve_paths(data_root: str | Path | None = None) -> Paths:
    """Resolve configuration paths.

    Uses ``data_root`` when given, else the FOTA_DATA_DIR environment variable,
    else ``./data``.

    Args:
        data_root: Optional explicit data root.

    Returns:
        Paths: Resolved filesystem paths. Directories are not created here.
    """
    root = Path(data_root or os.environ.get("FOTA_DATA_DIR", "./data")).resolve()
    return Paths(
        data_dir=root,
        db_path=root / "catalog.db",
        firmware_dir=root / "firmware",
        logs_dir=root / "logs",
    )


PATHS = resolve_paths()
"""Global paths configuration instance, resolved from the environment at import."""
