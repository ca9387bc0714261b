# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Firmware catalog: stored binaries, cached digests and the transfer log.

Architecture:
    - Firmware directory: flat directory of ``<basename>_v<X.Y.Z>.bin`` files
    - Digest cache: ``firmware`` table holding size/MD5/SHA256/mtime per binary
    - Transfer log: ``transfer_log`` table with one row per transfer session
    - Service layer: FirmwareCatalog (latest, chunk, add, remove)

Example:
    Resolve the latest firmware and read its first chunk::

        from catalog import FirmwareCatalog

        catalog = FirmwareCatalog("data/firmware")
        artifact = catalog.latest()
        data, actual = catalog.chunk(artifact, 0, 512)
        print(artifact.name, artifact.version, artifact.md5, actual)

    Store a new binary::

        artifact = catalog.add("build/app.bin", "1.4.0", basename="sensor")
        print(artifact.name)  # sensor_v1.4.0.bin

Configuration:
    Set FOTA_DATA_DIR to move the data root (default ``./data``)::

        export FOTA_DATA_DIR="/var/lib/fotaserve"
"""

from .config import PATHS, Paths, resolve_paths
from .db import get_db_path, init_db, is_healthy, repair_db
from .errors import ArtifactChangedError, ArtifactNotFoundError, CatalogError, ChunkRangeError
from .firmware_repository import FirmwareArtifact
from .service import SELECTION_POLICIES, FirmwareCatalog
from .transfer_log import TransferEvent, TransferLog, find_transfer, list_transfers, upsert_transfer
from .versions import format_firmware_name, is_newer_version, normalize_version, parse_version_from_name
