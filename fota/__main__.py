# SPDX-License-Identifier: MIT
# Copyright (c) 2025 fotaserve contributors

"""Command line entry point: ``python -m fota``.

Commands:
    serve               run the TCP server and session sweeper
    catalog add FILE    store a binary as <name>_v<version>.bin
    catalog list        list stored binaries with their digests
    catalog remove NAME delete a stored binary
    catalog latest      show the binary devices are currently offered
    transfers           show the transfer log
    db check            run the SQLite integrity check
    db repair           rebuild the database from a dump of itself
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from catalog.db import is_healthy, repair_db
from catalog.errors import CatalogError
from catalog.service import FirmwareCatalog
from catalog.transfer_log import TransferLog

from .config import DEFAULT_CONFIG_PATH, ServerConfig, load_config, setup_logging

VERSION = "1.0.0"


class FotaApp:
    """CLI application: parses arguments and dispatches to a command."""

    def __init__(self) -> None:
        self.parser = argparse.ArgumentParser(prog="fota", description="Resumable chunked FOTA server")
        self._setup_args()
        self.logger = logging.getLogger(__name__)

    def _setup_args(self) -> None:
        p = self.parser
        p.add_argument("-c", "--config", type=Path, default=DEFAULT_CONFIG_PATH, help="TOML configuration file")
        p.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
        p.add_argument("--version", action="version", version=f"fota {VERSION}")

        subs = p.add_subparsers(dest="command", required=True)

        srv = subs.add_parser("serve", help="run the FOTA TCP server")
        srv.add_argument("--host", help="bind address (overrides config)")
        srv.add_argument("--port", type=int, help="TCP port (overrides config)")

        cat = subs.add_parser("catalog", help="manage stored firmware")
        cat_subs = cat.add_subparsers(dest="catalog_command", required=True)
        add = cat_subs.add_parser("add", help="store a firmware binary")
        add.add_argument("file", type=Path, help="binary to import")
        add.add_argument("-v", "--version", dest="fw_version", required=True, help="MAJOR.MINOR.PATCH")
        add.add_argument("-n", "--name", default="firmware", help="file name prefix")
        cat_subs.add_parser("list", help="list stored binaries")
        rm = cat_subs.add_parser("remove", help="delete a stored binary")
        rm.add_argument("name", help="stored file name")
        cat_subs.add_parser("latest", help="show the firmware offered to devices")

        tr = subs.add_parser("transfers", help="show the transfer log")
        tr.add_argument("-d", "--device", help="only this device")
        tr.add_argument("-l", "--limit", type=int, default=50, help="maximum rows")

        db = subs.add_parser("db", help="check or repair the catalog database")
        db.add_argument("db_command", choices=["check", "repair"])

    def _catalog(self, cfg: ServerConfig) -> FirmwareCatalog:
        return FirmwareCatalog(cfg.firmware_dir, cfg.db_path, cfg.selection_policy)

    def _run_catalog(self, args: argparse.Namespace, cfg: ServerConfig) -> int:
        catalog = self._catalog(cfg)
        cmd = args.catalog_command

        if cmd == "add":
            if not args.file.is_file():
                print(f"Error: {args.file} is not a file")
                return 1
            artifact = catalog.add(args.file, args.fw_version, basename=args.name)
            print(f"stored {artifact.name} ({artifact.size_bytes} bytes, md5 {artifact.md5})")
            return 0

        if cmd == "list":
            artifacts = catalog.scan()
            if not artifacts:
                print("no firmware stored")
            for a in artifacts:
                print(f"{a.name:<40} v{a.version:<10} {a.size_bytes:>10}  {a.md5}")
            return 0

        if cmd == "remove":
            if not catalog.remove(args.name):
                print(f"Error: {args.name} not found")
                return 1
            print(f"removed {args.name}")
            return 0

        # latest
        artifact = catalog.latest()
        print(f"name:    {artifact.name}")
        print(f"version: {artifact.version}")
        print(f"size:    {artifact.size_bytes}")
        print(f"md5:     {artifact.md5}")
        print(f"sha256:  {artifact.sha256}")
        return 0

    def _run_transfers(self, args: argparse.Namespace, cfg: ServerConfig) -> int:
        for ev in TransferLog(cfg.db_path).entries(args.device, args.limit):
            print(
                f"{ev.created_at}  {ev.session_id}  {ev.device_id:<20} v{ev.version:<10} "
                f"{ev.last_offset:>8}/{ev.size_bytes:<8} {ev.status}"
            )
        return 0

    def _run_db(self, args: argparse.Namespace, cfg: ServerConfig) -> int:
        if args.db_command == "repair":
            repair_db(cfg.db_path)
        healthy = is_healthy(cfg.db_path)
        print(f"{cfg.db_path}: {'ok' if healthy else 'corrupted'}")
        return 0 if healthy else 1

    def run(self, argv: Optional[Sequence[str]] = None) -> int:
        """Parse ``argv`` and run the selected command; returns the exit code."""
        args = self.parser.parse_args(argv)
        setup_logging("fota", args.log_level)

        try:
            cfg = load_config(args.config)
        except (TypeError, ValueError) as ex:
            print(f"Error: invalid configuration: {ex}")
            return 2

        if args.command == "serve":
            from .server import serve

            overrides = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
            serve(replace(cfg, **overrides))
            return 0

        try:
            if args.command == "catalog":
                return self._run_catalog(args, cfg)
            if args.command == "db":
                return self._run_db(args, cfg)
            return self._run_transfers(args, cfg)
        except (CatalogError, ValueError) as ex:
            self.logger.error("%s failed: %s", args.command, ex)
            print(f"Error: {ex}")
            return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    return FotaApp().run(argv)


if __name__ == "__main__":
    sys.exit(main())
