"""Command line entry point: ``python -m device update``.

Runs one update against a FOTA server, staging into a file that stands in for
the device's flash, with a byte progress bar.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from device.at_transport import SerialATTransport
from device.client import DeviceTransferClient, UpdateResult
from device.config import DeviceConfig, load_device_config
from device.detector import detect_modem_ports
from device.flash import FileFlashTarget
from device.transport import TcpTransport, Transport
from fota.config import setup_logging


def build_transport(cfg: DeviceConfig) -> Transport:
    """Create the transport selected by ``cfg.transport``."""
    if cfg.transport == "at":
        return SerialATTransport(
            cfg.serial_port,
            host=cfg.server_host,
            port=cfg.server_port,
            apn=cfg.apn,
            apn_user=cfg.apn_user,
            apn_pass=cfg.apn_pass,
            baudrate=cfg.baudrate,
            command_timeout=cfg.request_timeout,
        )
    return TcpTransport(cfg.server_host, cfg.server_port, cfg.connect_timeout)


def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="device", description="FOTA device update client")
    p.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING or ERROR")
    subs = p.add_subparsers(dest="command", required=True)

    up = subs.add_parser("update", help="check for and apply a firmware update")
    up.add_argument("-c", "--config", type=Path, help="TOML file with a [device] table")
    up.add_argument("-d", "--device-id", help="device identifier")
    up.add_argument("-V", "--current-version", help="running firmware version")
    up.add_argument("-H", "--host", dest="server_host", help="FOTA server host")
    up.add_argument("-p", "--port", dest="server_port", type=int, help="FOTA server port")
    up.add_argument("-t", "--transport", choices=["tcp", "at"], help="link type")
    up.add_argument("-s", "--serial-port", help="modem serial port (AT transport)")
    up.add_argument("--apn", help="GPRS APN (AT transport)")
    up.add_argument("--compression", action="store_true", default=None, help="request gzip chunks")
    up.add_argument("--hash-type", choices=["md5", "sha256"], help="whole-image digest")
    up.add_argument("-i", "--image", type=Path, required=True, help="file holding the active image")

    subs.add_parser("ports", help="list serial ports that look like a modem")
    return p


def _run_update(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    overrides = {
        "device_id": args.device_id,
        "current_version": args.current_version,
        "server_host": args.server_host,
        "server_port": args.server_port,
        "transport": args.transport,
        "serial_port": args.serial_port,
        "apn": args.apn,
        "compression": args.compression,
        "hash_type": args.hash_type,
    }
    try:
        if args.config:
            cfg = load_device_config(args.config, **overrides)
        else:
            cfg = DeviceConfig(**{k: v for k, v in overrides.items() if v is not None})
    except (TypeError, ValueError) as ex:
        print(f"Error: invalid device configuration: {ex}")
        return 2

    pbar: Optional[tqdm] = None

    def progress(done: int, total: int) -> None:
        nonlocal pbar
        if pbar is None:
            pbar = tqdm(total=total, initial=0, unit="B", unit_scale=True, desc=cfg.device_id)
        pbar.update(done - pbar.n)

    flash = FileFlashTarget(args.image, hash_type=cfg.hash_type)
    client = DeviceTransferClient(
        cfg,
        build_transport(cfg),
        flash,
        restart=lambda: logger.info("Restart requested; new image is at %s", args.image),
        progress_cb=progress,
    )
    try:
        result = client.run_update()
    except KeyboardInterrupt:
        flash.abort()
        print("cancelled")
        return 130
    finally:
        if pbar is not None:
            pbar.close()

    if result is UpdateResult.APPLIED:
        print(f"updated to v{client.state.version}")
        return 0
    if result is UpdateResult.NO_UPDATE:
        print("no update available")
        return 0
    if result is UpdateResult.CANCELLED:
        print("cancelled")
        return 130
    print(f"update failed: {client.state.error}")
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    setup_logging("device", args.log_level)

    if args.command == "ports":
        modems = detect_modem_ports()
        if not modems:
            print("no modem ports found")
        for m in modems:
            print(f"{m.port_name:<16} {m.vid or '----'}:{m.pid or '----'}  {m.vendor}  {m.description}")
        return 0

    return _run_update(args)


if __name__ == "__main__":
    sys.exit(main())
