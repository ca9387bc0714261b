"""Cellular modem detection via serial port enumeration.

Finds USB serial adapters and modems that commonly front SIM800-class modules
using ``serial.tools.list_ports``. Matching is by USB vendor ID, with a
description fallback for adapters that report no VID.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

import re
from typing import NamedTuple, Optional

from serial.tools import list_ports

from device.errors import DeviceNotFoundError

# USB-UART bridges and modem vendors seen in front of SIM800-class modules.
KNOWN_MODEM_VIDS = {
    "1A86": "QinHeng (CH340)",
    "10C4": "Silicon Labs (CP210x)",
    "0403": "FTDI",
    "067B": "Prolific (PL2303)",
    "1E0E": "SIMCom",
    "2C7C": "Quectel",
}

_DESCRIPTION_HINTS = ("sim800", "simcom", "modem", "gsm")


class DetectedModem(NamedTuple):
    """Information about a serial port that looks like a modem.

    Attributes:
        port_name: Serial port device ID (e.g., COM3 on Windows, /dev/ttyUSB0 on Linux)
        description: Port description from enumeration
        vendor: Vendor name from KNOWN_MODEM_VIDS, or the manufacturer string
        vid: USB Vendor ID (4-char hex string, if available)
        pid: USB Product ID (4-char hex string, if available)
    """

    port_name: str
    description: str
    vendor: str
    vid: Optional[str] = None
    pid: Optional[str] = None


def _extract_vid_pid(hwid: str) -> tuple[Optional[str], Optional[str]]:
    """Extract VID and PID from hardware ID string.

    Args:
        hwid: Hardware ID string (e.g., "USB VID:PID=1A86:7523")

    Returns:
        Tuple of (VID, PID) as 4-char hex strings, or (None, None) if not found
    """
    vid_match = re.search(r"VID[_:]([0-9A-F]{4})", hwid, re.IGNORECASE)
    pid_match = re.search(r"PID[_:]([0-9A-F]{4})", hwid, re.IGNORECASE)

    vid = vid_match.group(1).upper() if vid_match else None
    pid = pid_match.group(1).upper() if pid_match else None

    return vid, pid


def detect_modem_ports() -> list[DetectedModem]:
    """List serial ports that look like a modem or its USB-UART bridge.

    Returns:
        Detected ports, known VIDs first. Empty if none found.
    """
    found = []
    for port in list_ports.comports():
        if not port.device:
            continue
        description = port.description or ""
        vid, pid = _extract_vid_pid(port.hwid or "")

        if vid in KNOWN_MODEM_VIDS:
            vendor = KNOWN_MODEM_VIDS[vid]
        elif any(h in description.lower() for h in _DESCRIPTION_HINTS):
            vendor = port.manufacturer or ""
        else:
            continue
        found.append(DetectedModem(port.device, description, vendor, vid, pid))

    found.sort(key=lambda m: m.vid not in KNOWN_MODEM_VIDS)
    return found


def get_first_modem() -> DetectedModem:
    """Get the first detected modem port.

    Raises:
        DeviceNotFoundError: If no modem-like serial port is present
    """
    modems = detect_modem_ports()
    if not modems:
        raise DeviceNotFoundError(
            "No modem serial port detected. Connect the modem or pass the port name explicitly."
        )
    return modems[0]
