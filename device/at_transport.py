"""TCP over a SIM800-class cellular modem driven by AT commands.

The modem is attached to a serial port. ``connect()`` brings up GPRS and opens a
single TCP connection (``AT+CIPSTART``); ``send()`` pushes request bytes through
the ``AT+CIPSEND`` prompt; server bytes arrive raw on the serial stream and are
framed by the Transport base class.

Every wait is a blocking serial read with a deadline. Network registration is
awaited through the unsolicited ``+CREG`` notification instead of polling.

Copyright (c) 2025 fotaserve contributors
SPDX-License-Identifier: MIT
"""

from __future__ import annotations

import re
import time
from typing import Callable, Optional, Sequence

import serial

from device.detector import get_first_modem
from device.errors import DeviceATError, TransportError, TransportTimeout
from device.transport import Transport

AT_PROBE_ATTEMPTS = 3
SEND_BLOCK = 1024
SEND_FAIL_CODES = ("SEND FAIL", "ERROR", "CLOSED")

STATUS_NAMES = {
    "CONNECT OK": "TCP Connected",
    "TCP CLOSED": "TCP Closed",
    "IP INITIAL": "IP Initial",
    "IP START": "IP Start",
    "IP CONFIG": "IP Config",
    "IP GPRSACT": "GPRS Active",
    "IP STATUS": "Got IP",
    "TCP CONNECTING": "TCP Connecting",
    "TCP CLOSING": "TCP Closing",
    "PDP DEACT": "PDP Deactivated",
}

_CREG_RE = re.compile(r"\+CREG:\s*(?:\d+\s*,\s*)?(\d+)")
_CSQ_RE = re.compile(r"\+CSQ:\s*(\d+)\s*,")
_IP_RE = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")


class SerialATTransport(Transport):
    """Transport over a SIM800-style modem.

    Args:
        port_name: Serial port, or None to auto-detect the first modem.
        host: Server host.
        port: Server TCP port.
        apn: GPRS access point name.
        apn_user: APN user name.
        apn_pass: APN password.
        baudrate: Serial baudrate.
        command_timeout: Default timeout for AT commands in seconds.
        registration_timeout: Seconds to wait for network registration.
        connect_timeout: Seconds to wait for ``CONNECT OK``.
        serial_factory: Callable opening the port, ``serial.Serial`` by default.
    """

    def __init__(
        self,
        port_name: Optional[str] = None,
        *,
        host: str,
        port: int,
        apn: str = "internet",
        apn_user: str = "",
        apn_pass: str = "",
        baudrate: int = 115200,
        command_timeout: float = 5.0,
        registration_timeout: float = 60.0,
        connect_timeout: float = 30.0,
        serial_factory: Callable[..., serial.Serial] = serial.Serial,
    ):
        super().__init__()
        self.port_name = port_name
        self.host = host
        self.port = port
        self.apn = apn
        self.apn_user = apn_user
        self.apn_pass = apn_pass
        self.baudrate = baudrate
        self.command_timeout = command_timeout
        self.registration_timeout = registration_timeout
        self.connect_timeout = connect_timeout
        self.serial_factory = serial_factory
        self._serial: Optional[serial.Serial] = None
        self._gprs_up = False
        self._connected = False

    # --- Serial primitives --- #
    def open(self) -> None:
        """Open the serial port (auto-detecting it when no name was given)."""
        if self._serial is not None:
            return
        target_port = self.port_name
        if target_port is None:
            target_port = get_first_modem().port_name
            self.port_name = target_port
        try:
            self._serial = self.serial_factory(
                port=target_port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.command_timeout,
                write_timeout=self.command_timeout,
            )
        except serial.SerialException as ex:
            raise DeviceATError(f"Cannot open {target_port}: {ex}") from ex
        self.logger.info("Opened modem port %s at %d baud", target_port, self.baudrate)

    def release(self) -> None:
        """Close the TCP link and the serial port."""
        self.close()
        if self._serial is not None:
            try:
                self._serial.close()
            except serial.SerialException as ex:
                self.logger.debug("Error closing %s: %s", self.port_name, ex)
            self._serial = None
            self._gprs_up = False

    def _port(self) -> serial.Serial:
        if self._serial is None:
            raise DeviceATError("serial port not open")
        return self._serial

    def _write(self, data: bytes) -> None:
        try:
            self._port().write(data)
            self._port().flush()
        except serial.SerialTimeoutException as ex:
            raise TransportTimeout(f"Write timeout on {self.port_name}") from ex
        except serial.SerialException as ex:
            raise DeviceATError(f"Serial write failed on {self.port_name}: {ex}") from ex

    def _read_raw_line(self, deadline: float) -> bytes:
        """Read bytes up to and including ``\\n``; partial or empty on timeout."""
        port = self._port()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return b""
        try:
            port.timeout = remaining
            return port.read_until(b"\n")
        except serial.SerialException as ex:
            raise DeviceATError(f"Serial read failed on {self.port_name}: {ex}") from ex

    def _read_line(self, deadline: float) -> Optional[str]:
        """Read one CRLF line before ``deadline``; None on timeout."""
        raw = self._read_raw_line(deadline)
        if not raw.endswith(b"\n"):
            return None
        return raw.decode("ascii", errors="replace").strip()

    def command(
        self,
        cmd: str,
        expect: Sequence[str] = ("OK",),
        fail: Sequence[str] = ("ERROR", "+CME ERROR"),
        timeout: Optional[float] = None,
    ) -> list[str]:
        """Send an AT command and collect lines until a final result code.

        Args:
            cmd: Command without line ending.
            expect: Line prefixes that end the command successfully.
            fail: Line prefixes that end it with an error.
            timeout: Seconds to wait, ``command_timeout`` by default.

        Returns:
            Non-empty response lines, the final one included.

        Raises:
            DeviceATError: On a failure result code or when no final code arrives.
        """
        deadline = time.monotonic() + (timeout if timeout is not None else self.command_timeout)
        self.logger.debug("AT >> %s", cmd)
        self._write(cmd.encode("ascii") + b"\r\n")

        lines: list[str] = []
        while True:
            line = self._read_line(deadline)
            if line is None:
                raise DeviceATError(f"No final response to {cmd} (got {lines})")
            if not line or line == cmd:
                continue
            self.logger.debug("AT << %s", line)
            lines.append(line)
            if any(line.startswith(f) for f in fail):
                raise DeviceATError(f"{cmd} failed: {line}")
            if any(line.startswith(e) for e in expect):
                return lines

    # --- Bring-up --- #
    def probe(self) -> None:
        """Check the modem answers ``AT`` and disable echo."""
        last: Optional[DeviceATError] = None
        for _ in range(AT_PROBE_ATTEMPTS):
            try:
                self.command("AT", timeout=min(self.command_timeout, 2.0))
                break
            except DeviceATError as ex:
                last = ex
        else:
            raise DeviceATError(f"Modem on {self.port_name} does not answer AT") from last
        self.command("ATE0")

    def check_sim(self) -> None:
        lines = self.command("AT+CPIN?")
        if not any("READY" in line for line in lines):
            raise DeviceATError(f"SIM not ready: {lines}")

    def wait_registration(self) -> None:
        """Wait until the modem reports home (1) or roaming (5) registration."""
        self.command("AT+CREG=1")
        lines = self.command("AT+CREG?")
        if self._registered(lines):
            return
        deadline = time.monotonic() + self.registration_timeout
        while True:
            line = self._read_line(deadline)
            if line is None:
                raise DeviceATError("Network registration timed out")
            if self._registered([line]):
                self.logger.info("Network registered")
                return

    @staticmethod
    def _registered(lines: Sequence[str]) -> bool:
        for line in lines:
            m = _CREG_RE.search(line)
            if m and m.group(1) in ("1", "5"):
                return True
        return False

    def attach_gprs(self) -> str:
        """Attach to GPRS and bring up the PDP context.

        Returns:
            Local IP address assigned by the network.
        """
        lines = self.command("AT+CGATT?")
        if not any(line.replace(" ", "").startswith("+CGATT:1") for line in lines):
            self.command("AT+CGATT=1", timeout=10.0)
        self.command("AT+CIPSHUT", expect=("SHUT OK",), timeout=10.0)
        self.command("AT+CIPMUX=0")
        self.command(f'AT+CSTT="{self.apn}","{self.apn_user}","{self.apn_pass}"')
        self.command("AT+CIICR", timeout=30.0)

        self._write(b"AT+CIFSR\r\n")
        deadline = time.monotonic() + self.command_timeout
        while True:
            line = self._read_line(deadline)
            if line is None:
                raise DeviceATError("No IP address from AT+CIFSR")
            if line.startswith("ERROR"):
                raise DeviceATError("AT+CIFSR failed")
            if _IP_RE.match(line):
                self._gprs_up = True
                self.logger.info("GPRS up, IP %s", line)
                return line

    # --- Transport --- #
    def connect(self) -> None:
        self.open()
        if not self._gprs_up:
            self.probe()
            self.check_sim()
            self.wait_registration()
            self.attach_gprs()
        self._connected = False
        self.discard_input()
        try:
            self.command(
                f'AT+CIPSTART="TCP","{self.host}","{self.port}"',
                expect=("CONNECT OK", "ALREADY CONNECT"),
                fail=("CONNECT FAIL", "ERROR", "STATE: PDP DEACT"),
                timeout=self.connect_timeout,
            )
        except DeviceATError:
            # next connect() redoes the GPRS bring-up
            self._gprs_up = False
            raise
        self._connected = True
        self.logger.info("TCP connected to %s:%s via %s", self.host, self.port, self.port_name)

    def close(self) -> None:
        self.discard_input()
        if not self._connected:
            return
        self._connected = False
        try:
            self.command("AT+CIPCLOSE", expect=("CLOSE OK",), fail=("ERROR",))
        except TransportError as ex:
            self.logger.debug("AT+CIPCLOSE: %s", ex)

    def is_connected(self) -> bool:
        return self._connected and self._serial is not None

    def _wait_prompt(self, deadline: float) -> None:
        port = self._port()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TransportTimeout("no CIPSEND prompt")
        try:
            port.timeout = remaining
            raw = port.read_until(b">")
        except serial.SerialException as ex:
            raise DeviceATError(f"Serial read failed on {self.port_name}: {ex}") from ex
        if not raw.endswith(b">"):
            if b"ERROR" in raw:
                self._connected = False
                raise TransportError("CIPSEND rejected, link down")
            raise TransportTimeout("no CIPSEND prompt")

    def send(self, data: bytes, timeout: float) -> None:
        if not self.is_connected():
            raise TransportError("not connected")
        for start in range(0, len(data), SEND_BLOCK):
            block = data[start : start + SEND_BLOCK]
            deadline = time.monotonic() + timeout
            self._write(f"AT+CIPSEND={len(block)}\r\n".encode("ascii"))
            self._wait_prompt(deadline)
            self._write(block)
            try:
                self._wait_send_ok(deadline)
            except DeviceATError as ex:
                self._connected = False
                raise TransportError(str(ex)) from ex

    def _wait_send_ok(self, deadline: float) -> None:
        """Wait for ``SEND OK`` after a CIPSEND block.

        The server reply can reach the serial stream ahead of the result code.
        Such bytes go back into the receive buffer unchanged so the framing
        reader still sees them. Only the result line and the blank separator
        directly before it are consumed.
        """
        separator = b""
        while True:
            raw = self._read_raw_line(deadline)
            if not raw.endswith(b"\n"):
                self._rx.extend(separator + raw)
                raise TransportTimeout("no SEND OK before deadline")
            if raw.rstrip(b"\r\n") == b"SEND OK":
                return
            line = raw.decode("ascii", errors="replace").strip()
            if line.startswith(SEND_FAIL_CODES):
                raise DeviceATError(line)
            self._rx.extend(separator)
            separator = raw if not raw.strip() else b""
            if not separator:
                self._rx.extend(raw)

    def _read_some(self, timeout: float) -> bytes:
        port = self._port()
        try:
            port.timeout = timeout
            first = port.read(1)
            if not first:
                return b""
            waiting = port.in_waiting
            return first + (port.read(waiting) if waiting else b"")
        except serial.SerialException as ex:
            self._connected = False
            raise TransportError(f"Serial read failed on {self.port_name}: {ex}") from ex

    # --- Diagnostics --- #
    def signal_quality(self) -> int:
        """Return the ``AT+CSQ`` RSSI value (0-31, 99 when unknown)."""
        for line in self.command("AT+CSQ"):
            m = _CSQ_RE.search(line)
            if m:
                return int(m.group(1))
        return 99

    def connection_status(self) -> str:
        """Return the ``AT+CIPSTATUS`` state as a readable string."""
        lines = self.command("AT+CIPSTATUS", expect=("STATE:",))
        state = lines[-1].split(":", 1)[1].strip()
        for key, name in STATUS_NAMES.items():
            if key in state:
                if key in ("TCP CLOSED", "PDP DEACT"):
                    self._connected = False
                if key == "PDP DEACT":
                    self._gprs_up = False
                return name
        return "Unknown"
