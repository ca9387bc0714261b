import pytest

from device.at_transport import SerialATTransport
from device.errors import DeviceATError, TransportError
from fota.integrity import crc16
from fota.wire import ChunkFrame, ChunkHeader, FrameReader, encode_chunk, encode_control

CIPSTART = 'AT+CIPSTART="TCP","fota.example","8266"'

MODEM_SCRIPT = {
    "AT": ["AT", "OK"],
    "AT+CPIN?": ["+CPIN: READY", "OK"],
    # searching at first, then the unsolicited registration notice
    "AT+CREG?": ["+CREG: 1,2", "OK", "+CREG: 1"],
    "AT+CGATT?": ["+CGATT: 1", "OK"],
    "AT+CIPSHUT": ["SHUT OK"],
    "AT+CIFSR": ["10.64.1.7"],
    CIPSTART: ["OK", "", "CONNECT OK"],
    "AT+CIPCLOSE": ["CLOSE OK"],
    "AT+CSQ": ["+CSQ: 18,0", "OK"],
    "AT+CIPSTATUS": ["OK", "", "STATE: TCP CLOSED"],
}


class FakeModem:
    """Scripted stand-in for a pyserial port attached to a SIM800-style modem.

    Commands not in the script answer ``OK``. After an ``AT+CIPSEND`` payload the
    modem reports ``SEND OK`` and then delivers the next queued server reply.
    """

    def __init__(self, script):
        self.script = dict(script)
        self.rx = bytearray()
        self.commands: list[str] = []
        self.payloads: list[bytes] = []
        self.server_replies: list[bytes] = []
        self.timeout = None
        self.closed = False
        self.reply_before_send_ok = False
        self._payload_pending = False

    def write(self, data: bytes) -> int:
        if self._payload_pending:
            self._payload_pending = False
            self.payloads.append(bytes(data))
            reply = self.server_replies.pop(0) if self.server_replies else b""
            if self.reply_before_send_ok:
                self.rx += reply + b"\r\nSEND OK\r\n"
            else:
                self.rx += b"\r\nSEND OK\r\n" + reply
            return len(data)
        cmd = data.decode("ascii").strip()
        self.commands.append(cmd)
        if cmd.startswith("AT+CIPSEND="):
            self._payload_pending = True
            self.rx += b"> "
            return len(data)
        lines = self.script.get(cmd, ["OK"])
        for line in lines:
            self.rx += line.encode("ascii") + b"\r\n"
        return len(data)

    def flush(self) -> None:
        pass

    def read_until(self, expected: bytes = b"\n") -> bytes:
        idx = self.rx.find(expected)
        if idx < 0:
            out = bytes(self.rx)
            self.rx.clear()
            return out
        out = bytes(self.rx[: idx + len(expected)])
        del self.rx[: idx + len(expected)]
        return out

    def read(self, size: int = 1) -> bytes:
        out = bytes(self.rx[:size])
        del self.rx[:size]
        return out

    @property
    def in_waiting(self) -> int:
        return len(self.rx)

    def close(self) -> None:
        self.closed = True


def make_transport(script=None):
    modem = FakeModem(MODEM_SCRIPT if script is None else script)
    opened = {}

    def factory(**kwargs):
        opened.update(kwargs)
        return modem

    transport = SerialATTransport(
        "/dev/ttyFAKE",
        host="fota.example",
        port=8266,
        command_timeout=0.5,
        registration_timeout=0.5,
        connect_timeout=0.5,
        serial_factory=factory,
    )
    return transport, modem, opened


def test_connect_brings_up_gprs_and_tcp():
    transport, modem, opened = make_transport()
    transport.connect()

    assert opened["port"] == "/dev/ttyFAKE"
    assert opened["baudrate"] == 115200
    assert transport.is_connected()
    assert modem.commands == [
        "AT",
        "ATE0",
        "AT+CPIN?",
        "AT+CREG=1",
        "AT+CREG?",
        "AT+CGATT?",
        "AT+CIPSHUT",
        "AT+CIPMUX=0",
        'AT+CSTT="internet","",""',
        "AT+CIICR",
        "AT+CIFSR",
        CIPSTART,
    ]


def test_reconnect_skips_bring_up():
    transport, modem, _ = make_transport()
    transport.connect()
    transport.close()
    assert not transport.is_connected()
    assert modem.commands[-1] == "AT+CIPCLOSE"

    modem.commands.clear()
    transport.connect()
    assert modem.commands == [CIPSTART]


def test_send_splits_into_cipsend_blocks():
    transport, modem, _ = make_transport()
    transport.connect()
    data = bytes(range(256)) * 10
    transport.send(data, timeout=1.0)

    sends = [c for c in modem.commands if c.startswith("AT+CIPSEND=")]
    assert sends == ["AT+CIPSEND=1024", "AT+CIPSEND=1024", "AT+CIPSEND=512"]
    assert b"".join(modem.payloads) == data


def test_frames_are_read_from_the_raw_stream():
    transport, modem, _ = make_transport()
    transport.connect()

    payload = b"OK\r\nERROR\r\n> \n\x00\xff"
    header = ChunkHeader.build(
        size=len(payload), offset=0, data_crc16=crc16(payload), compressed=False, progress=50, chunk_id=0
    )
    modem.server_replies.append(encode_control({"status": "success", "lastOffset": 0}))
    modem.server_replies.append(encode_chunk(header, payload))

    reader = FrameReader(transport)
    transport.send(b'{"action":"resume"}\n', timeout=1.0)
    assert reader.read_message(1.0) == {"status": "success", "lastOffset": 0}

    transport.send(b'{"action":"download"}\n', timeout=1.0)
    frame = reader.read_message(1.0)
    assert isinstance(frame, ChunkFrame)
    assert frame.payload == payload


def test_reply_arriving_before_send_ok_is_kept():
    transport, modem, _ = make_transport()
    transport.connect()
    modem.reply_before_send_ok = True

    payload = b"\r\n\x00SEND OK\n"
    header = ChunkHeader.build(
        size=len(payload), offset=512, data_crc16=crc16(payload), compressed=False, progress=75, chunk_id=1
    )
    modem.server_replies.append(encode_control({"status": "success", "lastOffset": 512}))
    modem.server_replies.append(encode_chunk(header, payload))

    reader = FrameReader(transport)
    transport.send(b'{"action":"resume"}\n', timeout=1.0)
    assert transport.is_connected()
    assert reader.read_message(0.5) == {"status": "success", "lastOffset": 512}

    transport.send(b'{"action":"download"}\n', timeout=1.0)
    frame = reader.read_message(0.5)
    assert isinstance(frame, ChunkFrame)
    assert frame.payload == payload


def test_send_failure_drops_link():
    transport, modem, _ = make_transport()
    transport.connect()

    def broken_write(data, _orig=modem.write):
        n = _orig(data)
        if modem.payloads:
            modem.rx = bytearray(b"\r\nSEND FAIL\r\n")
        return n

    modem.write = broken_write
    with pytest.raises(TransportError):
        transport.send(b"hello\n", timeout=1.0)
    assert not transport.is_connected()


def test_connect_failure_forces_new_bring_up():
    script = dict(MODEM_SCRIPT)
    script[CIPSTART] = ["OK", "CONNECT FAIL"]
    transport, modem, _ = make_transport(script)
    with pytest.raises(DeviceATError):
        transport.connect()
    assert not transport.is_connected()

    modem.script[CIPSTART] = MODEM_SCRIPT[CIPSTART]
    modem.commands.clear()
    transport.connect()
    assert modem.commands[0] == "AT"


def test_sim_not_ready():
    script = dict(MODEM_SCRIPT)
    script["AT+CPIN?"] = ["+CPIN: SIM PIN", "OK"]
    transport, _, _ = make_transport(script)
    with pytest.raises(DeviceATError, match="SIM not ready"):
        transport.connect()


def test_silent_modem():
    script = dict(MODEM_SCRIPT)
    script["AT"] = []
    transport, modem, _ = make_transport(script)
    with pytest.raises(DeviceATError, match="does not answer"):
        transport.connect()
    assert modem.commands == ["AT", "AT", "AT"]


def test_registration_denied_times_out():
    script = dict(MODEM_SCRIPT)
    script["AT+CREG?"] = ["+CREG: 1,3", "OK"]
    transport, _, _ = make_transport(script)
    with pytest.raises(DeviceATError, match="registration"):
        transport.connect()


def test_diagnostics():
    transport, _, _ = make_transport()
    transport.connect()
    assert transport.signal_quality() == 18
    assert transport.connection_status() == "TCP Closed"
    assert not transport.is_connected()


def test_release_closes_port():
    transport, modem, _ = make_transport()
    transport.connect()
    transport.release()
    assert modem.closed
    assert not transport.is_connected()
