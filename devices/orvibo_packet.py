"""Orvibo B25 smart plug packets: framing, integrity check and JSON payloads.

Frame layout (all integers big-endian):

    offset  size  field
    0       2     magic "hd"
    2       2     total frame length
    4       2     packet type, "pk" (shared key, HELLO phase) or "dk" (session key)
    6       4     CRC-32 of the encrypted payload
    10      32    session id (ASCII, space padded)
    42      n     AES-128-ECB encrypted JSON object

The numeric command code travels inside the JSON as "cmd".
"""

import json
import logging
import struct
import time
import zlib

from devices import orvibo_cipher

log = logging.getLogger(__name__)

MAGIC = b"hd"
HEADER_SIZE = 42
SESSION_ID_SIZE = 32
MAX_FRAME_SIZE = 4096

HELLO_TYPE = "pk"
SESSION_TYPE = "dk"

# Command codes, fixed by firmware
HELLO = 0
HANDSHAKE = 6
STATE_UPDATE_CONFIRM = 15
HEARTBEAT = 32
STATE_UPDATE = 42
UNKNOWN = -1

COMMAND_NAMES = {
    HELLO: "HELLO",
    HANDSHAKE: "HANDSHAKE",
    STATE_UPDATE_CONFIRM: "STATE_UPDATE_CONFIRM",
    HEARTBEAT: "HEARTBEAT",
    STATE_UPDATE: "STATE_UPDATE",
}


class InvalidFrame(ValueError):
    """Frame failed header, length, checksum or payload validation."""


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


class Packet:
    """A validated frame. Call decrypt() before reading payload fields."""

    def __init__(self, packet_type, crc, session_id, payload):
        self.packet_type = packet_type
        self.crc = crc
        self.session_id = session_id
        self.payload = payload
        self.fields = {}

    @property
    def is_hello(self) -> bool:
        return self.packet_type == HELLO_TYPE

    def decrypt(self, key) -> dict:
        """Decrypt the payload with the key for this packet's phase.

        Raises InvalidFrame when the plaintext is not a JSON object.
        """
        try:
            plain = orvibo_cipher.decrypt(self.payload, key)
            data = json.loads(plain.decode("utf-8"))
        except ValueError as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors too
            raise InvalidFrame(f"Undecodable {self.packet_type} payload: {e}") from e
        if not isinstance(data, dict):
            raise InvalidFrame(f"Payload is {type(data).__name__}, expected object")
        self.fields = data
        return data

    # Accessors never raise; missing or mistyped fields give None.

    @property
    def command(self) -> int:
        cmd = self.fields.get("cmd")
        return cmd if _is_int(cmd) else UNKNOWN

    @property
    def serial(self):
        serial = self.fields.get("serial")
        if _is_int(serial) or isinstance(serial, str):
            return serial
        return None

    @property
    def uid(self):
        uid = self.fields.get("uid")
        return uid if isinstance(uid, str) and uid else None

    @property
    def model_id(self):
        model_id = self.fields.get("modelId")
        return model_id if isinstance(model_id, str) and model_id else None

    @property
    def value1(self):
        value = self.fields.get("value1")
        return value if _is_int(value) and value in (0, 1) else None

    def describe(self, direction=""):
        name = COMMAND_NAMES.get(self.command, f"cmd {self.fields.get('cmd')!r}")
        return (f"{direction}{self.packet_type} [{name}] id={self.session_id.strip() or '-'} "
                f"{json.dumps(self.fields, sort_keys=True)}")

    def __repr__(self):
        return (f"Packet(type={self.packet_type!r}, crc={self.crc:#010x}, "
                f"payload_len={len(self.payload)})")


def decode(raw: bytes) -> Packet:
    """Validate a single frame and split it into its parts. Raises InvalidFrame."""
    if len(raw) < HEADER_SIZE:
        raise InvalidFrame(f"Frame too short: {len(raw)} bytes")
    if raw[:2] != MAGIC:
        raise InvalidFrame(f"Bad magic {raw[:2].hex()}")

    (length,) = struct.unpack(">H", raw[2:4])
    if length != len(raw):
        raise InvalidFrame(f"Length field {length} does not match frame size {len(raw)}")

    try:
        packet_type = raw[4:6].decode("ascii")
        session_id = raw[10:HEADER_SIZE].decode("ascii")
    except UnicodeDecodeError as e:
        raise InvalidFrame(f"Non-ASCII header: {e}") from e

    (crc,) = struct.unpack(">I", raw[6:10])
    payload = bytes(raw[HEADER_SIZE:])
    if zlib.crc32(payload) != crc:
        raise InvalidFrame(f"CRC mismatch: header {crc:#010x}, computed {zlib.crc32(payload):#010x}")

    return Packet(packet_type, crc, session_id, payload)


def encode(packet_type, fields, key, session_id="") -> bytes:
    """Build a complete frame around a JSON payload encrypted with key."""
    body = json.dumps(fields, separators=(",", ":")).encode("utf-8")
    payload = orvibo_cipher.encrypt(body, key)
    id_field = (session_id or "").encode("ascii")[:SESSION_ID_SIZE].ljust(SESSION_ID_SIZE, b" ")
    return b"".join([
        MAGIC,
        struct.pack(">H", HEADER_SIZE + len(payload)),
        packet_type.encode("ascii"),
        struct.pack(">I", zlib.crc32(payload)),
        id_field,
        payload,
    ])


def _now_ms():
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Outgoing packets. `session` is a state.PlugSession.
# ---------------------------------------------------------------------------

def hello_reply(session, shared_key) -> bytes:
    """Hands the plug its session key. The only reply sealed with the shared key."""
    fields = {
        "cmd": HELLO,
        "status": 0,
        "serial": session.serial,
        "key": session.encryption_key,
    }
    return encode(HELLO_TYPE, fields, shared_key, session.session_id)


def handshake_reply(session, utc=None) -> bytes:
    fields = {
        "cmd": HANDSHAKE,
        "status": 0,
        "serial": session.serial,
        "utc": utc if utc is not None else _now_ms(),
    }
    return encode(SESSION_TYPE, fields, session.encryption_key, session.session_id)


def heartbeat_reply(session, utc=None) -> bytes:
    fields = {
        "cmd": HEARTBEAT,
        "status": 0,
        "serial": session.serial,
        "uid": session.uid,
        "utc": utc if utc is not None else _now_ms(),
    }
    return encode(SESSION_TYPE, fields, session.encryption_key, session.session_id)


def confirm_state_reply(session) -> bytes:
    fields = {
        "cmd": STATE_UPDATE,
        "status": 0,
        "serial": session.serial,
        "uid": session.uid,
        "alarmType": 1,
        "statusType": 0,
    }
    return encode(SESSION_TYPE, fields, session.encryption_key, session.session_id)


def default_reply(session) -> bytes:
    """Generic acknowledgement echoing the command that prompted it."""
    fields = {
        "cmd": session.last_command,
        "serial": session.serial,
        "status": 0,
        "uid": session.uid,
    }
    return encode(SESSION_TYPE, fields, session.encryption_key, session.session_id)


def state_update_request(session) -> bytes:
    """Server-initiated command switching the plug to session.state."""
    fields = {
        "cmd": STATE_UPDATE_CONFIRM,
        "serial": session.serial,
        "uid": session.uid,
        "clientSessionId": session.client_session_id,
        "deviceId": session.device_id,
        "value1": session.state,
        "value2": 0,
        "value3": 0,
        "value4": 0,
        "defaultResponse": 1,
        "ver": "2.0.0",
        "qualityOfService": 1,
        "propertyResponse": 0,
    }
    return encode(SESSION_TYPE, fields, session.encryption_key, session.session_id)


class FrameBuffer:
    """Reassembles frames from a TCP byte stream using the length field."""

    def __init__(self):
        self._buf = bytearray()

    def __len__(self):
        return len(self._buf)

    def feed(self, data: bytes) -> list:
        """Append received bytes and return every complete frame, in order."""
        self._buf.extend(data)
        frames = []
        while self._buf:
            start = self._buf.find(MAGIC)
            if start == -1:
                # Keep a trailing "h" that may be the first half of the next magic
                keep = 1 if self._buf.endswith(MAGIC[:1]) else 0
                dropped = len(self._buf) - keep
                if dropped:
                    log.warning("Discarding %d bytes with no frame header", dropped)
                    del self._buf[:dropped]
                break
            if start:
                log.warning("Discarding %d bytes before frame header", start)
                del self._buf[:start]
            if len(self._buf) < 4:
                break
            (length,) = struct.unpack_from(">H", self._buf, 2)
            if length < HEADER_SIZE or length > MAX_FRAME_SIZE:
                log.warning("Implausible frame length %d, resyncing", length)
                del self._buf[:len(MAGIC)]
                continue
            if len(self._buf) < length:
                break
            frames.append(bytes(self._buf[:length]))
            del self._buf[:length]
        return frames
