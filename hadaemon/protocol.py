"""Wire format shared by the script service and its command-line clients."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

MAX_HOST_NUM = 64

SCRIPT_SOCKET_NUM = 3
SCRIPT_SOCK_NAME_BASE = "xha_socket_"
SCRIPT_MAGIC = 0xFAFBFCFD

LIVESET_STATUS_STARTING = 0
LIVESET_STATUS_ONLINE = 1

BUILD_DATE_LEN = 64
BUILD_ID_LEN = 64

PRIVATELOG_CMD_NONE = 0
PRIVATELOG_CMD_ENABLE = 1
PRIVATELOG_CMD_DISABLE = 2

MAX_FIST_NAME_LEN = 64

_HEADER = struct.Struct("=4I")
_U32 = struct.Struct("=I")
_BUILDID = struct.Struct(f"={BUILD_DATE_LEN}s{BUILD_ID_LEN}s")
_FIST_REQUEST = struct.Struct(f"={MAX_FIST_NAME_LEN}si")

HEADER_SIZE = _HEADER.size


class ScriptType(enum.IntEnum):
    """Request types understood by the script service."""

    BASE = 0
    QUERY_LIVESET = 1
    PROPOSE_MASTER = 2
    DISARM_FENCING = 3
    SET_POOL_STATE = 4
    SET_EXCLUDED = 5
    CLEAR_EXCLUDED = 6
    PID = 7
    HOSTSTATE = 8
    CANCEL_MASTER = 9
    GETLOGMASK = 10
    SETLOGMASK = 11
    RESETLOGMASK = 12
    DUMPCOM = 13
    BUILDID = 14
    PRIVATELOG = 15
    FIST = 16
    RELOAD_HOST_WEIGHT = 17


SCRIPT_TYPE_NUM = len(ScriptType)


class SocketIndex(enum.IntEnum):
    """Listening sockets of the script service."""

    OTHER = 0
    QUERY = 1
    INTERNAL = 2


_SOCKET_TABLE: dict[ScriptType, SocketIndex | None] = {
    ScriptType.BASE: None,
    ScriptType.QUERY_LIVESET: SocketIndex.QUERY,
    ScriptType.PROPOSE_MASTER: SocketIndex.OTHER,
    ScriptType.DISARM_FENCING: SocketIndex.OTHER,
    ScriptType.SET_POOL_STATE: SocketIndex.OTHER,
    ScriptType.SET_EXCLUDED: SocketIndex.OTHER,
    ScriptType.CLEAR_EXCLUDED: SocketIndex.OTHER,
    ScriptType.PID: SocketIndex.INTERNAL,
    ScriptType.HOSTSTATE: SocketIndex.QUERY,
    ScriptType.CANCEL_MASTER: SocketIndex.OTHER,
    ScriptType.GETLOGMASK: SocketIndex.INTERNAL,
    ScriptType.SETLOGMASK: SocketIndex.INTERNAL,
    ScriptType.RESETLOGMASK: SocketIndex.INTERNAL,
    ScriptType.DUMPCOM: SocketIndex.INTERNAL,
    ScriptType.BUILDID: SocketIndex.INTERNAL,
    ScriptType.PRIVATELOG: SocketIndex.INTERNAL,
    ScriptType.FIST: SocketIndex.INTERNAL,
    ScriptType.RELOAD_HOST_WEIGHT: SocketIndex.INTERNAL,
}


class ProtocolError(Exception):
    """Raised for malformed or too short messages."""


@dataclass
class Header:
    """Fixed-size header in front of every request and response."""

    magic: int = SCRIPT_MAGIC
    response: int = 0
    type: int = 0
    length: int = 0

    def pack(self) -> bytes:
        return _HEADER.pack(self.magic, self.response, self.type, self.length)

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        if len(data) < HEADER_SIZE:
            raise ProtocolError(f"header too short: {len(data)} bytes")
        return cls(*_HEADER.unpack_from(data))


def validate_request_header(header: Header, max_body: int) -> ScriptType:
    """Check a request header and return its type; ProtocolError if invalid."""
    if header.magic != SCRIPT_MAGIC:
        raise ProtocolError(f"head->magic is invalid ({header.magic:x})")
    if header.response != 0:
        raise ProtocolError(f"head->response is invalid ({header.response:x})")
    if header.type >= SCRIPT_TYPE_NUM:
        raise ProtocolError(f"head->type is invalid ({header.type:x})")
    if header.length > max_body:
        raise ProtocolError(f"head->length is invalid ({header.length:x})")
    return ScriptType(header.type)


def socket_index_for(script_type) -> SocketIndex | None:
    """Return the socket serving a request type, None for the base type."""
    try:
        kind = ScriptType(script_type)
    except ValueError:
        raise ValueError(f"invalid type ({script_type})") from None
    return _SOCKET_TABLE[kind]


def socket_names() -> tuple[str, ...]:
    """Names of the listening sockets in the abstract namespace, by index."""
    return tuple(f"{SCRIPT_SOCK_NAME_BASE}{index}" for index in range(SCRIPT_SOCKET_NUM))


def pack_u32(value: int) -> bytes:
    """Encode one unsigned 32-bit field."""
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"value out of range for u32: {value}")
    return _U32.pack(value)


def unpack_u32(data: bytes) -> int:
    """Decode one unsigned 32-bit field from the start of data."""
    if len(data) < _U32.size:
        raise ProtocolError(f"body too short: {len(data)} bytes")
    return _U32.unpack_from(data)[0]


def _fixed_string(text: str, size: int) -> bytes:
    raw = text.encode("utf-8")[: size - 1]
    return raw.ljust(size, b"\0")


def pack_buildid(build_date: str, build_id: str) -> bytes:
    """Encode the build date and id, each truncated to fit a NUL-terminated field."""
    return _BUILDID.pack(_fixed_string(build_date, BUILD_DATE_LEN),
                         _fixed_string(build_id, BUILD_ID_LEN))


def unpack_fist_request(data: bytes) -> tuple[str, bool]:
    """Decode a FIST request into (point name, enable flag)."""
    if len(data) < _FIST_REQUEST.size:
        raise ProtocolError(f"fist request too short: {len(data)} bytes")
    raw_name, flag = _FIST_REQUEST.unpack_from(data)
    name = raw_name.split(b"\0", 1)[0].decode("utf-8", errors="replace")
    return name, bool(flag)


def pack_fist_request(name: str, enable: bool) -> bytes:
    """Encode a FIST request."""
    return _FIST_REQUEST.pack(_fixed_string(name, MAX_FIST_NAME_LEN), 1 if enable else 0)