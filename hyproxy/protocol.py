"""Wire messages of the proxy protocol and UDP fragmentation."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from typing import List, Optional

PROTOCOL_VERSION = 3
PROTOCOL_TIMEOUT = 10.0  # seconds


class ProtocolError(ValueError):
    """Raised when a message cannot be encoded or decoded."""


@dataclass(frozen=True)
class QError:
    """An application error code used to close a connection."""

    code: int
    msg: str

    def send(self, conn):
        """Close conn, which must provide close_with_error(code, msg), with this error."""
        return conn.close_with_error(self.code, self.msg)


Q_ERROR_GENERIC = QError(0, "")
Q_ERROR_PROTOCOL = QError(1, "protocol error")
Q_ERROR_AUTH = QError(2, "auth error")


def _pack(fmt: str, *values) -> bytes:
    try:
        return struct.pack(">" + fmt, *values)
    except struct.error as exc:
        raise ProtocolError(str(exc)) from None


def _blob(data: bytes) -> bytes:
    return _pack("H", len(data)) + data


def _encode(s: str) -> bytes:
    return s.encode("utf-8", "surrogateescape")


def _decode(b: bytes) -> str:
    return b.decode("utf-8", "surrogateescape")


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def take(self, n: int) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise ProtocolError("unexpected end of data")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        s = struct.Struct(">" + fmt)
        return s.unpack(self.take(s.size))

    def blob(self) -> bytes:
        (n,) = self.unpack("H")
        return self.take(n)


@dataclass(frozen=True)
class MaxRate:
    send_bps: int
    recv_bps: int

    def to_bytes(self) -> bytes:
        return _pack("QQ", self.send_bps, self.recv_bps)

    @classmethod
    def _read(cls, r: _Reader) -> "MaxRate":
        return cls(*r.unpack("QQ"))


@dataclass(frozen=True)
class ClientHello:
    rate: MaxRate
    auth: bytes = b""

    def to_bytes(self) -> bytes:
        return self.rate.to_bytes() + _blob(self.auth)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ClientHello":
        r = _Reader(data)
        return cls(MaxRate._read(r), r.blob())


@dataclass(frozen=True)
class ServerHello:
    ok: bool
    rate: MaxRate
    message: str = ""

    def to_bytes(self) -> bytes:
        return _pack("?", self.ok) + self.rate.to_bytes() + _blob(_encode(self.message))

    @classmethod
    def from_bytes(cls, data: bytes) -> "ServerHello":
        r = _Reader(data)
        (ok,) = r.unpack("?")
        return cls(ok, MaxRate._read(r), _decode(r.blob()))


@dataclass(frozen=True)
class ClientRequest:
    udp: bool
    host: str = ""
    port: int = 0

    def to_bytes(self) -> bytes:
        return _pack("?", self.udp) + _blob(_encode(self.host)) + _pack("H", self.port)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ClientRequest":
        r = _Reader(data)
        (udp,) = r.unpack("?")
        host = _decode(r.blob())
        (port,) = r.unpack("H")
        return cls(udp, host, port)


@dataclass(frozen=True)
class ServerResponse:
    ok: bool
    udp_session_id: int = 0
    message: str = ""

    def to_bytes(self) -> bytes:
        return _pack("?I", self.ok, self.udp_session_id) + _blob(_encode(self.message))

    @classmethod
    def from_bytes(cls, data: bytes) -> "ServerResponse":
        r = _Reader(data)
        ok, session_id = r.unpack("?I")
        return cls(ok, session_id, _decode(r.blob()))


@dataclass(frozen=True)
class UDPMessage:
    """A UDP datagram relayed over the tunnel.

    msg_id must be non-zero when fragmented; frag_count is 1 when not fragmented.
    """

    session_id: int
    host: str
    port: int
    msg_id: int = 0
    frag_id: int = 0
    frag_count: int = 1
    data: bytes = b""

    def header_size(self) -> int:
        return 4 + 2 + len(_encode(self.host)) + 2 + 2 + 1 + 1 + 2

    def size(self) -> int:
        return self.header_size() + len(self.data)

    def to_bytes(self) -> bytes:
        return (
            _pack("I", self.session_id)
            + _blob(_encode(self.host))
            + _pack("HHBB", self.port, self.msg_id, self.frag_id, self.frag_count)
            + _blob(bytes(self.data))
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "UDPMessage":
        r = _Reader(data)
        (session_id,) = r.unpack("I")
        host = _decode(r.blob())
        port, msg_id, frag_id, frag_count = r.unpack("HHBB")
        return cls(session_id, host, port, msg_id, frag_id, frag_count, r.blob())


def frag_udp_message(m: UDPMessage, max_size: int) -> List[UDPMessage]:
    """Split m into fragments whose encoded size is at most max_size."""
    if m.size() <= max_size:
        return [m]
    max_payload = max_size - m.header_size()
    if max_payload <= 0:
        raise ValueError(f"max size {max_size} leaves no room for payload")
    payload = bytes(m.data)
    chunks = [payload[off : off + max_payload] for off in range(0, len(payload), max_payload)]
    return [
        replace(m, frag_id=frag_id, frag_count=len(chunks), data=chunk)
        for frag_id, chunk in enumerate(chunks)
    ]


@dataclass
class Defragger:
    """Reassembles fragments of one message at a time."""

    _msg_id: int = field(default=0, init=False)
    _frags: List[Optional[UDPMessage]] = field(default_factory=list, init=False)
    _count: int = field(default=0, init=False)

    def feed(self, m: UDPMessage) -> Optional[UDPMessage]:
        """Return the whole message once complete, otherwise None."""
        if m.frag_count <= 1:
            return m
        if m.frag_id >= m.frag_count:
            return None
        if m.msg_id != self._msg_id or m.frag_count != len(self._frags):
            self._msg_id = m.msg_id
            self._frags = [None] * m.frag_count
            self._count = 1
            self._frags[m.frag_id] = m
        elif self._frags[m.frag_id] is None:
            self._frags[m.frag_id] = m
            self._count += 1
            if self._count == len(self._frags):
                data = b"".join(bytes(frag.data) for frag in self._frags)
                return replace(m, data=data, frag_id=0, frag_count=1)
        return None