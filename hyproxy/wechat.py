"""UDP socket that disguises datagrams as video call traffic."""

from __future__ import annotations

import random
import socket
import struct
import threading
from typing import Optional, Tuple

from hyproxy.obfs import SALT_LEN, XPlusObfuscator

UDP_BUFFER_SIZE = 4096
HEADER_SIZE = 13

_HEADER_PREFIX = b"\xa1\x08"
_HEADER_SUFFIX = b"\x00\x10\x11\x18\x30\x22\x30"
_MAX_BODY = UDP_BUFFER_SIZE - HEADER_SIZE


class ObfsWeChatUDPSocket:
    """Wraps a UDP socket, adding a video call header to each datagram.

    The obfuscator is optional; without one the payload is sent as is.
    """

    def __init__(
        self,
        sock: socket.socket,
        obfs: Optional[XPlusObfuscator] = None,
        sn: Optional[int] = None,
    ) -> None:
        self._sock = sock
        self._obfs = obfs
        self._sn = (random.getrandbits(32) & 0xFFFF) if sn is None else sn & 0xFFFFFFFF
        self._write_lock = threading.Lock()

    def recvfrom(self, bufsize: int) -> Tuple[bytes, object]:
        """Return the next valid payload and its sender; b"" for a header-only datagram."""
        while True:
            packet, addr = self._sock.recvfrom(UDP_BUFFER_SIZE)
            if len(packet) <= HEADER_SIZE:
                return b"", addr
            body = packet[HEADER_SIZE:]
            if self._obfs is not None:
                payload = self._obfs.deobfuscate(body)
                if len(payload) > bufsize:
                    payload = b""
            else:
                payload = body[:bufsize]
            if payload:
                return payload, addr

    def _body(self, data: bytes) -> bytes:
        if self._obfs is None:
            return data[:_MAX_BODY]
        if len(data) + SALT_LEN > _MAX_BODY:
            return b""
        return self._obfs.obfuscate(data)

    def sendto(self, data: bytes, address) -> int:
        data = bytes(data)
        with self._write_lock:
            header = _HEADER_PREFIX + struct.pack(">I", self._sn) + _HEADER_SUFFIX
            self._sn = (self._sn + 1) & 0xFFFFFFFF
            self._sock.sendto(header + self._body(data), address)
        return len(data)

    def close(self) -> None:
        self._sock.close()

    def getsockname(self):
        return self._sock.getsockname()

    def settimeout(self, timeout: Optional[float]) -> None:
        self._sock.settimeout(timeout)

    def set_read_buffer(self, size: int) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, size)

    def set_write_buffer(self, size: int) -> None:
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, size)

    def fileno(self) -> int:
        return self._sock.fileno()

    def __enter__(self) -> "ObfsWeChatUDPSocket":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()