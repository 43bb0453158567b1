"""UDP socket whose datagrams are wrapped by an obfuscator."""

from __future__ import annotations

import socket
from typing import Optional, Tuple

from hyproxy.obfs import SALT_LEN, XPlusObfuscator

UDP_BUFFER_SIZE = 4096


class ObfsUDPSocket:
    """Wraps a UDP socket, obfuscating every datagram sent and received.

    Received datagrams that do not deobfuscate to a payload fitting the
    requested buffer size are silently dropped.
    """

    def __init__(self, sock: socket.socket, obfs: XPlusObfuscator) -> None:
        self._sock = sock
        self._obfs = obfs

    def recvfrom(self, bufsize: int) -> Tuple[bytes, object]:
        """Return the next valid payload and its sender; b"" for an empty datagram."""
        while True:
            packet, addr = self._sock.recvfrom(UDP_BUFFER_SIZE)
            if not packet:
                return b"", addr
            payload = self._obfs.deobfuscate(packet)
            if payload and len(payload) <= bufsize:
                return payload, addr

    def sendto(self, data: bytes, address) -> int:
        """Send data obfuscated; a payload too large for one buffer goes out empty."""
        data = bytes(data)
        if len(data) + SALT_LEN > UDP_BUFFER_SIZE:
            packet = b""
        else:
            packet = self._obfs.obfuscate(data)
        self._sock.sendto(packet, address)
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

    def __enter__(self) -> "ObfsUDPSocket":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()