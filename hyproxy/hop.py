"""Client UDP socket that hops between local and server ports."""

from __future__ import annotations

import contextlib
import errno
import queue
import random
import re
import socket
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from hyproxy.obfs import XPlusObfuscator
from hyproxy.udp_obfs import UDP_BUFFER_SIZE, ObfsUDPSocket
from hyproxy.utils import _split_host_port_raw

PACKET_QUEUE_SIZE = 1024

_POLL_INTERVAL = 0.2
_DIGITS = re.compile(r"[0-9]+")

_Conn = Union[socket.socket, ObfsUDPSocket]


@dataclass(frozen=True)
class UDPHopAddr:
    """The combined multi-port server address."""

    address: str

    @property
    def network(self) -> str:
        return "udp-hop"

    def __str__(self) -> str:
        return self.address


def _parse_port(s: str, reason: str) -> int:
    if not _DIGITS.fullmatch(s) or int(s) > 0xFFFF:
        raise ValueError(reason)
    return int(s)


def parse_addr(addr: str) -> Tuple[str, List[int]]:
    """Parse "host:port1,port2-port3,port4" into the host and its ports.

    A reversed range is accepted; ValueError is raised for malformed input.
    """
    host, port_str = _split_host_port_raw(addr)
    ports: List[int] = []
    for part in port_str.split(","):
        if "-" in part:
            bounds = part.split("-")
            if len(bounds) != 2:
                raise ValueError("invalid port range")
            start, end = sorted(_parse_port(b, "invalid port range") for b in bounds)
            ports.extend(range(start, end + 1))
        else:
            ports.append(_parse_port(part, "invalid port"))
    return host, ports


def _resolve(host: str) -> Tuple[int, str]:
    family, _, _, _, sockaddr = socket.getaddrinfo(host, None, type=socket.SOCK_DGRAM)[0]
    return family, sockaddr[0]


def _set_buffer(conn: _Conn, size: int, read: bool) -> None:
    if isinstance(conn, ObfsUDPSocket):
        (conn.set_read_buffer if read else conn.set_write_buffer)(size)
    else:
        option = socket.SO_RCVBUF if read else socket.SO_SNDBUF
        conn.setsockopt(socket.SOL_SOCKET, option, size)


class UDPHopClientSocket:
    """Sends to a randomly chosen server port, moving to a fresh local socket
    and server port every hop_interval seconds.

    The previous socket keeps receiving until the next hop, so replies sent
    during a switch are not lost.
    """

    def __init__(
        self,
        server: str,
        hop_interval: float,
        obfs: Optional[XPlusObfuscator] = None,
    ) -> None:
        host, ports = parse_addr(server)
        self._family, ip = _resolve(host)
        self.server_addr = UDPHopAddr(server)
        self._server_addrs = [(ip, port) for port in ports]
        self.hop_interval = hop_interval
        self._obfs = obfs
        self._lock = threading.Lock()
        self._queue: "queue.Queue[bytes]" = queue.Queue(PACKET_QUEUE_SIZE)
        self._closed = threading.Event()
        self._timeout: Optional[float] = None
        self._read_buffer_size = 0
        self._write_buffer_size = 0
        self._prev: Optional[_Conn] = None
        self._current: _Conn = self._new_conn()
        self._addr_index = random.randrange(len(self._server_addrs))
        self._start_receiving(self._current)
        threading.Thread(target=self._hop_loop, daemon=True).start()

    def _new_conn(self) -> _Conn:
        sock = socket.socket(self._family, socket.SOCK_DGRAM)
        try:
            sock.bind(("::" if self._family == socket.AF_INET6 else "0.0.0.0", 0))
            sock.settimeout(_POLL_INTERVAL)
        except OSError:
            sock.close()
            raise
        return ObfsUDPSocket(sock, self._obfs) if self._obfs is not None else sock

    def _start_receiving(self, conn: _Conn) -> None:
        threading.Thread(target=self._receive, args=(conn,), daemon=True).start()

    def _receive(self, conn: _Conn) -> None:
        while not self._closed.is_set():
            try:
                data, _ = conn.recvfrom(UDP_BUFFER_SIZE)
            except TimeoutError:
                continue
            except OSError:
                return
            with contextlib.suppress(queue.Full):
                self._queue.put_nowait(data)

    def _hop_loop(self) -> None:
        while not self._closed.wait(self.hop_interval):
            self.hop()

    def hop(self) -> None:
        """Switch to a new local socket and a new random server port."""
        with self._lock:
            if self._closed.is_set():
                return
            try:
                new_conn = self._new_conn()
            except OSError:
                return
            if self._prev is not None:
                self._prev.close()
            self._prev = self._current
            self._current = new_conn
            if self._read_buffer_size > 0:
                with contextlib.suppress(OSError):
                    _set_buffer(new_conn, self._read_buffer_size, read=True)
            if self._write_buffer_size > 0:
                with contextlib.suppress(OSError):
                    _set_buffer(new_conn, self._write_buffer_size, read=False)
            self._start_receiving(new_conn)
            self._addr_index = random.randrange(len(self._server_addrs))

    def recvfrom(self, bufsize: int) -> Tuple[bytes, UDPHopAddr]:
        """Return the next datagram, truncated to bufsize, from the server."""
        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        while True:
            if self._closed.is_set():
                raise OSError(errno.EBADF, "use of closed network connection")
            wait = _POLL_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("timed out")
                wait = min(wait, remaining)
            try:
                data = self._queue.get(timeout=wait)
            except queue.Empty:
                continue
            return data[:bufsize], self.server_addr

    def sendto(self, data: bytes, address=None) -> int:
        """Send data to the current server port; the address is not consulted."""
        with self._lock:
            if self._closed.is_set():
                raise OSError(errno.EBADF, "use of closed network connection")
            return self._current.sendto(data, self._server_addrs[self._addr_index])

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            if self._prev is not None:
                self._prev.close()
            self._current.close()
            self._closed.set()

    def getsockname(self):
        with self._lock:
            return self._current.getsockname()

    def settimeout(self, timeout: Optional[float]) -> None:
        """Set the timeout of recvfrom in seconds; None blocks indefinitely."""
        self._timeout = timeout

    def set_read_buffer(self, size: int) -> None:
        with self._lock:
            self._read_buffer_size = size
            if self._prev is not None:
                with contextlib.suppress(OSError):
                    _set_buffer(self._prev, size, read=True)
            _set_buffer(self._current, size, read=True)

    def set_write_buffer(self, size: int) -> None:
        with self._lock:
            self._write_buffer_size = size
            if self._prev is not None:
                with contextlib.suppress(OSError):
                    _set_buffer(self._prev, size, read=False)
            _set_buffer(self._current, size, read=False)

    def __enter__(self) -> "UDPHopClientSocket":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()