"""Address parsing helpers and bidirectional byte pipes."""

from __future__ import annotations

import ipaddress
import queue
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

PIPE_BUFFER_SIZE = 32 * 1024

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
CountFunc = Optional[Callable[[int], None]]

_DIGITS = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class IPAddr:
    """An IP address with an optional IPv6 zone."""

    ip: IPAddress
    zone: str = ""

    def __str__(self) -> str:
        return f"{self.ip}%{self.zone}" if self.zone else str(self.ip)


def _parse_port(port: str) -> int:
    if not _DIGITS.fullmatch(port) or int(port) > 0xFFFF:
        raise ValueError(f"invalid port {port!r}")
    return int(port)


def _split_host_port_raw(hostport: str) -> Tuple[str, str]:
    """Split "host:port" or "[host]:port" into its host and port strings."""

    def fail(reason: str) -> ValueError:
        return ValueError(f"address {hostport}: {reason}")

    i = hostport.rfind(":")
    if i < 0:
        raise fail("missing port in address")
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        if end + 1 == len(hostport):
            raise fail("missing port in address")
        if end + 1 != i:
            if hostport[end + 1] == ":":
                raise fail("too many colons in address")
            raise fail("missing port in address")
        host = hostport[1:end]
        j, k = 1, end + 1
    else:
        host = hostport[:i]
        if ":" in host:
            raise fail("too many colons in address")
        j = k = 0
    if "[" in hostport[j:]:
        raise fail("unexpected '[' in address")
    if "]" in hostport[k:]:
        raise fail("unexpected ']' in address")
    return host, hostport[i + 1 :]


def split_host_port(hostport: str) -> Tuple[str, int]:
    """Split an address into host and a 16-bit port; raise ValueError if malformed."""
    host, port = _split_host_port_raw(hostport)
    return host, _parse_port(port)


def _parse_ip(s: str) -> Optional[IPAddress]:
    if "%" in s:
        return None
    try:
        ip = ipaddress.ip_address(s)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def parse_ip_zone(s: str) -> Tuple[Optional[IPAddress], str]:
    """Parse an IP literal with an optional "%zone"; the IP is None if not a literal."""
    host, zone = s, ""
    i = s.rfind("%")
    if i > 0:
        host, zone = s[:i], s[i + 1 :]
    return _parse_ip(host), zone


def _reader(obj) -> Callable[[int], bytes]:
    return getattr(obj, "recv", None) or obj.read


def _writer(obj) -> Callable[[bytes], object]:
    return getattr(obj, "sendall", None) or obj.write


def pipe(src, dst, count: CountFunc = None) -> None:
    """Copy from src to dst until end of stream; errors propagate."""
    read, write = _reader(src), _writer(dst)
    while True:
        data = read(PIPE_BUFFER_SIZE)
        if not data:
            return
        if count is not None:
            count(len(data))
        write(data)


def _first_outcome(*targets: Callable[[], None]) -> None:
    """Run targets in threads; return when the first ends, re-raising its error."""
    outcomes: "queue.Queue[Optional[BaseException]]" = queue.Queue()

    def run(target: Callable[[], None]) -> None:
        try:
            target()
        except Exception as exc:  # handed to the waiting caller
            outcomes.put(exc)
        else:
            outcomes.put(None)

    for target in targets:
        threading.Thread(target=run, args=(target,), daemon=True).start()
    error = outcomes.get()
    if error is not None:
        raise error


def pipe_2way(rw1, rw2, count: CountFunc = None) -> None:
    """Pipe in both directions until either side ends.

    count receives positive sizes for rw1 to rw2 and negative sizes for rw2 to rw1.
    """
    reverse: CountFunc = None
    if count is not None:
        def reverse(n: int) -> None:
            count(-n)

    _first_outcome(lambda: pipe(rw2, rw1, reverse), lambda: pipe(rw1, rw2, count))


def pipe_pair_with_timeout(conn, stream, timeout: float = 0.0) -> None:
    """Pipe between a socket and a stream, failing after timeout seconds of idleness.

    A timeout of 0 disables the idle limit.
    """
    last_activity = time.monotonic()
    read_stream, write_stream = _reader(stream), _writer(stream)
    if timeout:
        conn.settimeout(timeout)

    def touch() -> None:
        nonlocal last_activity
        last_activity = time.monotonic()

    def conn_to_stream() -> None:
        while True:
            try:
                data = conn.recv(PIPE_BUFFER_SIZE)
            except TimeoutError:
                if timeout and time.monotonic() - last_activity < timeout:
                    continue
                raise
            if not data:
                return
            write_stream(data)
            touch()

    def stream_to_conn() -> None:
        while True:
            data = read_stream(PIPE_BUFFER_SIZE)
            if not data:
                return
            conn.sendall(data)
            touch()

    _first_outcome(conn_to_stream, stream_to_conn)