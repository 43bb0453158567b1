"""SOCKS5 client used as the server's outbound proxy."""

from __future__ import annotations

import contextlib
import ipaddress
import socket
import struct
import threading
from typing import Optional, Tuple

from hyproxy.transport import (
    DIAL_TIMEOUT,
    AddrEx,
    ResolvePreference,
    resolve_ip_addr_with_preference,
)
from hyproxy.utils import split_host_port

NEG_TIMEOUT = 8.0  # seconds

VERSION = 5
METHOD_NONE = 0x00
METHOD_USERNAME_PASSWORD = 0x02
USERPASS_VERSION = 0x01
USERPASS_STATUS_SUCCESS = 0x00
CMD_CONNECT = 0x01
CMD_UDP = 0x03
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
REP_SUCCESS = 0x00


class SOCKS5Error(OSError):
    """Raised when the SOCKS5 server refuses or misbehaves."""


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    chunks = []
    while n:
        chunk = sock.recv(n)
        if not chunk:
            raise SOCKS5Error("unexpected end of stream")
        chunks.append(chunk)
        n -= len(chunk)
    return b"".join(chunks)


def socks5_addr_to_udp_addr(atyp: int, addr: bytes, port: bytes) -> Tuple[str, int]:
    """Convert a SOCKS5 address (domain form led by its length byte) to (ip, port)."""
    if len(port) != 2:
        raise SOCKS5Error("invalid port")
    (iport,) = struct.unpack(">H", port)
    if atyp == ATYP_IPV4:
        if len(addr) != 4:
            raise SOCKS5Error("invalid ipv4 address")
        return str(ipaddress.IPv4Address(bytes(addr))), iport
    if atyp == ATYP_IPV6:
        if len(addr) != 16:
            raise SOCKS5Error("invalid ipv6 address")
        return str(ipaddress.IPv6Address(bytes(addr))), iport
    if atyp == ATYP_DOMAIN:
        if len(addr) <= 1:
            raise SOCKS5Error("invalid domain address")
        domain = bytes(addr[1:]).decode("utf-8", "replace")
        ip_addr = resolve_ip_addr_with_preference(domain, ResolvePreference.DEFAULT)
        return str(ip_addr), iport
    raise SOCKS5Error("unsupported address type")


def addr_ex_to_socks5_addr(addr: AddrEx) -> Tuple[int, bytes, bytes]:
    """Return (atyp, address bytes, port bytes); a domain is led by its length byte."""
    sport = struct.pack(">H", addr.port & 0xFFFF)
    if addr.domain:
        encoded = addr.domain.encode("idna" if not addr.domain.isascii() else "ascii")
        if len(encoded) > 255:
            raise SOCKS5Error("domain too long")
        return ATYP_DOMAIN, bytes([len(encoded)]) + encoded, sport
    if addr.ip_addr is None:
        raise SOCKS5Error("unsupported address type")
    ip = addr.ip_addr.ip
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip.version == 4:
        return ATYP_IPV4, ip.packed, sport
    return ATYP_IPV6, ip.packed, sport


def _read_addr(sock: socket.socket, atyp: int) -> bytes:
    if atyp == ATYP_IPV4:
        return _recv_exact(sock, 4)
    if atyp == ATYP_IPV6:
        return _recv_exact(sock, 16)
    if atyp == ATYP_DOMAIN:
        length = _recv_exact(sock, 1)
        return length + _recv_exact(sock, length[0])
    raise SOCKS5Error("unsupported address type")


class SOCKS5Client:
    def __init__(
        self, server_addr: str, username: str = "", password: str = "", timeout: float = DIAL_TIMEOUT
    ) -> None:
        self.server_addr = server_addr
        self.username = username
        self.password = password
        self.timeout = timeout

    def _connect(self) -> socket.socket:
        host, port = split_host_port(self.server_addr)
        sock = socket.create_connection((host, port), timeout=self.timeout)
        sock.settimeout(NEG_TIMEOUT)
        return sock

    def _negotiate(self, sock: socket.socket) -> None:
        methods = [METHOD_NONE]
        if self.username and self.password:
            methods.append(METHOD_USERNAME_PASSWORD)
        sock.sendall(bytes([VERSION, len(methods), *methods]))
        _, method = _recv_exact(sock, 2)
        if method == METHOD_USERNAME_PASSWORD:
            user, secret = self.username.encode(), self.password.encode()
            sock.sendall(
                bytes([USERPASS_VERSION, len(user)]) + user + bytes([len(secret)]) + secret
            )
            _, status = _recv_exact(sock, 2)
            if status != USERPASS_STATUS_SUCCESS:
                raise SOCKS5Error("username or password error")
        elif method != METHOD_NONE:
            raise SOCKS5Error("unsupported auth method")

    def _request(
        self, sock: socket.socket, cmd: int, atyp: int, addr: bytes, port: bytes
    ) -> Tuple[int, bytes, bytes]:
        sock.sendall(bytes([VERSION, cmd, 0x00, atyp]) + addr + port)
        _, rep, _, reply_atyp = _recv_exact(sock, 4)
        bnd_addr = _read_addr(sock, reply_atyp)
        bnd_port = _recv_exact(sock, 2)
        if rep != REP_SUCCESS:
            raise SOCKS5Error(f"request failed: {rep}")
        return reply_atyp, bnd_addr, bnd_port

    def _open(self, cmd: int, atyp: int, addr: bytes, port: bytes):
        sock = self._connect()
        try:
            self._negotiate(sock)
            reply = self._request(sock, cmd, atyp, addr, port)
            sock.settimeout(None)
        except BaseException:
            sock.close()
            raise
        return sock, reply

    def dial_tcp(self, raddr: AddrEx) -> socket.socket:
        """Open a TCP connection to raddr through the proxy."""
        sock, _ = self._open(CMD_CONNECT, *addr_ex_to_socks5_addr(raddr))
        return sock

    def listen_udp(self) -> "SOCKS5UDPSocket":
        """Start a UDP association; it lives as long as its control connection."""
        sock, (atyp, bnd_addr, bnd_port) = self._open(
            CMD_UDP, ATYP_IPV4, bytes(4), bytes(2)
        )
        try:
            relay = socks5_addr_to_udp_addr(atyp, bnd_addr, bnd_port)
            udp = socket.create_connection  # placeholder name avoided below
            del udp
            family = socket.AF_INET6 if ":" in relay[0] else socket.AF_INET
            udp_sock = socket.socket(family, socket.SOCK_DGRAM)
            try:
                udp_sock.connect(relay)
            except OSError:
                udp_sock.close()
                raise
        except BaseException:
            sock.close()
            raise
        conn = SOCKS5UDPSocket(sock, udp_sock)
        threading.Thread(target=conn._hold, daemon=True).start()
        return conn


class SOCKS5UDPSocket:
    """UDP association through a SOCKS5 relay."""

    def __init__(self, tcp_sock: socket.socket, udp_sock: socket.socket) -> None:
        self._tcp = tcp_sock
        self._udp = udp_sock

    def _hold(self) -> None:
        with contextlib.suppress(OSError):
            while self._tcp.recv(1024):
                pass
        self.close()

    def read_from(self, bufsize: int) -> Tuple[bytes, Tuple[str, int]]:
        packet = self._udp.recv(65535)
        if len(packet) < 4:
            raise SOCKS5Error("datagram too short")
        atyp = packet[3]
        pos = 4
        if atyp == ATYP_IPV4:
            end = pos + 4
        elif atyp == ATYP_IPV6:
            end = pos + 16
        elif atyp == ATYP_DOMAIN:
            if len(packet) <= pos:
                raise SOCKS5Error("datagram too short")
            end = pos + 1 + packet[pos]
        else:
            raise SOCKS5Error("unsupported address type")
        if len(packet) < end + 2:
            raise SOCKS5Error("datagram too short")
        addr = socks5_addr_to_udp_addr(atyp, packet[pos:end], packet[end : end + 2])
        return packet[end + 2 :][:bufsize], addr

    def write_to(self, data: bytes, addr: AddrEx) -> int:
        atyp, dst_addr, dst_port = addr_ex_to_socks5_addr(addr)
        self._udp.send(bytes([0, 0, 0, atyp]) + dst_addr + dst_port + bytes(data))
        return len(data)

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._tcp.close()
        with contextlib.suppress(OSError):
            self._udp.close()

    def __enter__(self) -> "SOCKS5UDPSocket":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _unused(_: Optional[int] = None) -> None:
    return None