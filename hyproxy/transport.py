"""Outbound transports: address resolution, TCP dialing and UDP sockets."""

from __future__ import annotations

import contextlib
import ipaddress
import socket
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from hyproxy.netopts import bind_socket_to_interface
from hyproxy.utils import IPAddr, parse_ip_zone

RESOLVE_TIMEOUT = 8.0  # seconds
DIAL_TIMEOUT = 8.0  # seconds


class ResolveError(OSError):
    """Raised when a host name cannot be resolved as requested."""


class ResolvePreference(IntEnum):
    DEFAULT = 0
    IPV4 = 1
    IPV6 = 2
    IPV4_OR_IPV6 = 3
    IPV6_OR_IPV4 = 4


_PREFERENCES = {
    "4": ResolvePreference.IPV4,
    "6": ResolvePreference.IPV6,
    "46": ResolvePreference.IPV4_OR_IPV6,
    "64": ResolvePreference.IPV6_OR_IPV4,
}


def _lookup(host: str) -> List[IPAddr]:
    try:
        infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolveError(f"lookup {host}: {exc}") from None
    found: List[IPAddr] = []
    for _, _, _, _, sockaddr in infos:
        ip, zone = parse_ip_zone(sockaddr[0])
        if ip is None:
            continue
        addr = IPAddr(ip, zone)
        if addr not in found:
            found.append(addr)
    if not found:
        raise ResolveError(f"lookup {host}: no address")
    return found


def resolve_ip_addr_with_preference(host: str, pref: ResolvePreference) -> IPAddr:
    """Resolve host to one address, choosing its family by pref."""
    addrs = _lookup(host)
    ip4 = next((a for a in addrs if a.ip.version == 4), None)
    ip6 = next((a for a in addrs if a.ip.version == 6), None)
    if pref == ResolvePreference.DEFAULT:
        return ip4 or ip6
    if pref == ResolvePreference.IPV4:
        if ip4 is None:
            raise ResolveError("no IPv4 address")
        return ip4
    if pref == ResolvePreference.IPV6:
        if ip6 is None:
            raise ResolveError("no IPv6 address")
        return ip6
    if pref == ResolvePreference.IPV4_OR_IPV6:
        choice = ip4 or ip6
    elif pref == ResolvePreference.IPV6_OR_IPV4:
        choice = ip6 or ip4
    else:
        choice = None
    if choice is None:
        raise ResolveError("no address")
    return choice


def resolve_preference_from_string(preference: str) -> ResolvePreference:
    """Map "4", "6", "46" or "64" to a preference; ValueError otherwise."""
    try:
        return _PREFERENCES[preference]
    except KeyError:
        raise ValueError(f"invalid preference: {preference}") from None


@dataclass(frozen=True)
class AddrEx:
    """A target address carrying a domain for proxies; domain or ip_addr must be set."""

    domain: str = ""
    ip_addr: Optional[IPAddr] = None
    port: int = 0

    @property
    def host(self) -> str:
        return str(self.ip_addr) if self.ip_addr is not None else ""

    def __str__(self) -> str:
        host = self.host
        if ":" in host:
            host = f"[{host}]"
        return f"{host}:{self.port}"


def _sockaddr(sock: socket.socket, ip_addr: IPAddr, port: int):
    if sock.family == socket.AF_INET6:
        if ip_addr.ip.version == 4:
            return (f"::ffff:{ip_addr.ip}", port, 0, 0)
        return (str(ip_addr), port, 0, 0)
    return (str(ip_addr.ip), port)


def _open_udp(local: Optional[Tuple[str, int]] = None) -> socket.socket:
    if local is not None:
        family = socket.AF_INET6 if ":" in local[0] else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind(local)
        except OSError:
            sock.close()
            raise
        return sock
    if socket.has_ipv6:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(("::", 0))
            return sock
        except OSError:
            sock.close()
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("0.0.0.0", 0))
    return sock


class UDPPacketSocket:
    """A plain UDP socket addressed with AddrEx targets."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock

    def read_from(self, bufsize: int) -> Tuple[bytes, Tuple[str, int]]:
        data, addr = self.sock.recvfrom(bufsize)
        ip, zone = parse_ip_zone(addr[0])
        host = str(IPAddr(ip, zone)) if ip is not None else addr[0]
        return data, (host, addr[1])

    def write_to(self, data: bytes, addr: AddrEx) -> int:
        if addr.ip_addr is None:
            raise ResolveError(f"no IP address for {addr.domain or addr}")
        return self.sock.sendto(data, _sockaddr(self.sock, addr.ip_addr, addr.port))

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UDPPacketSocket":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class ClientTransport:
    timeout: float = DIAL_TIMEOUT
    resolve_preference: ResolvePreference = ResolvePreference.DEFAULT

    def resolve_ip_addr(self, address: str) -> IPAddr:
        return resolve_ip_addr_with_preference(address, self.resolve_preference)

    def dial_tcp(self, raddr: Tuple[str, int]) -> socket.socket:
        return socket.create_connection(raddr, timeout=self.timeout)

    def listen_udp(self) -> socket.socket:
        return _open_udp()


@dataclass
class ServerTransport:
    """Outbound side of the server, optionally through a SOCKS5 proxy."""

    timeout: float = DIAL_TIMEOUT
    socks5_client: Optional[object] = None
    resolve_preference: ResolvePreference = ResolvePreference.DEFAULT
    local_udp_addr: Optional[Tuple[str, int]] = None
    local_udp_interface: Optional[str] = None

    def resolve_ip_addr(self, address: str) -> Tuple[IPAddr, bool]:
        """Return the address and whether it was a domain; raise ResolveError on failure."""
        ip, zone = parse_ip_zone(address)
        if ip is not None:
            return IPAddr(ip, zone), False
        return resolve_ip_addr_with_preference(address, self.resolve_preference), True

    def dial_tcp(self, raddr: AddrEx) -> socket.socket:
        if self.socks5_client is not None:
            return self.socks5_client.dial_tcp(raddr)
        host = str(raddr.ip_addr) if raddr.ip_addr is not None else ""
        return socket.create_connection((host, raddr.port), timeout=self.timeout)

    def listen_udp(self):
        if self.socks5_client is not None:
            return self.socks5_client.listen_udp()
        sock = _open_udp(self.local_udp_addr)
        if self.local_udp_interface is not None:
            try:
                bind_socket_to_interface(sock, self.local_udp_interface)
            except OSError:
                with contextlib.suppress(OSError):
                    sock.close()
                raise
        return UDPPacketSocket(sock)

    def proxy_enabled(self) -> bool:
        return self.socks5_client is not None


def _is_ip(s: str) -> bool:
    try:
        ipaddress.ip_address(s)
    except ValueError:
        return False
    return True