"""Factories for the packet sockets used by the client and the server."""

from __future__ import annotations

import contextlib
import socket
from typing import Callable, Tuple, Union

from hyproxy.hop import UDPHopClientSocket
from hyproxy.obfs import XPlusObfuscator
from hyproxy.udp_obfs import ObfsUDPSocket
from hyproxy.utils import _split_host_port_raw, split_host_port
from hyproxy.wechat import ObfsWeChatUDPSocket

PacketSocket = Union[socket.socket, ObfsUDPSocket, ObfsWeChatUDPSocket, UDPHopClientSocket]
ClientPacketConnFunc = Callable[[str], Tuple[PacketSocket, object]]
ServerPacketConnFunc = Callable[[str], PacketSocket]

_FAKETCP_UNSUPPORTED = "faketcp is not supported on this platform"


class FakeTCPUnsupportedError(OSError):
    """Raised because fake TCP transport is not available."""


def is_multi_port_addr(addr: str) -> bool:
    """Whether addr names several ports, as in "host:1000,2000-3000"."""
    try:
        _, port_str = _split_host_port_raw(addr)
    except ValueError:
        return False
    return "," in port_str or "-" in port_str


def _resolve(address: str, passive: bool = False):
    host, port = split_host_port(address)
    flags = socket.AI_PASSIVE if passive else 0
    family, _, _, _, sockaddr = socket.getaddrinfo(
        host or None, port, type=socket.SOCK_DGRAM, flags=flags
    )[0]
    return family, sockaddr


def _client_socket(family: int) -> socket.socket:
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind(("::" if family == socket.AF_INET6 else "0.0.0.0", 0))
    except OSError:
        sock.close()
        raise
    return sock


def _dial_udp(server: str) -> Tuple[socket.socket, object]:
    family, sockaddr = _resolve(server)
    return _client_socket(family), sockaddr


def _listen_udp(listen: str) -> socket.socket:
    host, port = split_host_port(listen)
    if not host and socket.has_ipv6:
        sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            sock.bind(("::", port))
            return sock
        except OSError:
            sock.close()
    family, sockaddr = _resolve(listen, passive=True)
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind(sockaddr)
    except OSError:
        sock.close()
        raise
    return sock


def _obfuscator(obfs_password: str) -> XPlusObfuscator:
    return XPlusObfuscator(obfs_password.encode())


def new_client_udp_conn_func(obfs_password: str, hop_interval: float) -> ClientPacketConnFunc:
    """Client sockets over UDP; multi-port addresses get a port-hopping socket."""

    def dial(server: str) -> Tuple[PacketSocket, object]:
        obfs = _obfuscator(obfs_password) if obfs_password else None
        if is_multi_port_addr(server):
            conn = UDPHopClientSocket(server, hop_interval, obfs)
            return conn, conn.server_addr
        sock, server_addr = _dial_udp(server)
        if obfs is None:
            return sock, server_addr
        return ObfsUDPSocket(sock, obfs), server_addr

    return dial


def new_client_wechat_conn_func(obfs_password: str, hop_interval: float) -> ClientPacketConnFunc:
    """Client sockets disguised as video call traffic."""

    def dial(server: str) -> Tuple[PacketSocket, object]:
        sock, server_addr = _dial_udp(server)
        obfs = _obfuscator(obfs_password) if obfs_password else None
        return ObfsWeChatUDPSocket(sock, obfs), server_addr

    return dial


def new_client_faketcp_conn_func(obfs_password: str, hop_interval: float) -> ClientPacketConnFunc:
    """Client sockets over fake TCP, which this platform does not provide."""

    def dial(server: str) -> Tuple[PacketSocket, object]:
        host, port = split_host_port(server)
        socket.getaddrinfo(host or None, port, type=socket.SOCK_STREAM)
        raise FakeTCPUnsupportedError(_FAKETCP_UNSUPPORTED)

    return dial


def new_server_udp_conn_func(obfs_password: str) -> ServerPacketConnFunc:
    """Server sockets over UDP."""

    def listen(address: str) -> PacketSocket:
        sock = _listen_udp(address)
        if not obfs_password:
            return sock
        return ObfsUDPSocket(sock, _obfuscator(obfs_password))

    return listen


def new_server_wechat_conn_func(obfs_password: str) -> ServerPacketConnFunc:
    """Server sockets disguised as video call traffic."""

    def listen(address: str) -> PacketSocket:
        obfs = _obfuscator(obfs_password) if obfs_password else None
        sock = _listen_udp(address)
        return ObfsWeChatUDPSocket(sock, obfs)

    return listen


def new_server_faketcp_conn_func(obfs_password: str) -> ServerPacketConnFunc:
    """Server sockets over fake TCP, which this platform does not provide."""

    def listen(address: str) -> PacketSocket:
        raise FakeTCPUnsupportedError(_FAKETCP_UNSUPPORTED)

    return listen


def _close_quietly(conn) -> None:
    with contextlib.suppress(OSError):
        conn.close()