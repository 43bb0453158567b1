import socket

import pytest

from hyproxy.hop import UDPHopAddr, UDPHopClientSocket
from hyproxy.obfs import SALT_LEN
from hyproxy.pktconns import (
    FakeTCPUnsupportedError,
    is_multi_port_addr,
    new_client_faketcp_conn_func,
    new_client_udp_conn_func,
    new_client_wechat_conn_func,
    new_server_faketcp_conn_func,
    new_server_udp_conn_func,
    new_server_wechat_conn_func,
)
from hyproxy.udp_obfs import ObfsUDPSocket
from hyproxy.wechat import HEADER_SIZE, ObfsWeChatUDPSocket

OBFS_PASSWORD = "password"
PAYLOAD = b"HelloWorld"


@pytest.mark.parametrize(
    "addr, expected",
    [
        ("example.com:1234", False),
        ("example.com:1234,5678", True),
        ("example.com:5678-5685", True),
        ("example.com", False),
        ("", False),
    ],
)
def test_is_multi_port_addr(addr, expected):
    assert is_multi_port_addr(addr) is expected


def _server_port(conn):
    return conn.getsockname()[1]


def test_plain_udp_round_trip():
    server = new_server_udp_conn_func("")("127.0.0.1:0")
    client, addr = new_client_udp_conn_func("", 10.0)(f"127.0.0.1:{_server_port(server)}")
    try:
        assert addr == ("127.0.0.1", _server_port(server))
        server.settimeout(5)
        client.sendto(PAYLOAD, addr)
        data, _ = server.recvfrom(4096)
        assert data == PAYLOAD
    finally:
        client.close()
        server.close()


def test_obfs_udp_round_trip():
    server = new_server_udp_conn_func(OBFS_PASSWORD)("127.0.0.1:0")
    client, addr = new_client_udp_conn_func(OBFS_PASSWORD, 10.0)(
        f"127.0.0.1:{_server_port(server)}"
    )
    try:
        assert isinstance(server, ObfsUDPSocket)
        assert isinstance(client, ObfsUDPSocket)
        server.settimeout(5)
        client.sendto(PAYLOAD, addr)
        data, _ = server.recvfrom(4096)
        assert data == PAYLOAD
    finally:
        client.close()
        server.close()


def test_obfs_client_puts_salted_packet_on_wire():
    raw = new_server_udp_conn_func("")("127.0.0.1:0")
    client, addr = new_client_udp_conn_func(OBFS_PASSWORD, 10.0)(
        f"127.0.0.1:{_server_port(raw)}"
    )
    try:
        raw.settimeout(5)
        client.sendto(PAYLOAD, addr)
        packet, _ = raw.recvfrom(4096)
        assert len(packet) == len(PAYLOAD) + SALT_LEN
        assert PAYLOAD not in packet
    finally:
        client.close()
        raw.close()


@pytest.mark.parametrize("password", ["", OBFS_PASSWORD])
def test_wechat_round_trip(password):
    server = new_server_wechat_conn_func(password)("127.0.0.1:0")
    client, addr = new_client_wechat_conn_func(password, 10.0)(
        f"127.0.0.1:{_server_port(server)}"
    )
    try:
        assert isinstance(client, ObfsWeChatUDPSocket)
        server.settimeout(5)
        client.sendto(PAYLOAD, addr)
        data, _ = server.recvfrom(4096)
        assert data == PAYLOAD
    finally:
        client.close()
        server.close()


def test_wechat_header_on_wire():
    raw = new_server_udp_conn_func("")("127.0.0.1:0")
    client, addr = new_client_wechat_conn_func("", 10.0)(f"127.0.0.1:{_server_port(raw)}")
    try:
        raw.settimeout(5)
        client.sendto(PAYLOAD, addr)
        packet, _ = raw.recvfrom(4096)
        assert packet[:2] == b"\xa1\x08"
        assert packet[HEADER_SIZE:] == PAYLOAD
    finally:
        client.close()
        raw.close()


def test_multi_port_client_hops():
    client, addr = new_client_udp_conn_func("", 10.0)("127.0.0.1:20000-20003")
    try:
        assert isinstance(client, UDPHopClientSocket)
        assert addr == UDPHopAddr("127.0.0.1:20000-20003")
        assert str(addr) == "127.0.0.1:20000-20003"
    finally:
        client.close()


def test_client_faketcp_unsupported():
    with pytest.raises(FakeTCPUnsupportedError, match="faketcp is not supported"):
        new_client_faketcp_conn_func("", 10.0)("127.0.0.1:1234")


def test_server_faketcp_unsupported():
    with pytest.raises(FakeTCPUnsupportedError):
        new_server_faketcp_conn_func(OBFS_PASSWORD)("127.0.0.1:1234")


def test_client_rejects_address_without_port():
    with pytest.raises(ValueError):
        new_client_udp_conn_func("", 10.0)("127.0.0.1")


def test_server_rejects_bad_port():
    with pytest.raises(ValueError):
        new_server_udp_conn_func("")("127.0.0.1:notaport")


def test_server_empty_host_listens_on_all():
    server = new_server_udp_conn_func("")(":0")
    try:
        assert server.getsockname()[0] in ("::", "0.0.0.0")
        assert server.type == socket.SOCK_DGRAM
    finally:
        server.close()