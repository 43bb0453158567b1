import errno
import socket

import pytest

from hyproxy.hop import UDPHopAddr, UDPHopClientSocket, parse_addr
from hyproxy.obfs import XPlusObfuscator
from hyproxy.udp_obfs import ObfsUDPSocket

KEY = b"secret"


@pytest.mark.parametrize(
    "addr, host, ports",
    [
        ("example.com:1234", "example.com", [1234]),
        ("example.com:1234,5678,9999", "example.com", [1234, 5678, 9999]),
        (
            "example.com:1234,5678-5685,9999",
            "example.com",
            [1234, 5678, 5679, 5680, 5681, 5682, 5683, 5684, 5685, 9999],
        ),
        ("example.com:1234-1234", "example.com", [1234]),
        ("example.com:8003-8000", "example.com", [8000, 8001, 8002, 8003]),
    ],
)
def test_parse_addr(addr, host, ports):
    assert parse_addr(addr) == (host, ports)


@pytest.mark.parametrize(
    "addr",
    [
        "",
        "example.com",
        "example.com:1234,5678,9999,invalid",
        "example.com:1234,5678,9999,8000-8002-8004",
        "example.com:1234,5678,9999,8000-woot",
    ],
)
def test_parse_addr_errors(addr):
    with pytest.raises(ValueError):
        parse_addr(addr)


def test_hop_addr():
    addr = UDPHopAddr("example.com:1000-2000")
    assert str(addr) == "example.com:1000-2000"
    assert addr.network == "udp-hop"


def _server():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    return sock


@pytest.fixture
def server():
    sock = _server()
    yield sock
    sock.close()


def test_send_and_receive(server):
    port = server.getsockname()[1]
    address = f"127.0.0.1:{port}"
    with UDPHopClientSocket(address, 3600) as client:
        client.settimeout(5)
        assert client.sendto(b"ping", ("ignored", 1)) == 4
        data, client_addr = server.recvfrom(1024)
        assert data == b"ping"
        server.sendto(b"pong", client_addr)
        assert client.recvfrom(1024) == (b"pong", UDPHopAddr(address))
        server.sendto(b"pong", client_addr)
        assert client.recvfrom(2) == (b"po", UDPHopAddr(address))


def test_hop_changes_local_socket_and_keeps_previous(server):
    port = server.getsockname()[1]
    with UDPHopClientSocket(f"127.0.0.1:{port}", 3600) as client:
        client.settimeout(5)
        client.sendto(b"one", None)
        _, old_addr = server.recvfrom(1024)
        old_port = client.getsockname()[1]
        client.hop()
        assert client.getsockname()[1] != old_port
        client.sendto(b"two", None)
        data, new_addr = server.recvfrom(1024)
        assert data == b"two"
        assert new_addr[1] != old_addr[1]
        server.sendto(b"late", old_addr)
        assert client.recvfrom(1024)[0] == b"late"
        server.sendto(b"fresh", new_addr)
        assert client.recvfrom(1024)[0] == b"fresh"


def test_multi_port_targets_listed_ports():
    servers = [_server() for _ in range(2)]
    try:
        ports = sorted(s.getsockname()[1] for s in servers)
        spec = ",".join(str(p) for p in ports)
        with UDPHopClientSocket(f"127.0.0.1:{spec}", 3600) as client:
            assert client.sendto(b"hi", None) == 2
            received = []
            for s in servers:
                s.settimeout(0.5)
                try:
                    received.append(s.recvfrom(1024)[0])
                except TimeoutError:
                    pass
            assert received == [b"hi"]
    finally:
        for s in servers:
            s.close()


def test_obfuscated_round_trip():
    server = ObfsUDPSocket(_server(), XPlusObfuscator(KEY))
    try:
        port = server.getsockname()[1]
        with UDPHopClientSocket(f"127.0.0.1:{port}", 3600, XPlusObfuscator(KEY)) as client:
            client.settimeout(5)
            client.sendto(b"HelloWorld", None)
            data, client_addr = server.recvfrom(1024)
            assert data == b"HelloWorld"
            server.sendto(b"reply", client_addr)
            assert client.recvfrom(1024)[0] == b"reply"
    finally:
        server.close()


def test_recvfrom_timeout(server):
    port = server.getsockname()[1]
    with UDPHopClientSocket(f"127.0.0.1:{port}", 3600) as client:
        client.settimeout(0.05)
        with pytest.raises(TimeoutError):
            client.recvfrom(1024)


def test_closed_socket_raises(server):
    port = server.getsockname()[1]
    client = UDPHopClientSocket(f"127.0.0.1:{port}", 3600)
    client.close()
    client.close()
    with pytest.raises(OSError) as exc_info:
        client.recvfrom(1024)
    assert exc_info.value.errno == errno.EBADF
    with pytest.raises(OSError) as send_info:
        client.sendto(b"x", None)
    assert send_info.value.errno == errno.EBADF


def test_buffer_sizes_survive_hop(server):
    port = server.getsockname()[1]
    with UDPHopClientSocket(f"127.0.0.1:{port}", 3600) as client:
        client.set_read_buffer(65536)
        client.set_write_buffer(65536)
        client.hop()
        current = client._current
        assert current.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF) >= 65536
        assert current.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF) >= 65536


def test_invalid_server_address():
    with pytest.raises(ValueError):
        UDPHopClientSocket("127.0.0.1:bad", 3600)