import socket

import pytest

from hyproxy.obfs import SALT_LEN, XPlusObfuscator
from hyproxy.wechat import HEADER_SIZE, UDP_BUFFER_SIZE, ObfsWeChatUDPSocket

KEY = b"secret"
PREFIX = bytes([0xA1, 0x08])
SUFFIX = bytes([0x00, 0x10, 0x11, 0x18, 0x30, 0x22, 0x30])


def _udp_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    return sock


@pytest.fixture
def raw():
    sock = _udp_socket()
    yield sock
    sock.close()


def test_header_layout_and_sequence(raw):
    with ObfsWeChatUDPSocket(_udp_socket(), None, sn=0x1234) as conn:
        assert conn.sendto(b"abc", raw.getsockname()) == 3
        conn.sendto(b"def", raw.getsockname())
        first, _ = raw.recvfrom(UDP_BUFFER_SIZE)
        second, _ = raw.recvfrom(UDP_BUFFER_SIZE)
    assert first[:2] == PREFIX
    assert first[2:6] == (0x1234).to_bytes(4, "big")
    assert first[6:HEADER_SIZE] == SUFFIX
    assert first[HEADER_SIZE:] == b"abc"
    assert second[2:6] == (0x1235).to_bytes(4, "big")
    assert second[HEADER_SIZE:] == b"def"


def test_sequence_wraps(raw):
    with ObfsWeChatUDPSocket(_udp_socket(), None, sn=0xFFFFFFFF) as conn:
        conn.sendto(b"a", raw.getsockname())
        conn.sendto(b"b", raw.getsockname())
        first, _ = raw.recvfrom(UDP_BUFFER_SIZE)
        second, _ = raw.recvfrom(UDP_BUFFER_SIZE)
    assert first[2:6] == b"\xff\xff\xff\xff"
    assert second[2:6] == bytes(4)


def test_random_initial_sequence_fits_16_bits(raw):
    with ObfsWeChatUDPSocket(_udp_socket()) as conn:
        conn.sendto(b"x", raw.getsockname())
        packet, _ = raw.recvfrom(UDP_BUFFER_SIZE)
    assert int.from_bytes(packet[2:6], "big") <= 0xFFFF


def test_recvfrom_strips_header(raw):
    with ObfsWeChatUDPSocket(_udp_socket()) as conn:
        raw.sendto(PREFIX + bytes(4) + SUFFIX + b"payload", conn.getsockname())
        assert conn.recvfrom(1024) == (b"payload", raw.getsockname())


def test_recvfrom_truncates_without_obfs(raw):
    with ObfsWeChatUDPSocket(_udp_socket()) as conn:
        raw.sendto(PREFIX + bytes(4) + SUFFIX + b"payload", conn.getsockname())
        data, _ = conn.recvfrom(3)
    assert data == b"pay"


def test_header_only_datagram_returns_empty(raw):
    with ObfsWeChatUDPSocket(_udp_socket()) as conn:
        raw.sendto(PREFIX + bytes(4) + SUFFIX, conn.getsockname())
        data, addr = conn.recvfrom(1024)
    assert data == b""
    assert addr == raw.getsockname()


def test_obfuscated_body(raw):
    with ObfsWeChatUDPSocket(_udp_socket(), XPlusObfuscator(KEY)) as conn:
        conn.sendto(b"HelloWorld", raw.getsockname())
        packet, _ = raw.recvfrom(UDP_BUFFER_SIZE)
    body = packet[HEADER_SIZE:]
    assert len(body) == len(b"HelloWorld") + SALT_LEN
    assert XPlusObfuscator(KEY).deobfuscate(body) == b"HelloWorld"


def test_obfuscated_invalid_packets_skipped(raw):
    ob = XPlusObfuscator(KEY)
    header = PREFIX + bytes(4) + SUFFIX
    with ObfsWeChatUDPSocket(_udp_socket(), ob) as conn:
        raw.sendto(header + b"tiny", conn.getsockname())
        raw.sendto(header + ob.obfuscate(b"too long"), conn.getsockname())
        raw.sendto(header + ob.obfuscate(b"ok"), conn.getsockname())
        data, _ = conn.recvfrom(4)
    assert data == b"ok"


def test_round_trip_with_obfs():
    with ObfsWeChatUDPSocket(_udp_socket(), XPlusObfuscator(KEY)) as a, ObfsWeChatUDPSocket(
        _udp_socket(), XPlusObfuscator(KEY)
    ) as b:
        message = b"To be, or not to be, that is the question"
        a.sendto(message, b.getsockname())
        assert b.recvfrom(UDP_BUFFER_SIZE) == (message, a.getsockname())


def test_oversized_obfuscated_send_has_empty_body(raw):
    with ObfsWeChatUDPSocket(_udp_socket(), XPlusObfuscator(KEY)) as conn:
        data = b"x" * UDP_BUFFER_SIZE
        assert conn.sendto(data, raw.getsockname()) == len(data)
        packet, _ = raw.recvfrom(UDP_BUFFER_SIZE * 2)
    assert len(packet) == HEADER_SIZE


def test_oversized_plain_send_is_truncated(raw):
    with ObfsWeChatUDPSocket(_udp_socket()) as conn:
        conn.sendto(b"y" * (UDP_BUFFER_SIZE * 2), raw.getsockname())
        packet, _ = raw.recvfrom(UDP_BUFFER_SIZE * 4)
    assert len(packet) == UDP_BUFFER_SIZE


def test_buffers_and_fileno():
    sock = _udp_socket()
    conn = ObfsWeChatUDPSocket(sock)
    conn.set_read_buffer(65536)
    conn.set_write_buffer(65536)
    assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF) >= 65536
    assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF) >= 65536
    assert conn.fileno() == sock.fileno()
    conn.settimeout(0.05)
    with pytest.raises(TimeoutError):
        conn.recvfrom(1024)
    conn.close()
    assert sock.fileno() == -1