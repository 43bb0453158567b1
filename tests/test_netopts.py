import socket
from unittest import mock

import pytest

from hyproxy.netopts import bind_socket_to_interface, path_mtu_discovery_disabled


class RecordingSocket:
    def __init__(self):
        self.calls = []

    def setsockopt(self, level, option, value):
        self.calls.append((level, option, value))


def test_bind_unsupported_platform():
    with mock.patch("sys.platform", "darwin"):
        with pytest.raises(OSError, match="not supported"):
            bind_socket_to_interface(RecordingSocket(), "eth0")


def test_bind_on_linux_sets_option():
    sock = RecordingSocket()
    with mock.patch("sys.platform", "linux"):
        bind_socket_to_interface(sock, "eth0")
    assert len(sock.calls) == 1
    level, _, value = sock.calls[0]
    assert level == socket.SOL_SOCKET
    assert value == b"eth0\0"


def test_bind_without_interface_does_nothing():
    sock = RecordingSocket()
    with mock.patch("sys.platform", "linux"):
        bind_socket_to_interface(sock, None)
    assert sock.calls == []


@pytest.mark.parametrize(
    "platform, disabled",
    [("linux", False), ("win32", False), ("darwin", True), ("freebsd13", True)],
)
def test_path_mtu_discovery(platform, disabled):
    with mock.patch("sys.platform", platform):
        assert path_mtu_discovery_disabled() is disabled