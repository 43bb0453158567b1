"""Platform socket options: interface binding and path MTU discovery."""

from __future__ import annotations

import socket
import sys
from typing import Optional

_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)


def bind_socket_to_interface(sock, interface: Optional[str]) -> None:
    """Bind sock to the named network interface; supported on Linux only."""
    if not sys.platform.startswith("linux"):
        raise OSError("binding interface is not supported on the current system")
    if interface is None:
        return
    sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, interface.encode() + b"\0")


def path_mtu_discovery_disabled() -> bool:
    """Path MTU discovery is only trusted on Linux and Windows."""
    return not (sys.platform.startswith("linux") or sys.platform == "win32")