"""Salted XOR packet obfuscation."""

from __future__ import annotations

import hashlib
import os
from itertools import cycle

SALT_LEN = 16


class XPlusObfuscator:
    """XORs payloads with SHA-256(key + salt) under a fresh random salt.

    Packet format: [salt][obfuscated payload].
    """

    def __init__(self, key: bytes) -> None:
        self.key = bytes(key)

    def _xor(self, salt: bytes, data: bytes) -> bytes:
        pad = hashlib.sha256(self.key + salt).digest()
        return bytes(b ^ k for b, k in zip(data, cycle(pad)))

    def obfuscate(self, data: bytes) -> bytes:
        salt = os.urandom(SALT_LEN)
        return salt + self._xor(salt, data)

    def deobfuscate(self, data: bytes) -> bytes:
        """Recover the payload; returns b"" when data carries no payload."""
        if len(data) <= SALT_LEN:
            return b""
        return self._xor(bytes(data[:SALT_LEN]), bytes(data[SALT_LEN:]))