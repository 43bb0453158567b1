"""Building blocks for a QUIC-based proxy: ACL rules, congestion control, wire protocol, obfuscation, port hopping and transports."""

__version__ = "0.1.0"