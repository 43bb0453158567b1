"""ACL rule parsing and matching."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Protocol as _TypingProtocol, Tuple, Union

from hyproxy.utils import IPAddress, parse_ip_zone

_DIGITS = re.compile(r"[0-9]+")


class ACLError(ValueError):
    """Raised for a malformed ACL rule."""


class Action(IntEnum):
    DIRECT = 0
    PROXY = 1
    BLOCK = 2
    HIJACK = 3


class Protocol(IntEnum):
    ALL = 0
    TCP = 1
    UDP = 2


PROTOCOL_PORT_ALIASES = {
    "echo": "*/7",
    "ftp-data": "*/20",
    "ftp": "*/21",
    "ssh": "*/22",
    "telnet": "*/23",
    "domain": "*/53",
    "dns": "*/53",
    "http": "*/80",
    "sftp": "*/115",
    "ntp": "*/123",
    "https": "*/443",
    "quic": "udp/443",
    "socks": "*/1080",
}

_PROTOCOLS = {"tcp": Protocol.TCP, "udp": Protocol.UDP, "*": Protocol.ALL}
_ACTIONS = {
    "direct": Action.DIRECT,
    "proxy": Action.PROXY,
    "block": Action.BLOCK,
    "hijack": Action.HIJACK,
}


class _CountryLookup(_TypingProtocol):
    def country_code(self, ip: IPAddress) -> str:
        """Return the ISO 3166-1 alpha-2 code of the country of ip."""


IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class MatchRequest:
    """What a rule is matched against."""

    ip: Optional[IPAddress] = None
    domain: str = ""
    protocol: Protocol = Protocol.ALL
    port: int = 0
    db: Optional[_CountryLookup] = None


@dataclass(frozen=True, kw_only=True)
class MatcherBase:
    """Protocol and port restriction shared by all matchers; port 0 means any."""

    protocol: Protocol = Protocol.ALL
    port: int = 0

    def match_protocol_port(self, protocol: Protocol, port: int) -> bool:
        return (self.protocol in (Protocol.ALL, protocol)) and (
            self.port == 0 or self.port == port
        )


@dataclass(frozen=True, kw_only=True)
class NetMatcher(MatcherBase):
    network: IPNetwork

    def match(self, request: MatchRequest) -> bool:
        ip = request.ip
        if ip is None:
            return False
        if ip.version != self.network.version:
            mapped = getattr(ip, "ipv4_mapped", None)
            if mapped is None:
                return False
            ip = mapped
        return ip in self.network and self.match_protocol_port(request.protocol, request.port)


@dataclass(frozen=True, kw_only=True)
class DomainMatcher(MatcherBase):
    domain: str
    suffix: bool = False

    def match(self, request: MatchRequest) -> bool:
        if not request.domain:
            return False
        domain = request.domain.lower()
        hit = self.domain == domain or (self.suffix and domain.endswith("." + self.domain))
        return hit and self.match_protocol_port(request.protocol, request.port)


@dataclass(frozen=True, kw_only=True)
class CountryMatcher(MatcherBase):
    country: str

    def match(self, request: MatchRequest) -> bool:
        if request.ip is None or request.db is None:
            return False
        try:
            code = request.db.country_code(request.ip)
        except Exception:  # any lookup failure is a non-match
            return False
        return code == self.country and self.match_protocol_port(request.protocol, request.port)


@dataclass(frozen=True, kw_only=True)
class AllMatcher(MatcherBase):
    def match(self, request: MatchRequest) -> bool:
        return self.match_protocol_port(request.protocol, request.port)


Matcher = Union[NetMatcher, DomainMatcher, CountryMatcher, AllMatcher]


@dataclass(frozen=True)
class Entry:
    """One ACL rule: an action, its argument and the condition it applies to."""

    action: Action
    action_arg: str
    matcher: Matcher

    def match(self, request: MatchRequest) -> bool:
        return self.matcher.match(request)


def parse_protocol_port(s: str) -> Tuple[Protocol, int]:
    """Parse "proto/port", "*" or an alias such as "https"."""
    s = PROTOCOL_PORT_ALIASES.get(s, s)
    if not s or s == "*":
        return Protocol.ALL, 0
    parts = s.split("/")
    if len(parts) != 2:
        raise ACLError("invalid protocol/port syntax")
    protocol = _PROTOCOLS.get(parts[0])
    if protocol is None:
        raise ACLError("invalid protocol")
    if parts[1] == "*":
        return protocol, 0
    if not _DIGITS.fullmatch(parts[1]) or int(parts[1]) > 0xFFFF:
        raise ACLError("invalid port")
    return protocol, int(parts[1])


def _parse_cidr(s: str) -> IPNetwork:
    address, sep, prefix = s.partition("/")
    if not sep or "%" in address or not _DIGITS.fullmatch(prefix):
        raise ACLError(f"invalid CIDR address: {s}")
    try:
        return ipaddress.ip_network(s, strict=False)
    except ValueError:
        raise ACLError(f"invalid CIDR address: {s}") from None


def _parse_single_ip(s: str) -> IPNetwork:
    ip, _ = parse_ip_zone(s)
    if ip is None or "%" in s:
        raise ACLError(f"invalid ip: {s}")
    return ipaddress.ip_network(ip)


def _conds_to_matcher(conds: list) -> Matcher:
    if not conds:
        raise ACLError("no condition specified")
    typ, args = conds[0], conds[1:]
    kind = typ.lower()
    if kind == "all":
        if len(args) > 1:
            raise ACLError(
                f"invalid number of arguments for all: {len(args)}, expected 0 or 1"
            )
        protocol, port = parse_protocol_port(args[0]) if args else (Protocol.ALL, 0)
        return AllMatcher(protocol=protocol, port=port)
    if kind not in ("domain", "domain-suffix", "cidr", "ip", "country"):
        raise ACLError(f"invalid condition type: {typ}")
    if not 1 <= len(args) <= 2:
        raise ACLError(
            f"invalid number of arguments for {kind}: {len(args)}, expected 1 or 2"
        )
    protocol, port = parse_protocol_port(args[1]) if len(args) == 2 else (Protocol.ALL, 0)
    target = args[0]
    if kind == "domain":
        return DomainMatcher(protocol=protocol, port=port, domain=target, suffix=False)
    if kind == "domain-suffix":
        return DomainMatcher(protocol=protocol, port=port, domain=target, suffix=True)
    if kind == "cidr":
        return NetMatcher(protocol=protocol, port=port, network=_parse_cidr(target))
    if kind == "ip":
        return NetMatcher(protocol=protocol, port=port, network=_parse_single_ip(target))
    return CountryMatcher(protocol=protocol, port=port, country=target.upper())


def parse_entry(s: str) -> Entry:
    """Parse one ACL line such as "block cidr 8.8.8.0/24 */53"."""
    fields = s.split()
    if len(fields) < 2:
        raise ACLError(f"expected at least 2 fields, got {len(fields)}")
    name, conds = fields[0], fields[1:]
    action = _ACTIONS.get(name.lower())
    if action is None:
        raise ACLError(f"invalid action {name}")
    arg = ""
    if action is Action.HIJACK:
        if len(conds) < 2:
            raise ACLError(f"hijack requires at least 3 fields, got {len(fields)}")
        arg, conds = conds[-1], conds[:-1]
    return Entry(action, arg, _conds_to_matcher(conds))