"""ACL engine: ordered rules with a result cache."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from cachetools import LRUCache

from hyproxy.acl_entry import (
    Action,
    CountryMatcher,
    Entry,
    MatchRequest,
    Protocol,
    parse_entry,
)
from hyproxy.utils import IPAddr, parse_ip_zone

ENTRY_CACHE_SIZE = 1024

Resolver = Callable[[str], IPAddr]


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching a host; resolve_error is set when a domain failed to resolve."""

    action: Action
    arg: str
    is_domain: bool
    ip_addr: Optional[IPAddr]
    resolve_error: Optional[OSError] = None


def _new_cache() -> LRUCache:
    return LRUCache(maxsize=ENTRY_CACHE_SIZE)


@dataclass
class Engine:
    """Matches hosts against ACL entries, first match wins.

    resolve_ip_addr must return an IPAddr or raise OSError. geoip_reader, if set,
    must provide country_code(ip).
    """

    entries: List[Entry]
    resolve_ip_addr: Resolver
    default_action: Action = Action.PROXY
    geoip_reader: Optional[Any] = None
    cache: LRUCache = field(default_factory=_new_cache, repr=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def _lookup(self, key: Tuple[str, int, bool], request: MatchRequest) -> Tuple[Action, str]:
        with self._lock:
            cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = next(
            ((entry.action, entry.action_arg) for entry in self.entries if entry.match(request)),
            (self.default_action, ""),
        )
        with self._lock:
            self.cache[key] = result
        return result

    def resolve_and_match(self, host: str, port: int, is_udp: bool) -> MatchResult:
        protocol = Protocol.UDP if is_udp else Protocol.TCP
        ip, zone = parse_ip_zone(host)
        if ip is None:
            ip_addr: Optional[IPAddr] = None
            error: Optional[OSError] = None
            try:
                ip_addr = self.resolve_ip_addr(host)
            except OSError as exc:
                error = exc
            request = MatchRequest(
                ip=ip_addr.ip if ip_addr is not None else None,
                domain=host,
                protocol=protocol,
                port=port,
                db=self.geoip_reader,
            )
            action, arg = self._lookup((host, port, is_udp), request)
            return MatchResult(action, arg, True, ip_addr, error)
        request = MatchRequest(ip=ip, protocol=protocol, port=port, db=self.geoip_reader)
        action, arg = self._lookup((str(ip), port, is_udp), request)
        return MatchResult(action, arg, False, IPAddr(ip, zone))


def load_from_file(
    filename,
    resolve_ip_addr: Resolver,
    geoip_load_func: Callable[[], Any],
) -> Engine:
    """Build an engine from an ACL file; the GeoIP database loads only if a country rule needs it."""
    entries: List[Entry] = []
    reader = None
    with open(filename, encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            entry = parse_entry(line)
            if isinstance(entry.matcher, CountryMatcher) and reader is None:
                reader = geoip_load_func()
            entries.append(entry)
    return Engine(
        entries=entries,
        resolve_ip_addr=resolve_ip_addr,
        default_action=Action.PROXY,
        geoip_reader=reader,
    )