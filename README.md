# hyproxy

Building blocks for a proxy that carries TCP and UDP traffic over QUIC. The
package holds the parts that do not depend on a particular QUIC
implementation:

- **Access control** (`hyproxy.acl_entry`, `hyproxy.acl_engine`): parse rule
  lines such as `block cidr 8.8.8.0/24 */53` or
  `hijack all udp/* udpblackhole.net`, and decide per host, port and protocol
  whether a request goes direct, through the proxy, is blocked or is hijacked
  to another address. Decisions are cached.
- **Congestion control** (`hyproxy.congestion`): `BrutalSender`, which holds
  a fixed target bandwidth and compensates for the measured loss rate, and
  the token-bucket `Pacer` behind it.
- **Wire protocol** (`hyproxy.protocol`): `ClientHello`, `ServerHello`,
  `ClientRequest`, `ServerResponse` and `UDPMessage`, each with `to_bytes()`
  and `from_bytes()`, plus UDP fragmentation (`frag_udp_message`) and
  reassembly (`Defragger`). Malformed data raises `ProtocolError`.
- **Obfuscation** (`hyproxy.obfs`, `hyproxy.udp_obfs`, `hyproxy.wechat`):
  the `XPlusObfuscator` salted-XOR obfuscator, `ObfsUDPSocket`, which applies
  it to every datagram, and `ObfsWeChatUDPSocket`, which prefixes each
  datagram with a video-call header and optionally obfuscates the payload.
- **Port hopping** (`hyproxy.hop`): `UDPHopClientSocket`, a client UDP socket
  that moves to a fresh local socket and a random server port from a set
  such as `example.com:1234,5678-5685` every `hop_interval` seconds.
- **Transports** (`hyproxy.transport`, `hyproxy.socks5`): address resolution
  with an IPv4/IPv6 preference (`ResolvePreference`,
  `resolve_preference_from_string`), direct outbound TCP and UDP
  (`ClientTransport`, `ServerTransport`), and outbound through a SOCKS5
  server for both TCP and UDP (`SOCKS5Client`).
- **Packet socket factories** (`hyproxy.pktconns`): pick the client or
  server socket for a transport and obfuscation password.
- **Helpers** (`hyproxy.utils`, `hyproxy.netopts`): host/port and IP-zone
  parsing, byte pipes between sockets or streams, binding a socket to a
  network interface (Linux only) and whether path MTU discovery should be
  disabled on this platform.

Requires Python 3.10 or later; the only runtime dependency is `cachetools`.

## Examples

### Access control rules

```python
from hyproxy.acl_entry import Action, parse_entry

entry = parse_entry("hijack all udp/* udpblackhole.net")
assert entry.action is Action.HIJACK
assert entry.action_arg == "udpblackhole.net"
```

A malformed rule raises `ACLError`. A rules file holds one rule per line;
blank lines and lines starting with `#` are ignored.
`hyproxy.acl_engine.load_from_file(filename, resolve_ip_addr,
geoip_load_func)` reads such a file into an `Engine`; `geoip_load_func` is
only called if a `country` rule is present. `Engine.resolve_and_match(host,
port, is_udp)` returns a `MatchResult` with the action, its argument, whether
the host was a domain, the resolved address and any resolution error. The
first matching rule wins; requests that match no rule are proxied.

### UDP fragmentation

```python
from hyproxy.protocol import Defragger, UDPMessage, frag_udp_message

msg = UDPMessage(session_id=123, host="test", port=123, msg_id=123, data=b"hello")
frags = frag_udp_message(msg, 22)
assert [f.data for f in frags] == [b"hell", b"o"]

defragger = Defragger()
results = [defragger.feed(f) for f in frags]
assert results[0] is None and results[1].data == b"hello"
```

### Multi-port server addresses

```python
from hyproxy.hop import parse_addr

host, ports = parse_addr("example.com:8003-8000")
assert host == "example.com" and ports == [8000, 8001, 8002, 8003]
```

### Obfuscation

```python
from hyproxy.obfs import XPlusObfuscator

obfs_password = "password"
x = XPlusObfuscator(obfs_password.encode())
packet = x.obfuscate(b"HelloWorld")
assert x.deobfuscate(packet) == b"HelloWorld"
```

Each obfuscated packet starts with a 16-byte random salt; the payload is
XORed with the SHA-256 of the shared key and that salt.

### Socket factories

```python
from hyproxy.pktconns import new_client_udp_conn_func, new_server_udp_conn_func

obfs_password = "password"
listen = new_server_udp_conn_func(obfs_password)
dial = new_client_udp_conn_func(obfs_password, 10.0)
```

`listen(address)` returns a server socket; `dial(server)` returns a client
socket and the server address. An empty password gives plain, unobfuscated
sockets. A server address whose port part holds `,` or `-` makes the client
hop between those ports.

## What this package does not do

- It has no QUIC client or server: nothing here opens QUIC connections,
  runs the control-stream handshake, or relays TCP streams and UDP sessions.
  The protocol messages, congestion controller, ACL engine and transports
  are meant to be used by such a client or server.
- It provides no command-line program and no configuration file format
  beyond ACL rule files.
- Fake-TCP transports are not available; the factories
  `new_client_faketcp_conn_func` and `new_server_faketcp_conn_func` raise
  `FakeTCPUnsupportedError` when used.
- GeoIP lookups are not built in; `country` rules need a reader object with a
  `country_code(ip)` method supplied by the caller.