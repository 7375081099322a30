# hyrelay

hyrelay is a library of the pieces that sit around a proxy tunnel. It covers the
configuration model, client authentication, per-user traffic accounting, TLS key
pair reloading, and asyncio front-ends (TCP relay, UDP relay, SOCKS5 server).
These front-ends hand local connections to a tunnel client that you supply.

## What is inside

| Module              | Purpose |
|---------------------|---------|
| `hyrelay.config`    | `ServerConfig`, `ClientConfig` and `Relay`, with parsing (`parse_server_config`, `parse_client_config`), validation (`check`), defaults (`fill`) and bandwidth strings (`string_to_bps`) |
| `hyrelay.ipmasker`  | `IPMasker`, which cuts addresses in log output down to a CIDR prefix |
| `hyrelay.paths`     | `home_dir()` and `data_dir()` |
| `hyrelay.auth`      | `password_auth_func`, `external_auth_func`, `CommandAuthProvider`, `HTTPAuthProvider` |
| `hyrelay.update`    | `ReleaseInfo`, `fetch_latest_release`, `check_update` |
| `hyrelay.mmdb`      | `download_mmdb` and `ensure_mmdb` for the GeoIP country database file |
| `hyrelay.traffic`   | `TrafficCounter`, which counts bytes and connections per user and renders them in Prometheus text format |
| `hyrelay.kploader`  | `KeypairLoader`, which reloads a certificate/key pair when the files change |
| `hyrelay.actions`   | The routing `Action` enum and `action_to_string` |
| `hyrelay.relay`     | `TCPRelay`, `UDPRelay`, `RelayTimeout` and `pipe_pair_with_timeout` |
| `hyrelay.socks5`    | `Socks5Server`, plus `Datagram`, `encode_reply` and `parse_address` |

## Installation

hyrelay needs Python 3.10 or newer. It depends on `requests` and `watchdog`.
The `test` extra installs `pytest`, `pytest-asyncio` and `responses`.

## Configuration

Configuration documents are JSON. The parse functions build the config and call
`check()`. They raise `ConfigError` (a `ValueError`) when the document does not
parse, when a field has the wrong type, or when a required value is missing or
out of range:

```python
from hyrelay.config import ConfigError, parse_server_config

document = """
{
    "listen": ":443",
    "cert": "/etc/hyrelay/cert.pem",
    "key": "/etc/hyrelay/key.pem",
    "up": "100 Mbps",
    "down": "100 Mbps",
    "auth": {"mode": "password", "config": {"password": "password"}}
}
"""

try:
    config = parse_server_config(document)
except ConfigError as exc:
    print("bad configuration:", exc)
else:
    config.fill()          # ALPN "hysteria", receive windows, max streams, mmdb name
    up, down = config.speed()
```

A server needs either ACME domains or both `cert` and `key`, and it may not have
both. `config.auth.config` holds the raw JSON text of the `auth.config` value,
ready for the functions in `hyrelay.auth`.

Bandwidth is given either as a plain number of Mbps (`up_mbps`, `down_mbps`,
each Mbps being 125000 bytes per second) or as a rate string. In a rate string
the prefixes `K`, `M`, `G` and `T` are binary, and a lower-case `b` means bits:

```python
from hyrelay.config import string_to_bps

string_to_bps("10 MBps")   # 10485760
string_to_bps("10 Mbps")   # 1310720
string_to_bps("Mbps")      # 0: not a valid rate
```

A client configuration must enable at least one local mode: `socks5`, `http`,
`tun`, `relay_tcp`, `relay_udp`, `relay_tcps`, `relay_udps`, `tproxy_tcp`,
`tproxy_udp` or `redirect_tcp`. It is parsed with `parse_client_config`. The
single `relay_tcp` and `relay_udp` entries are still accepted, and a warning
suggests the list forms. `ClientConfig.fill()` also sets the idle timeout
(20 s) and hop interval (10 s) defaults.

## Authentication

`password_auth_func` takes the JSON of the `auth.config` value. That value is
either a list of accepted passwords or an object with a `password` entry. The
function returns a callable `(addr, payload, send, recv) -> (ok, message)`:

```python
from hyrelay.auth import password_auth_func

check = password_auth_func('{"password": "password"}')
check(("192.0.2.1", 5000), b"password", 0, 0)   # (True, "Welcome")
check(("192.0.2.1", 5000), b"other", 0, 0)      # (False, "Wrong password")
```

`external_auth_func` takes an object with either an `http` or a `cmd` entry:

- `http`: `HTTPAuthProvider` posts `{"addr", "payload" (base64), "send", "recv"}`
  as JSON, with a 10 second timeout. It reads `{"ok", "msg"}` from the reply. If
  the request fails, the status is not 200 or the body is unreadable, the client
  is rejected with `"internal error"`.
- `cmd`: `CommandAuthProvider` runs the program with the address, payload, send
  and receive speeds as arguments. Exit status 0 accepts the client. The
  program's standard output, stripped, is the message.

An invalid configuration raises `AuthConfigError`.

## Local front-ends

The front-ends run on asyncio. The tunnel client is any object with:

- `await client.dial_tcp(addr)` returning an `(asyncio.StreamReader, asyncio.StreamWriter)` pair;
- `await client.dial_udp()` returning a session with awaitable `read_from() -> (data, addr)`
  and `write_to(data, addr)`, and a `close()` method.

```python
import asyncio
from hyrelay.relay import TCPRelay

async def run(client):
    relay = TCPRelay(client, "127.0.0.1:8080", "example.com:80", timeout=60)
    await relay.listen_and_serve()     # until relay.close()
```

- `TCPRelay` forwards each accepted connection to a fixed remote address.
- `UDPRelay` opens one tunnel session per local source. A session that stays
  idle for its timeout (one minute by default) is closed, and the error
  callback is called with `RelayTimeout`.
- `Socks5Server` handles CONNECT and UDP ASSOCIATE, with optional
  username/password authentication (`auth_func`). An optional `acl_engine`
  routes requests. Its `resolve_and_match(host, port, is_udp)` returns
  `(action, arg, ip, error)`, and the action is an `Action`: DIRECT, PROXY,
  BLOCK or HIJACK. Without an engine, everything goes through the client.

Each front-end sets its `started` event and its `address` once it is listening.
`pipe_pair_with_timeout` copies between two stream pairs until one side ends. It
raises `RelayTimeout` after the given idle time.

## Other helpers

- `IPMasker(ipv4_mask=24).mask("192.0.2.77:443")` returns `"192.0.2.0:443"`. A masker
  with no prefixes, or a host that is not an IP address, is returned unchanged.
- `TrafficCounter` records `tx`/`rx` bytes and `inc_conn`/`dec_conn` for each user.
  `render()` returns the `hysteria_*` metrics as Prometheus text.
- `KeypairLoader(cert_path, key_path, alpn=[...])` builds a TLS 1.3 server
  `ssl.SSLContext` and watches both files. `context()` returns the latest context.
  If a reload fails, the previous context is kept.
- `check_update(version, url)` returns the latest `ReleaseInfo` when its tag differs
  from the version (any `-suffix` is ignored). It returns `None` when the tags
  match or the check fails.
- `ensure_mmdb(filename, url)` downloads the database only when the file is missing.
- `data_dir()` returns `$XDG_DATA_HOME/certmagic`, or `~/.local/share/certmagic`.

## What this package does not do

hyrelay is a library. It has no command-line program. It does not include the
tunnel client or server: the object behind `dial_tcp`/`dial_udp` and the ACL
engine are supplied by the caller. It provides no HTTP proxy, TUN device,
transparent proxying or iptables-redirect listener, even though the client
configuration can describe those modes. It does not set up DNS resolvers,
obtain ACME certificates, or serve the metrics over HTTP.