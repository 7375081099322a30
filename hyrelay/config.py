"""Client and server configuration: parsing, validation and defaults."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

MBPS_TO_BPS = 125_000
MIN_SPEED_BPS = 16_384

DEFAULT_ALPN = "hysteria"

DEFAULT_STREAM_RECEIVE_WINDOW = 16_777_216  # 16 MB
DEFAULT_CONNECTION_RECEIVE_WINDOW = DEFAULT_STREAM_RECEIVE_WINDOW * 5 // 2  # 40 MB
MIN_RECEIVE_WINDOW = 65_536

DEFAULT_MAX_INCOMING_STREAMS = 1024

DEFAULT_MMDB_FILENAME = "GeoLite2-Country.mmdb"

SERVER_MAX_IDLE_TIMEOUT_SEC = 60
DEFAULT_CLIENT_IDLE_TIMEOUT_SEC = 20

DEFAULT_CLIENT_HOP_INTERVAL_SEC = 10

_UINT64_MAX = 2**64 - 1
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_RATE_RE = re.compile(r"([0-9]+)[ \t\n\f\r]*([KMGT]?)([Bb])ps")
_RATE_UNITS = {"": 1, "K": 1 << 10, "M": 1 << 20, "G": 1 << 30, "T": 1 << 40}


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed or is invalid."""


def string_to_bps(s: str) -> int:
    """Convert a rate such as ``"100 Mbps"`` to bytes per second; 0 if invalid."""
    if not s:
        return 0
    m = _RATE_RE.fullmatch(s)
    if m is None:
        return 0
    value = min(int(m.group(1)), _UINT64_MAX)
    n = (value * _RATE_UNITS[m.group(2)]) & _UINT64_MAX
    if m.group(3) == "b":
        # Bits, convert to bytes
        n >>= 3
    return n


def _speed(up: str, up_mbps: int, down: str, down_mbps: int) -> tuple[int, int]:
    if up:
        up_bps = string_to_bps(up)
        if up_bps == 0:
            raise ConfigError("invalid speed format")
    else:
        up_bps = (up_mbps * MBPS_TO_BPS) & _UINT64_MAX
    if down:
        down_bps = string_to_bps(down)
        if down_bps == 0:
            raise ConfigError("invalid speed format")
    else:
        down_bps = (down_mbps * MBPS_TO_BPS) & _UINT64_MAX
    return up_bps, down_bps


def _bad_timeout(value: int, minimum: int) -> bool:
    return value != 0 and value < minimum


def _bad_window(value: int) -> bool:
    return value != 0 and value < MIN_RECEIVE_WINDOW


class _Fields:
    """Typed access to the members of one JSON object."""

    def __init__(self, data: Any, where: str) -> None:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"{where}: expected an object")
        self._data = data
        self._where = where

    def _key(self, key: str) -> str | None:
        if key in self._data:
            return key
        folded = key.casefold()
        return next((k for k in self._data if k.casefold() == folded), None)

    def has(self, key: str) -> bool:
        return self._key(key) is not None

    def value(self, key: str) -> Any:
        found = self._key(key)
        return None if found is None else self._data[found]

    def _fail(self, key: str, expected: str) -> ConfigError:
        return ConfigError(f"{self._where}.{key}: expected {expected}")

    def text(self, key: str) -> str:
        v = self.value(key)
        if v is None:
            return ""
        if not isinstance(v, str):
            raise self._fail(key, "a string")
        return v

    def flag(self, key: str) -> bool:
        v = self.value(key)
        if v is None:
            return False
        if not isinstance(v, bool):
            raise self._fail(key, "a boolean")
        return v

    def integer(self, key: str, low: int = _INT64_MIN, high: int = _INT64_MAX) -> int:
        v = self.optional_integer(key, low, high)
        return 0 if v is None else v

    def optional_integer(
        self, key: str, low: int = _INT64_MIN, high: int = _INT64_MAX
    ) -> int | None:
        v = self.value(key)
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, int) or not low <= v <= high:
            raise self._fail(key, f"an integer in [{low}, {high}]")
        return v

    def text_list(self, key: str) -> list[str]:
        v = self.value(key)
        if v is None:
            return []
        if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
            raise self._fail(key, "a list of strings")
        return list(v)

    def child(self, key: str) -> _Fields:
        return _Fields(self.value(key), f"{self._where}.{key}")

    def children(self, key: str) -> list[_Fields]:
        v = self.value(key)
        if v is None:
            return []
        if not isinstance(v, list):
            raise self._fail(key, "a list")
        return [_Fields(item, f"{self._where}.{key}[{i}]") for i, item in enumerate(v)]

    def base64_bytes(self, key: str) -> bytes:
        v = self.value(key)
        if v is None:
            return b""
        if not isinstance(v, str):
            raise self._fail(key, "a base64 string")
        try:
            return base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigError(f"{self._where}.{key}: invalid base64: {exc}") from exc


@dataclass
class Relay:
    """One TCP or UDP relay: a local listen address forwarded to a remote."""

    listen: str = ""
    remote: str = ""
    timeout: int = 0

    @classmethod
    def _from_fields(cls, f: _Fields) -> Relay:
        return cls(listen=f.text("listen"), remote=f.text("remote"), timeout=f.integer("timeout"))

    def check(self) -> None:
        if not self.listen:
            raise ConfigError("missing relay listen address")
        if not self.remote:
            raise ConfigError("missing relay remote address")
        if _bad_timeout(self.timeout, 4):
            raise ConfigError("invalid relay timeout")


@dataclass
class AcmeConfig:
    domains: list[str] = field(default_factory=list)
    email: str = ""
    disable_http_challenge: bool = False
    disable_tls_alpn_challenge: bool = False
    alt_http_port: int = 0
    alt_tls_alpn_port: int = 0

    @classmethod
    def _from_fields(cls, f: _Fields) -> AcmeConfig:
        return cls(
            domains=f.text_list("domains"),
            email=f.text("email"),
            disable_http_challenge=f.flag("disable_http"),
            disable_tls_alpn_challenge=f.flag("disable_tlsalpn"),
            alt_http_port=f.integer("alt_http_port"),
            alt_tls_alpn_port=f.integer("alt_tlsalpn_port"),
        )


@dataclass
class AuthConfig:
    """Authentication mode; ``config`` holds the raw JSON text of its settings."""

    mode: str = ""
    config: str | None = None

    @classmethod
    def _from_fields(cls, f: _Fields) -> AuthConfig:
        raw = json.dumps(f.value("config")) if f.has("config") else None
        return cls(mode=f.text("mode"), config=raw)


@dataclass
class Socks5OutboundConfig:
    server: str = ""
    user: str = ""
    password: str = ""

    @classmethod
    def _from_fields(cls, f: _Fields) -> Socks5OutboundConfig:
        return cls(server=f.text("server"), user=f.text("user"), password=f.text("password"))


@dataclass
class BindOutboundConfig:
    address: str = ""
    device: str = ""

    @classmethod
    def _from_fields(cls, f: _Fields) -> BindOutboundConfig:
        return cls(address=f.text("address"), device=f.text("device"))


@dataclass
class ServerConfig:
    listen: str = ""
    protocol: str = ""
    acme: AcmeConfig = field(default_factory=AcmeConfig)
    cert_file: str = ""
    key_file: str = ""
    up: str = ""
    up_mbps: int = 0
    down: str = ""
    down_mbps: int = 0
    disable_udp: bool = False
    acl: str = ""
    mmdb: str = ""
    obfs: str = ""
    auth: AuthConfig = field(default_factory=AuthConfig)
    alpn: str = ""
    prometheus_listen: str = ""
    recv_window_conn: int = 0
    recv_window_client: int = 0
    max_conn_client: int = 0
    disable_mtu_discovery: bool = False
    resolver: str = ""
    resolve_preference: str = ""
    socks5_outbound: Socks5OutboundConfig = field(default_factory=Socks5OutboundConfig)
    bind_outbound: BindOutboundConfig = field(default_factory=BindOutboundConfig)

    @classmethod
    def _from_fields(cls, f: _Fields) -> ServerConfig:
        return cls(
            listen=f.text("listen"),
            protocol=f.text("protocol"),
            acme=AcmeConfig._from_fields(f.child("acme")),
            cert_file=f.text("cert"),
            key_file=f.text("key"),
            up=f.text("up"),
            up_mbps=f.integer("up_mbps"),
            down=f.text("down"),
            down_mbps=f.integer("down_mbps"),
            disable_udp=f.flag("disable_udp"),
            acl=f.text("acl"),
            mmdb=f.text("mmdb"),
            obfs=f.text("obfs"),
            auth=AuthConfig._from_fields(f.child("auth")),
            alpn=f.text("alpn"),
            prometheus_listen=f.text("prometheus_listen"),
            recv_window_conn=f.integer("recv_window_conn", 0, _UINT64_MAX),
            recv_window_client=f.integer("recv_window_client", 0, _UINT64_MAX),
            max_conn_client=f.integer("max_conn_client"),
            disable_mtu_discovery=f.flag("disable_mtu_discovery"),
            resolver=f.text("resolver"),
            resolve_preference=f.text("resolve_preference"),
            socks5_outbound=Socks5OutboundConfig._from_fields(f.child("socks5_outbound")),
            bind_outbound=BindOutboundConfig._from_fields(f.child("bind_outbound")),
        )

    def speed(self) -> tuple[int, int]:
        """Return ``(up, down)`` in bytes per second."""
        return _speed(self.up, self.up_mbps, self.down, self.down_mbps)

    def check(self) -> None:
        if not self.listen:
            raise ConfigError("missing listen address")
        has_files = bool(self.cert_file) and bool(self.key_file)
        if not self.acme.domains and not has_files:
            raise ConfigError("need either ACME info or cert/key files")
        if self.acme.domains and (self.cert_file or self.key_file):
            raise ConfigError(
                "cannot use both ACME and cert/key files, they are mutually exclusive"
            )
        try:
            up, down = self.speed()
        except ConfigError:
            raise ConfigError("invalid speed") from None
        if (up != 0 and up < MIN_SPEED_BPS) or (down != 0 and down < MIN_SPEED_BPS):
            raise ConfigError("invalid speed")
        if _bad_window(self.recv_window_conn) or _bad_window(self.recv_window_client):
            raise ConfigError("invalid receive window size")
        if self.max_conn_client < 0:
            raise ConfigError("invalid max connections per client")

    def fill(self) -> None:
        """Replace unset values with their defaults."""
        if not self.alpn:
            self.alpn = DEFAULT_ALPN
        if self.recv_window_conn == 0:
            self.recv_window_conn = DEFAULT_STREAM_RECEIVE_WINDOW
        if self.recv_window_client == 0:
            self.recv_window_client = DEFAULT_CONNECTION_RECEIVE_WINDOW
        if self.max_conn_client == 0:
            self.max_conn_client = DEFAULT_MAX_INCOMING_STREAMS
        if not self.mmdb:
            self.mmdb = DEFAULT_MMDB_FILENAME


@dataclass
class Socks5Config:
    listen: str = ""
    timeout: int = 0
    disable_udp: bool = False
    user: str = ""
    password: str = ""

    @classmethod
    def _from_fields(cls, f: _Fields) -> Socks5Config:
        return cls(
            listen=f.text("listen"),
            timeout=f.integer("timeout"),
            disable_udp=f.flag("disable_udp"),
            user=f.text("user"),
            password=f.text("password"),
        )


@dataclass
class HTTPConfig:
    listen: str = ""
    timeout: int = 0
    user: str = ""
    password: str = ""
    cert: str = ""
    key: str = ""

    @classmethod
    def _from_fields(cls, f: _Fields) -> HTTPConfig:
        return cls(
            listen=f.text("listen"),
            timeout=f.integer("timeout"),
            user=f.text("user"),
            password=f.text("password"),
            cert=f.text("cert"),
            key=f.text("key"),
        )


@dataclass
class TunConfig:
    name: str = ""
    timeout: int = 0
    mtu: int = 0
    tcp_send_buffer_size: str = ""
    tcp_receive_buffer_size: str = ""
    tcp_moderate_receive_buffer: bool = False

    @classmethod
    def _from_fields(cls, f: _Fields) -> TunConfig:
        return cls(
            name=f.text("name"),
            timeout=f.integer("timeout"),
            mtu=f.integer("mtu", 0, 2**32 - 1),
            tcp_send_buffer_size=f.text("tcp_sndbuf"),
            tcp_receive_buffer_size=f.text("tcp_rcvbuf"),
            tcp_moderate_receive_buffer=f.flag("tcp_autotuning"),
        )


@dataclass
class ListenConfig:
    """A listen address with an idle timeout in seconds."""

    listen: str = ""
    timeout: int = 0

    @classmethod
    def _from_fields(cls, f: _Fields) -> ListenConfig:
        return cls(listen=f.text("listen"), timeout=f.integer("timeout"))


@dataclass
class ClientConfig:
    server: str = ""
    protocol: str = ""
    up: str = ""
    up_mbps: int = 0
    down: str = ""
    down_mbps: int = 0
    retry: int = 0
    retry_interval: int | None = None
    quit_on_disconnect: bool = False
    handshake_timeout: int = 0
    idle_timeout: int = 0
    hop_interval: int = 0
    socks5: Socks5Config = field(default_factory=Socks5Config)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    tun: TunConfig = field(default_factory=TunConfig)
    tcp_relays: list[Relay] = field(default_factory=list)
    tcp_relay: Relay = field(default_factory=Relay)  # deprecated
    udp_relays: list[Relay] = field(default_factory=list)
    udp_relay: Relay = field(default_factory=Relay)  # deprecated
    tcp_tproxy: ListenConfig = field(default_factory=ListenConfig)
    udp_tproxy: ListenConfig = field(default_factory=ListenConfig)
    tcp_redirect: ListenConfig = field(default_factory=ListenConfig)
    acl: str = ""
    mmdb: str = ""
    obfs: str = ""
    auth: bytes = b""
    auth_str: str = ""
    alpn: str = ""
    server_name: str = ""
    insecure: bool = False
    custom_ca: str = ""
    recv_window_conn: int = 0
    recv_window: int = 0
    disable_mtu_discovery: bool = False
    fast_open: bool = False
    resolver: str = ""
    resolve_preference: str = ""

    @classmethod
    def _from_fields(cls, f: _Fields) -> ClientConfig:
        return cls(
            server=f.text("server"),
            protocol=f.text("protocol"),
            up=f.text("up"),
            up_mbps=f.integer("up_mbps"),
            down=f.text("down"),
            down_mbps=f.integer("down_mbps"),
            retry=f.integer("retry"),
            retry_interval=f.optional_integer("retry_interval"),
            quit_on_disconnect=f.flag("quit_on_disconnect"),
            handshake_timeout=f.integer("handshake_timeout"),
            idle_timeout=f.integer("idle_timeout"),
            hop_interval=f.integer("hop_interval"),
            socks5=Socks5Config._from_fields(f.child("socks5")),
            http=HTTPConfig._from_fields(f.child("http")),
            tun=TunConfig._from_fields(f.child("tun")),
            tcp_relays=[Relay._from_fields(c) for c in f.children("relay_tcps")],
            tcp_relay=Relay._from_fields(f.child("relay_tcp")),
            udp_relays=[Relay._from_fields(c) for c in f.children("relay_udps")],
            udp_relay=Relay._from_fields(f.child("relay_udp")),
            tcp_tproxy=ListenConfig._from_fields(f.child("tproxy_tcp")),
            udp_tproxy=ListenConfig._from_fields(f.child("tproxy_udp")),
            tcp_redirect=ListenConfig._from_fields(f.child("redirect_tcp")),
            acl=f.text("acl"),
            mmdb=f.text("mmdb"),
            obfs=f.text("obfs"),
            auth=f.base64_bytes("auth"),
            auth_str=f.text("auth_str"),
            alpn=f.text("alpn"),
            server_name=f.text("server_name"),
            insecure=f.flag("insecure"),
            custom_ca=f.text("ca"),
            recv_window_conn=f.integer("recv_window_conn", 0, _UINT64_MAX),
            recv_window=f.integer("recv_window", 0, _UINT64_MAX),
            disable_mtu_discovery=f.flag("disable_mtu_discovery"),
            fast_open=f.flag("fast_open"),
            resolver=f.text("resolver"),
            resolve_preference=f.text("resolve_preference"),
        )

    def speed(self) -> tuple[int, int]:
        """Return ``(up, down)`` in bytes per second."""
        return _speed(self.up, self.up_mbps, self.down, self.down_mbps)

    def check(self) -> None:
        modes = (
            self.socks5.listen,
            self.http.listen,
            self.tun.name,
            self.tcp_relay.listen,
            self.udp_relay.listen,
            self.tcp_relays,
            self.udp_relays,
            self.tcp_tproxy.listen,
            self.udp_tproxy.listen,
            self.tcp_redirect.listen,
        )
        if not any(modes):
            raise ConfigError("please enable at least one mode")
        if _bad_timeout(self.handshake_timeout, 2):
            raise ConfigError("invalid handshake timeout")
        if _bad_timeout(self.idle_timeout, 4):
            raise ConfigError("invalid idle timeout")
        if _bad_timeout(self.hop_interval, 8):
            raise ConfigError("invalid hop interval")
        if _bad_timeout(self.socks5.timeout, 4):
            raise ConfigError("invalid SOCKS5 timeout")
        if _bad_timeout(self.http.timeout, 4):
            raise ConfigError("invalid HTTP timeout")
        if _bad_timeout(self.tun.timeout, 4):
            raise ConfigError("invalid TUN timeout")
        if self.tcp_relay.listen and not self.tcp_relay.remote:
            raise ConfigError("missing TCP relay remote address")
        if self.udp_relay.listen and not self.udp_relay.remote:
            raise ConfigError("missing UDP relay remote address")
        if _bad_timeout(self.tcp_relay.timeout, 4):
            raise ConfigError("invalid TCP relay timeout")
        if _bad_timeout(self.udp_relay.timeout, 4):
            raise ConfigError("invalid UDP relay timeout")
        for relay in (*self.tcp_relays, *self.udp_relays):
            relay.check()
        if _bad_timeout(self.tcp_tproxy.timeout, 4):
            raise ConfigError("invalid TCP TProxy timeout")
        if _bad_timeout(self.udp_tproxy.timeout, 4):
            raise ConfigError("invalid UDP TProxy timeout")
        if _bad_timeout(self.tcp_redirect.timeout, 4):
            raise ConfigError("invalid TCP Redirect timeout")
        if not self.server:
            raise ConfigError("missing server address")
        try:
            up, down = self.speed()
        except ConfigError:
            raise ConfigError("invalid speed") from None
        if up < MIN_SPEED_BPS or down < MIN_SPEED_BPS:
            raise ConfigError("invalid speed")
        if _bad_window(self.recv_window_conn) or _bad_window(self.recv_window):
            raise ConfigError("invalid receive window size")
        if self.tcp_relay.listen:
            log.warning("'relay_tcp' is deprecated, consider using 'relay_tcps' instead")
        if self.udp_relay.listen:
            log.warning("'relay_udp' is deprecated, consider using 'relay_udps' instead")

    def fill(self) -> None:
        """Replace unset values with their defaults."""
        if not self.alpn:
            self.alpn = DEFAULT_ALPN
        if self.recv_window_conn == 0:
            self.recv_window_conn = DEFAULT_STREAM_RECEIVE_WINDOW
        if self.recv_window == 0:
            self.recv_window = DEFAULT_CONNECTION_RECEIVE_WINDOW
        if not self.mmdb:
            self.mmdb = DEFAULT_MMDB_FILENAME
        if self.idle_timeout == 0:
            self.idle_timeout = DEFAULT_CLIENT_IDLE_TIMEOUT_SEC
        if self.hop_interval == 0:
            self.hop_interval = DEFAULT_CLIENT_HOP_INTERVAL_SEC


def _load_json(data: str | bytes) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(str(exc)) from exc


def parse_server_config(data: str | bytes) -> ServerConfig:
    """Parse and validate a server configuration document."""
    config = ServerConfig._from_fields(_Fields(_load_json(data), "config"))
    config.check()
    return config


def parse_client_config(data: str | bytes) -> ClientConfig:
    """Parse and validate a client configuration document."""
    config = ClientConfig._from_fields(_Fields(_load_json(data), "config"))
    config.check()
    return config