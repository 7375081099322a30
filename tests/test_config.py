import json
import logging

import pytest

from hyrelay.config import (
    DEFAULT_ALPN,
    DEFAULT_CONNECTION_RECEIVE_WINDOW,
    DEFAULT_MAX_INCOMING_STREAMS,
    DEFAULT_MMDB_FILENAME,
    DEFAULT_STREAM_RECEIVE_WINDOW,
    ClientConfig,
    ConfigError,
    Relay,
    ServerConfig,
    parse_client_config,
    parse_server_config,
    string_to_bps,
)


@pytest.mark.parametrize(
    "s, want",
    [
        ("8 bps", 1),
        ("3   bps", 0),
        ("9991Bps", 9991),
        ("10 KBps", 10240),
        ("10 Kbps", 1280),
        ("10 MBps", 10485760),
        ("10 Mbps", 1310720),
        ("10 GBps", 10737418240),
        ("10 Gbps", 1342177280),
        ("10 TBps", 10995116277760),
        ("10 Tbps", 1374389534720),
        ("6699E Kbps", 0),
        ("400 Bsp", 0),
        ("9 GBbps", 0),
        ("Mbps", 0),
        ("", 0),
    ],
)
def test_string_to_bps(s, want):
    assert string_to_bps(s) == want


def _server_doc(**extra):
    doc = {"listen": ":443", "cert": "cert.pem", "key": "key.pem"}
    doc.update(extra)
    return json.dumps(doc)


def _client_doc(**extra):
    doc = {
        "server": "example.com:443",
        "up_mbps": 10,
        "down_mbps": 50,
        "socks5": {"listen": "127.0.0.1:1080"},
    }
    doc.update(extra)
    return json.dumps(doc)


def test_parse_server_config_minimal():
    config = parse_server_config(_server_doc())
    assert config.listen == ":443"
    assert config.cert_file == "cert.pem"
    assert config.key_file == "key.pem"


def test_server_fill_defaults():
    config = parse_server_config(_server_doc())
    config.fill()
    assert config.alpn == DEFAULT_ALPN
    assert config.recv_window_conn == DEFAULT_STREAM_RECEIVE_WINDOW
    assert config.recv_window_client == DEFAULT_CONNECTION_RECEIVE_WINDOW
    assert config.max_conn_client == DEFAULT_MAX_INCOMING_STREAMS
    assert config.mmdb == DEFAULT_MMDB_FILENAME


def test_server_fill_keeps_set_values():
    config = parse_server_config(_server_doc(alpn="h3", max_conn_client=7, mmdb="x.mmdb"))
    config.fill()
    assert (config.alpn, config.max_conn_client, config.mmdb) == ("h3", 7, "x.mmdb")


def test_server_missing_listen():
    with pytest.raises(ConfigError, match="missing listen address"):
        parse_server_config(json.dumps({"cert": "c", "key": "k"}))


def test_server_needs_acme_or_files():
    with pytest.raises(ConfigError, match="need either ACME info or cert/key files"):
        parse_server_config(json.dumps({"listen": ":443", "cert": "c"}))


def test_server_acme_and_files_exclusive():
    with pytest.raises(ConfigError, match="mutually exclusive"):
        parse_server_config(_server_doc(acme={"domains": ["example.com"]}))


def test_server_acme_only_is_valid():
    config = parse_server_config(
        json.dumps({"listen": ":443", "acme": {"domains": ["example.com"], "email": "a@example.com"}})
    )
    assert config.acme.domains == ["example.com"]
    assert config.acme.email == "a@example.com"


def test_server_speed_from_string_and_mbps():
    config = ServerConfig(up="10 Mbps", down_mbps=1)
    assert config.speed() == (1310720, 125000)


def test_server_speed_invalid_format():
    with pytest.raises(ConfigError, match="invalid speed format"):
        ServerConfig(down="fast").speed()


def test_server_check_invalid_speed():
    with pytest.raises(ConfigError, match="invalid speed"):
        parse_server_config(_server_doc(up="8 bps"))


def test_server_zero_speed_allowed():
    config = parse_server_config(_server_doc())
    assert config.speed() == (0, 0)


def test_server_receive_window_too_small():
    with pytest.raises(ConfigError, match="invalid receive window size"):
        parse_server_config(_server_doc(recv_window_conn=1000))


def test_server_negative_max_conn():
    with pytest.raises(ConfigError, match="invalid max connections per client"):
        parse_server_config(_server_doc(max_conn_client=-1))


def test_server_auth_config_raw_json():
    config = parse_server_config(_server_doc(auth={"mode": "password", "config": ["a", "b"]}))
    assert config.auth.mode == "password"
    assert json.loads(config.auth.config) == ["a", "b"]


def test_server_auth_config_absent():
    config = parse_server_config(_server_doc())
    assert config.auth.config is None


def test_parse_client_config_minimal():
    config = parse_client_config(_client_doc())
    assert config.server == "example.com:443"
    assert config.socks5.listen == "127.0.0.1:1080"
    assert config.speed() == (10 * 125000, 50 * 125000)


def test_client_fill_defaults():
    config = parse_client_config(_client_doc())
    config.fill()
    assert config.alpn == DEFAULT_ALPN
    assert config.recv_window_conn == DEFAULT_STREAM_RECEIVE_WINDOW
    assert config.recv_window == DEFAULT_CONNECTION_RECEIVE_WINDOW
    assert config.mmdb == DEFAULT_MMDB_FILENAME
    assert config.idle_timeout == 20
    assert config.hop_interval == 10


def test_client_requires_a_mode():
    doc = json.dumps({"server": "example.com:443", "up_mbps": 10, "down_mbps": 10})
    with pytest.raises(ConfigError, match="please enable at least one mode"):
        parse_client_config(doc)


@pytest.mark.parametrize(
    "extra, message",
    [
        ({"handshake_timeout": 1}, "invalid handshake timeout"),
        ({"idle_timeout": 3}, "invalid idle timeout"),
        ({"hop_interval": 7}, "invalid hop interval"),
        ({"socks5": {"listen": ":1080", "timeout": 2}}, "invalid SOCKS5 timeout"),
        ({"http": {"timeout": 2}}, "invalid HTTP timeout"),
        ({"tun": {"timeout": 2}}, "invalid TUN timeout"),
        ({"relay_tcp": {"listen": ":1"}}, "missing TCP relay remote address"),
        ({"relay_udp": {"listen": ":1"}}, "missing UDP relay remote address"),
        ({"relay_tcp": {"timeout": 1}}, "invalid TCP relay timeout"),
        ({"relay_udp": {"timeout": 1}}, "invalid UDP relay timeout"),
        ({"relay_tcps": [{"listen": ":1"}]}, "missing relay remote address"),
        ({"relay_udps": [{"remote": "x:1"}]}, "missing relay listen address"),
        ({"tproxy_tcp": {"timeout": 3}}, "invalid TCP TProxy timeout"),
        ({"tproxy_udp": {"timeout": 3}}, "invalid UDP TProxy timeout"),
        ({"redirect_tcp": {"timeout": 3}}, "invalid TCP Redirect timeout"),
        ({"server": ""}, "missing server address"),
        ({"up_mbps": 0}, "invalid speed"),
        ({"down": "1 Kbps"}, "invalid speed"),
        ({"recv_window": 100}, "invalid receive window size"),
    ],
)
def test_client_check_errors(extra, message):
    with pytest.raises(ConfigError, match=message):
        parse_client_config(_client_doc(**extra))


def test_client_relays_parsed():
    config = parse_client_config(
        _client_doc(relay_tcps=[{"listen": ":2222", "remote": "example.com:22", "timeout": 30}])
    )
    assert config.tcp_relays == [Relay(listen=":2222", remote="example.com:22", timeout=30)]


def test_client_deprecated_relay_warns(caplog):
    with caplog.at_level(logging.WARNING):
        parse_client_config(_client_doc(relay_tcp={"listen": ":1", "remote": "x:1"}))
    assert any("relay_tcp" in r.getMessage() for r in caplog.records)


def test_client_auth_base64():
    config = parse_client_config(_client_doc(auth="aGVsbG8="))
    assert config.auth == b"hello"


def test_client_auth_invalid_base64():
    with pytest.raises(ConfigError):
        parse_client_config(_client_doc(auth="not base64!"))


def test_client_retry_interval_optional():
    assert parse_client_config(_client_doc()).retry_interval is None
    assert parse_client_config(_client_doc(retry_interval=0)).retry_interval == 0


def test_wrong_type_rejected():
    with pytest.raises(ConfigError):
        parse_client_config(_client_doc(up_mbps="ten"))


def test_float_for_integer_rejected():
    with pytest.raises(ConfigError):
        parse_client_config(_client_doc(up_mbps=1.5))


def test_not_an_object_rejected():
    with pytest.raises(ConfigError):
        parse_server_config("[1, 2]")


def test_bad_json_rejected():
    with pytest.raises(ConfigError):
        parse_client_config(b"{not json")


def test_relay_check_valid_and_timeout():
    Relay(listen=":1", remote="x:1", timeout=0).check()
    with pytest.raises(ConfigError, match="invalid relay timeout"):
        Relay(listen=":1", remote="x:1", timeout=3).check()


def test_client_check_direct_instance():
    config = ClientConfig(server="example.com:443", up="1 Mbps", down="1 Mbps")
    config.http.listen = ":8080"
    config.check()
    assert config.speed() == (131072, 131072)