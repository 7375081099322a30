"""A SOCKS5 server that routes requests directly or through a proxy client."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import socket
from dataclasses import dataclass
from typing import Any, Callable

from .actions import Action
from .ipmasker import _join_host_port, _split_host_port
from .relay import (
    UDP_BUFFER_SIZE,
    RelayTimeout,
    _close_session,
    _nop,
    _peer_string,
    _QueueProtocol,
    _StreamService,
    pipe_pair_with_timeout,
)

VERSION = 0x05

METHOD_NONE = 0x00
METHOD_USERNAME_PASSWORD = 0x02
METHOD_UNSUPPORTED_ALL = 0xFF

USER_PASS_VERSION = 0x01
USER_PASS_STATUS_SUCCESS = 0x00
USER_PASS_STATUS_FAILURE = 0x01

CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP = 0x03

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

REP_SUCCESS = 0x00
REP_SERVER_FAILURE = 0x01
REP_HOST_UNREACHABLE = 0x04
REP_COMMAND_NOT_SUPPORTED = 0x07


class UnsupportedCommand(Exception):
    """The client asked for a command this server does not carry out."""

    def __init__(self, message: str = "unsupported command") -> None:
        super().__init__(message)


class UserPassAuthError(PermissionError):
    """The client's username or password was rejected."""

    def __init__(self, message: str = "invalid username or password") -> None:
        super().__init__(message)


class _ProtocolError(ValueError):
    pass


def _ip_text(raw: bytes) -> str:
    if len(raw) == 4:
        return str(ipaddress.IPv4Address(raw))
    addr = ipaddress.IPv6Address(raw)
    return str(addr.ipv4_mapped) if addr.ipv4_mapped is not None else str(addr)


def _encode_address(atyp: int, host: str, port: int) -> bytes:
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid port {port}")
    if atyp == ATYP_IPV4:
        body = ipaddress.IPv4Address(host).packed
    elif atyp == ATYP_IPV6:
        body = ipaddress.IPv6Address(host.split("%")[0]).packed
    elif atyp == ATYP_DOMAIN:
        name = host.encode("utf-8", "surrogateescape")
        if len(name) > 255:
            raise ValueError("domain name too long")
        body = bytes([len(name)]) + name
    else:
        raise ValueError(f"unknown address type {atyp}")
    return bytes([atyp]) + body + port.to_bytes(2, "big")


def _decode_address(buf: bytes, offset: int) -> tuple[int, str, int, int]:
    if offset >= len(buf):
        raise ValueError("address missing")
    atyp = buf[offset]
    offset += 1
    if atyp == ATYP_IPV4:
        size = 4
    elif atyp == ATYP_IPV6:
        size = 16
    elif atyp == ATYP_DOMAIN:
        if offset >= len(buf):
            raise ValueError("domain length missing")
        size = buf[offset]
        offset += 1
    else:
        raise ValueError(f"unknown address type {atyp}")
    if offset + size + 2 > len(buf):
        raise ValueError("address truncated")
    raw = buf[offset:offset + size]
    host = raw.decode("utf-8", "surrogateescape") if atyp == ATYP_DOMAIN else _ip_text(raw)
    port = int.from_bytes(buf[offset + size:offset + size + 2], "big")
    return atyp, host, port, offset + size + 2


@dataclass(frozen=True)
class Datagram:
    """A UDP packet in the SOCKS5 relay encapsulation."""

    atyp: int
    host: str
    port: int
    data: bytes
    frag: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> Datagram:
        """Decode a packet; raises ``ValueError`` if it is malformed."""
        if len(data) < 4:
            raise ValueError("datagram too short")
        atyp, host, port, end = _decode_address(data, 3)
        return cls(atyp=atyp, host=host, port=port, data=bytes(data[end:]), frag=data[2])

    def to_bytes(self) -> bytes:
        return b"\x00\x00" + bytes([self.frag]) + _encode_address(
            self.atyp, self.host, self.port) + self.data


def encode_reply(rep: int, host: str = "0.0.0.0", port: int = 0) -> bytes:
    """Encode a reply to a request, carrying an IP address and port."""
    ip = ipaddress.ip_address(host.split("%")[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    atyp = ATYP_IPV4 if isinstance(ip, ipaddress.IPv4Address) else ATYP_IPV6
    return bytes([VERSION, rep, 0x00]) + _encode_address(atyp, str(ip), port)


def parse_address(addr: str) -> tuple[int, str, int]:
    """Split ``host:port`` into ``(atyp, host, port)``."""
    host, port_text = _split_host_port(addr)
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in {addr!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid port in {addr!r}")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return ATYP_DOMAIN, host, port
    if isinstance(ip, ipaddress.IPv4Address):
        return ATYP_IPV4, str(ip), port
    if ip.ipv4_mapped is not None:
        return ATYP_IPV4, str(ip.ipv4_mapped), port
    return ATYP_IPV6, str(ip), port


class _DirectTransport:
    """Dials and resolves with the local network stack."""

    async def dial_tcp(self, ip: str, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(ip, port)

    async def resolve_ip(self, host: str) -> str:
        infos = await asyncio.get_running_loop().getaddrinfo(host, None, type=socket.SOCK_STREAM)
        if not infos:
            raise OSError(f"no address for {host}")
        return str(infos[0][4][0])


class _RelayForwardProtocol(asyncio.DatagramProtocol):
    """Wraps replies from direct destinations and sends them to the client."""

    def __init__(self) -> None:
        self.client_transport: asyncio.DatagramTransport | None = None
        self.client_addr: Any = None

    def datagram_received(self, data: bytes, addr: Any) -> None:
        if self.client_transport is None or self.client_addr is None:
            return
        try:
            atyp, host, port = parse_address(_join_host_port(str(addr[0]), str(addr[1])))
            packet = Datagram(atyp, host, port, data).to_bytes()
        except ValueError:
            return
        with contextlib.suppress(OSError):
            self.client_transport.sendto(packet, self.client_addr)

    def error_received(self, exc: Exception) -> None:
        return None


class Socks5Server(_StreamService):
    """SOCKS5 server with CONNECT and UDP ASSOCIATE.

    Requests are routed by ``acl_engine.resolve_and_match(host, port, is_udp)``,
    which returns ``(action, arg, ip, error)``; without one everything goes
    through ``client``. ``transport`` dials direct and hijacked destinations.
    """

    def __init__(
        self,
        client: Any,
        listen: str,
        *,
        auth_func: Callable[[str, str], bool] | None = None,
        tcp_timeout: float = 0,
        acl_engine: Any = None,
        disable_udp: bool = False,
        transport: Any = None,
        tcp_request_func: Callable[[str, str, Action, str], None] | None = None,
        tcp_error_func: Callable[[str, str, BaseException | None], None] | None = None,
        udp_associate_func: Callable[[str], None] | None = None,
        udp_error_func: Callable[[str, BaseException | None], None] | None = None,
    ) -> None:
        super().__init__(listen)
        self.client = client
        self.auth_func = auth_func
        self.method = METHOD_USERNAME_PASSWORD if auth_func is not None else METHOD_NONE
        self.tcp_timeout = tcp_timeout
        self.acl_engine = acl_engine
        self.disable_udp = disable_udp
        self.transport = transport or _DirectTransport()
        self.tcp_request_func = tcp_request_func or _nop
        self.tcp_error_func = tcp_error_func or _nop
        self.udp_associate_func = udp_associate_func or _nop
        self.udp_error_func = udp_error_func or _nop

    async def listen_and_serve(self) -> None:
        """Accept SOCKS5 clients until :meth:`close` is called."""
        await self._serve()

    def close(self) -> None:
        """Stop accepting clients."""
        self._stop()

    async def _negotiate(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        version, count = await reader.readexactly(2)
        if version != VERSION:
            raise _ProtocolError("unsupported SOCKS version")
        methods = await reader.readexactly(count)
        if self.method not in methods:
            writer.write(bytes([VERSION, METHOD_UNSUPPORTED_ALL]))
            await writer.drain()
            raise _ProtocolError("no acceptable authentication method")
        writer.write(bytes([VERSION, self.method]))
        await writer.drain()
        if self.method != METHOD_USERNAME_PASSWORD or self.auth_func is None:
            return
        version, ulen = await reader.readexactly(2)
        if version != USER_PASS_VERSION:
            raise _ProtocolError("unsupported username/password version")
        uname = await reader.readexactly(ulen)
        (plen,) = await reader.readexactly(1)
        passwd = await reader.readexactly(plen)
        accepted = self.auth_func(uname.decode("utf-8", "surrogateescape"),
                                  passwd.decode("utf-8", "surrogateescape"))
        status = USER_PASS_STATUS_SUCCESS if accepted else USER_PASS_STATUS_FAILURE
        writer.write(bytes([USER_PASS_VERSION, status]))
        await writer.drain()
        if not accepted:
            raise UserPassAuthError()

    async def _read_request(self, reader: asyncio.StreamReader) -> tuple[int, str, int]:
        version, cmd, _, atyp = await reader.readexactly(4)
        if version != VERSION:
            raise _ProtocolError("unsupported SOCKS version")
        if atyp == ATYP_IPV4:
            host = _ip_text(await reader.readexactly(4))
        elif atyp == ATYP_IPV6:
            host = _ip_text(await reader.readexactly(16))
        elif atyp == ATYP_DOMAIN:
            (size,) = await reader.readexactly(1)
            host = (await reader.readexactly(size)).decode("utf-8", "surrogateescape")
        else:
            raise _ProtocolError(f"unknown address type {atyp}")
        port = int.from_bytes(await reader.readexactly(2), "big")
        return cmd, host, port

    async def _handshake(self, reader: asyncio.StreamReader,
                         writer: asyncio.StreamWriter) -> tuple[int, str, int]:
        await self._negotiate(reader, writer)
        return await self._read_request(reader)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            try:
                cmd, host, port = await asyncio.wait_for(
                    self._handshake(reader, writer), self.tcp_timeout or None)
            except (asyncio.TimeoutError, OSError, EOFError, ValueError):
                return
            with contextlib.suppress(UnsupportedCommand, OSError):
                await self._dispatch(reader, writer, cmd, host, port)
        finally:
            writer.close()

    async def _dispatch(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                        cmd: int, host: str, port: int) -> None:
        if cmd == CMD_CONNECT:
            await self._handle_tcp(reader, writer, host, port)
        elif cmd == CMD_UDP and not self.disable_udp:
            await self._handle_udp(reader, writer)
        else:
            await _send_reply(writer, REP_COMMAND_NOT_SUPPORTED)
            raise UnsupportedCommand()

    def _match(self, host: str, port: int, udp: bool) -> tuple[Action, str, Any, Any]:
        if self.acl_engine is None:
            return Action.PROXY, "", None, None
        return self.acl_engine.resolve_and_match(host, port, udp)

    async def _dial(self, action: Action, arg: str, ip: Any, res_err: Any,
                    addr: str, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        if action is Action.DIRECT:
            if res_err is not None:
                raise res_err
            return await self.transport.dial_tcp(str(ip), port)
        if action is Action.PROXY:
            return await self.client.dial_tcp(addr)
        if action is Action.BLOCK:
            raise PermissionError("blocked in ACL")
        hijack_ip = await self.transport.resolve_ip(arg)
        return await self.transport.dial_tcp(str(hijack_ip), port)

    async def _handle_tcp(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                          host: str, port: int) -> None:
        addr = _join_host_port(host, str(port))
        action, arg, ip, res_err = self._match(host, port, False)
        peer = _peer_string(writer)
        self.tcp_request_func(peer, addr, action, arg)
        close_err: BaseException | None = None
        try:
            if not isinstance(action, Action):
                await _send_reply(writer, REP_SERVER_FAILURE)
                close_err = ValueError(f"unknown action {action}")
                return
            try:
                remote_reader, remote_writer = await self._dial(action, arg, ip, res_err, addr, port)
            except Exception as exc:
                await _send_reply(writer, REP_HOST_UNREACHABLE)
                close_err = exc
                return
            try:
                await _send_reply(writer, REP_SUCCESS)
                await pipe_pair_with_timeout(reader, writer, remote_reader, remote_writer,
                                             self.tcp_timeout)
            except (OSError, RelayTimeout) as exc:
                close_err = exc
            finally:
                remote_writer.close()
        finally:
            self.tcp_error_func(peer, addr, close_err)

    async def _handle_udp(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = _peer_string(writer)
        self.udp_associate_func(peer)
        close_err: BaseException | None = None
        loop = asyncio.get_running_loop()
        client_transport = relay_transport = session = server_task = None
        relay_proto: _RelayForwardProtocol | None = None
        try:
            try:
                client_transport, client_proto = await loop.create_datagram_endpoint(
                    _QueueProtocol, local_addr=(self.listen_host or "0.0.0.0", 0))
                if self.acl_engine is not None:
                    relay_transport, relay_proto = await loop.create_datagram_endpoint(
                        _RelayForwardProtocol, local_addr=("0.0.0.0", 0))
                session = await self.client.dial_udp()
            except Exception as exc:
                await _send_reply(writer, REP_SERVER_FAILURE)
                close_err = exc
                return
            local_ip = writer.get_extra_info("sockname")[0]
            udp_port = client_transport.get_extra_info("sockname")[1]
            try:
                reply = encode_reply(REP_SUCCESS, str(local_ip), udp_port)
            except ValueError as exc:
                await _send_reply(writer, REP_SERVER_FAILURE)
                close_err = exc
                return
            writer.write(reply)
            with contextlib.suppress(OSError):
                await writer.drain()
            server_task = asyncio.create_task(self._udp_server(
                client_proto.queue, client_transport, relay_transport, relay_proto, session))
            try:
                while await reader.read(1024):
                    pass
            except OSError as exc:
                close_err = exc
        finally:
            if server_task is not None:
                server_task.cancel()
                await asyncio.gather(server_task, return_exceptions=True)
            if session is not None:
                await _close_session(session)
            for transport in (relay_transport, client_transport):
                if transport is not None:
                    transport.close()
            self.udp_error_func(peer, close_err)

    async def _udp_server(self, queue: asyncio.Queue, client_transport: asyncio.DatagramTransport,
                          relay_transport: asyncio.DatagramTransport | None,
                          relay_proto: _RelayForwardProtocol | None, session: Any) -> None:
        client_addr: Any = None
        remote_task: asyncio.Task[None] | None = None
        try:
            while (item := await queue.get()) is not None:
                data, src = item
                try:
                    packet = Datagram.from_bytes(data)
                except ValueError:
                    continue
                if packet.frag != 0:
                    continue
                if client_addr is None:
                    client_addr = src
                    remote_task = asyncio.create_task(
                        self._udp_remote_to_local(session, client_transport, client_addr))
                    if relay_proto is not None:
                        relay_proto.client_transport = client_transport
                        relay_proto.client_addr = client_addr
                elif tuple(src[:2]) != tuple(client_addr[:2]):
                    continue
                action, arg, ip, res_err = Action.PROXY, "", None, None
                if self.acl_engine is not None and relay_transport is not None:
                    action, arg, ip, res_err = self.acl_engine.resolve_and_match(
                        packet.host, packet.port, True)
                if action is Action.DIRECT:
                    if res_err is not None:
                        return
                    with contextlib.suppress(OSError):
                        relay_transport.sendto(packet.data, (str(ip), packet.port))
                elif action is Action.PROXY:
                    with contextlib.suppress(Exception):
                        await session.write_to(packet.data,
                                               _join_host_port(packet.host, str(packet.port)))
                elif action is Action.HIJACK and relay_transport is not None:
                    try:
                        hijack_ip = await self.transport.resolve_ip(arg)
                    except Exception:
                        continue
                    with contextlib.suppress(OSError):
                        relay_transport.sendto(packet.data, (str(hijack_ip), packet.port))
        finally:
            if remote_task is not None:
                remote_task.cancel()

    async def _udp_remote_to_local(self, session: Any, client_transport: asyncio.DatagramTransport,
                                   client_addr: Any) -> None:
        while True:
            try:
                data, source = await session.read_from()
            except Exception:
                return
            try:
                atyp, host, port = parse_address(source)
                packet = Datagram(atyp, host, port, data[:UDP_BUFFER_SIZE * 16]).to_bytes()
            except ValueError:
                continue
            with contextlib.suppress(OSError):
                client_transport.sendto(packet, client_addr)


async def _send_reply(writer: asyncio.StreamWriter, rep: int) -> None:
    writer.write(encode_reply(rep))
    with contextlib.suppress(OSError):
        await writer.drain()