"""TCP and UDP port relays that forward local traffic through a proxy client."""

from __future__ import annotations

import abc
import asyncio
import contextlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .ipmasker import _join_host_port, _split_host_port

log = logging.getLogger(__name__)

UDP_BUFFER_SIZE = 4096
DEFAULT_UDP_TIMEOUT = 60.0
_COPY_BUFFER_SIZE = 32 * 1024

ConnFunc = Callable[[str], None]
ErrorFunc = Callable[[str, "BaseException | None"], None]


class RelayTimeout(TimeoutError):
    """Raised when a relayed connection has been idle for too long."""

    def __init__(self, message: str = "inactivity timeout") -> None:
        super().__init__(message)


def _nop(*_args: Any) -> None:
    return None


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


async def _close_session(session: Any) -> None:
    with contextlib.suppress(Exception):
        await _maybe_await(session.close())


def _parse_listen(listen: str) -> tuple[str, int]:
    try:
        host, port = _split_host_port(listen)
    except ValueError as exc:
        raise ValueError(f"invalid listen address {listen!r}: {exc}") from exc
    try:
        number = int(port) if port else 0
    except ValueError:
        raise ValueError(f"invalid port in listen address {listen!r}") from None
    if not 0 <= number <= 65535:
        raise ValueError(f"invalid port in listen address {listen!r}")
    return host, number


def _peer_string(writer: asyncio.StreamWriter) -> str:
    peer = writer.get_extra_info("peername")
    if not peer:
        return ""
    return _join_host_port(str(peer[0]), str(peer[1]))


async def _copy(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                touch: Callable[[], None]) -> None:
    while True:
        data = await reader.read(_COPY_BUFFER_SIZE)
        if not data:
            return
        touch()
        writer.write(data)
        await writer.drain()


async def pipe_pair_with_timeout(
    a_reader: asyncio.StreamReader,
    a_writer: asyncio.StreamWriter,
    b_reader: asyncio.StreamReader,
    b_writer: asyncio.StreamWriter,
    timeout: float,
) -> None:
    """Copy both ways until one side ends.

    Returns on end of stream, raises :class:`RelayTimeout` when neither side
    has carried data for ``timeout`` seconds (0 disables the limit), and
    passes on any I/O error.
    """
    loop = asyncio.get_running_loop()
    last = loop.time()

    def touch() -> None:
        nonlocal last
        last = loop.time()

    async def watch() -> None:
        while True:
            remaining = last + timeout - loop.time()
            if remaining <= 0:
                raise RelayTimeout()
            await asyncio.sleep(remaining)

    tasks = {
        asyncio.create_task(_copy(a_reader, b_writer, touch)),
        asyncio.create_task(_copy(b_reader, a_writer, touch)),
    }
    if timeout > 0:
        tasks.add(asyncio.create_task(watch()))
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    for task in done:
        exc = task.exception()
        if exc is not None:
            raise exc


class _StreamService(abc.ABC):
    """A TCP listener whose connections are handled by ``_handle``."""

    def __init__(self, listen: str) -> None:
        self.listen_host, self.listen_port = _parse_listen(listen)
        self.started = asyncio.Event()
        self.address: tuple[str, int] | None = None
        self._server: asyncio.AbstractServer | None = None
        self._closing = False

    @abc.abstractmethod
    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one accepted connection."""

    async def _serve(self) -> None:
        server = await asyncio.start_server(self._handle, self.listen_host or None, self.listen_port)
        self._server = server
        self.address = tuple(server.sockets[0].getsockname()[:2])
        self.started.set()
        if self._closing:
            server.close()
            return
        try:
            async with server:
                await server.serve_forever()
        except asyncio.CancelledError:
            if not self._closing:
                raise

    def _stop(self) -> None:
        self._closing = True
        if self._server is not None:
            self._server.close()


class TCPRelay(_StreamService):
    """Forwards every accepted TCP connection to ``remote`` through ``client``.

    ``client.dial_tcp(addr)`` is awaited and returns a ``(reader, writer)`` pair.
    """

    def __init__(self, client: Any, listen: str, remote: str, timeout: float = 0,
                 conn_func: ConnFunc | None = None, error_func: ErrorFunc | None = None) -> None:
        super().__init__(listen)
        self.client = client
        self.remote = remote
        self.timeout = timeout
        self.conn_func = conn_func or _nop
        self.error_func = error_func or _nop

    async def listen_and_serve(self) -> None:
        """Accept connections until :meth:`close` is called."""
        await self._serve()

    def close(self) -> None:
        """Stop accepting connections."""
        self._stop()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        addr = _peer_string(writer)
        try:
            self.conn_func(addr)
            try:
                remote_reader, remote_writer = await self.client.dial_tcp(self.remote)
            except Exception as exc:
                self.error_func(addr, exc)
                return
            err: BaseException | None = None
            try:
                await pipe_pair_with_timeout(reader, writer, remote_reader, remote_writer,
                                             self.timeout)
            except (OSError, RelayTimeout) as exc:
                err = exc
            finally:
                remote_writer.close()
            self.error_func(addr, err)
        finally:
            writer.close()


class _QueueProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue[tuple[bytes, Any] | None] = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self.queue.put_nowait((data[:UDP_BUFFER_SIZE], addr))

    def error_received(self, exc: Exception) -> None:
        log.debug("UDP receive error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self.queue.put_nowait(None)


@dataclass
class _UDPEntry:
    session: Any
    deadline: float
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


class UDPRelay:
    """Forwards datagrams from each local source to ``remote`` over its own session.

    ``client.dial_udp()`` is awaited and returns a session with awaitable
    ``read_from() -> (data, addr)`` and ``write_to(data, addr)``, and ``close()``.
    Sessions idle for ``timeout`` seconds (default one minute) are closed.
    """

    def __init__(self, client: Any, listen: str, remote: str, timeout: float = 0,
                 conn_func: ConnFunc | None = None, error_func: ErrorFunc | None = None) -> None:
        self.listen_host, self.listen_port = _parse_listen(listen)
        self.client = client
        self.remote = remote
        self.timeout = timeout or DEFAULT_UDP_TIMEOUT
        self.conn_func = conn_func or _nop
        self.error_func = error_func or _nop
        self.started = asyncio.Event()
        self.address: tuple[str, int] | None = None
        self._transport: asyncio.DatagramTransport | None = None

    async def listen_and_serve(self) -> None:
        """Relay datagrams until :meth:`close` is called."""
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _QueueProtocol, local_addr=(self.listen_host or "0.0.0.0", self.listen_port)
        )
        self._transport = transport
        self.address = tuple(transport.get_extra_info("sockname")[:2])
        self.started.set()
        entries: dict[tuple[str, int], _UDPEntry] = {}
        try:
            while (item := await protocol.queue.get()) is not None:
                data, src = item
                key = (src[0], src[1])
                entry = entries.get(key)
                if entry is not None:
                    entry.deadline = loop.time() + self.timeout
                    with contextlib.suppress(Exception):
                        await entry.session.write_to(data, self.remote)
                    continue
                src_str = _join_host_port(str(src[0]), str(src[1]))
                self.conn_func(src_str)
                try:
                    session = await self.client.dial_udp()
                except Exception as exc:
                    self.error_func(src_str, exc)
                    continue
                entry = _UDPEntry(session, loop.time() + self.timeout)
                entries[key] = entry
                entry.tasks.append(asyncio.create_task(
                    self._remote_to_local(entry, transport, src)))
                entry.tasks.append(asyncio.create_task(
                    self._expire(entry, entries, key, src_str)))
                with contextlib.suppress(Exception):
                    await session.write_to(data, self.remote)
        finally:
            transport.close()
            for entry in list(entries.values()):
                for task in entry.tasks:
                    task.cancel()
                await _close_session(entry.session)

    async def _remote_to_local(self, entry: _UDPEntry, transport: asyncio.DatagramTransport,
                               src: Any) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                data, _ = await entry.session.read_from()
            except Exception:
                return
            entry.deadline = loop.time() + self.timeout
            with contextlib.suppress(OSError):
                transport.sendto(data, src)

    async def _expire(self, entry: _UDPEntry, entries: dict[tuple[str, int], _UDPEntry],
                      key: tuple[str, int], src: str) -> None:
        loop = asyncio.get_running_loop()
        while True:
            ttl = entry.deadline - loop.time()
            if ttl <= 0:
                entries.pop(key, None)
                entry.tasks[0].cancel()
                await _close_session(entry.session)
                self.error_func(src, RelayTimeout())
                return
            await asyncio.sleep(ttl)

    def close(self) -> None:
        """Stop relaying and close every session."""
        if self._transport is not None:
            self._transport.close()