"""A TLS key pair that reloads itself when its files change."""

from __future__ import annotations

import functools
import logging
import os
import ssl
import threading
from typing import Any, Callable, Sequence

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

log = logging.getLogger(__name__)

_RELOAD_EVENTS = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED})


def _server_context(cert_path: str, key_path: str, alpn: Sequence[str] | None = None) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    context.load_cert_chain(cert_path, key_path)
    if alpn:
        context.set_alpn_protocols(list(alpn))
    return context


def _normalize(path: Any) -> str:
    return os.path.abspath(os.fsdecode(path))


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, loader: KeypairLoader, paths: set[str]) -> None:
        super().__init__()
        self._loader = loader
        self._paths = paths

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELOAD_EVENTS:
            return
        touched = {_normalize(event.src_path)}
        dest = getattr(event, "dest_path", "")
        if dest:
            touched.add(_normalize(dest))
        matched = touched & self._paths
        if matched:
            self._loader._reload_after_change(sorted(matched)[0])


class KeypairLoader:
    """Holds the current server TLS context for a certificate and key file pair.

    ``load_func(cert_path, key_path)`` builds the context; by default an
    ``ssl.SSLContext`` requiring TLS 1.3 with the given ALPN protocols.
    """

    def __init__(
        self,
        cert_path: str | os.PathLike[str],
        key_path: str | os.PathLike[str],
        *,
        alpn: Sequence[str] | None = None,
        load_func: Callable[[str, str], Any] | None = None,
        watch: bool = True,
    ) -> None:
        self.cert_path = os.fspath(cert_path)
        self.key_path = os.fspath(key_path)
        self._load = load_func or functools.partial(_server_context, alpn=alpn)
        self._lock = threading.Lock()
        self._context = self._load(self.cert_path, self.key_path)
        self._observer: Any = None
        if watch:
            self._start_watching()

    def _start_watching(self) -> None:
        paths = {_normalize(self.cert_path), _normalize(self.key_path)}
        handler = _ChangeHandler(self, paths)
        observer = Observer()
        observer.daemon = True
        try:
            for directory in sorted({os.path.dirname(p) for p in paths}):
                observer.schedule(handler, directory, recursive=False)
            observer.start()
        except Exception:
            observer.stop()
            raise
        self._observer = observer

    def _reload_after_change(self, name: str) -> None:
        log.info("Keypair change detected (%s), reloading...", name)
        try:
            self.reload()
        except (OSError, ValueError) as exc:
            log.error("Failed to reload keypair: %s", exc)
        else:
            log.info("Keypair successfully reloaded")

    def reload(self) -> None:
        """Load the files again; on failure the previous context stays in use."""
        context = self._load(self.cert_path, self.key_path)
        with self._lock:
            self._context = context

    def context(self) -> Any:
        """Return the most recently loaded context."""
        with self._lock:
            return self._context

    def close(self) -> None:
        """Stop watching the files."""
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()

    def __enter__(self) -> KeypairLoader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()