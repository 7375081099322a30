"""Client authentication: password lists, external commands and HTTP endpoints."""

from __future__ import annotations

import base64
import json
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

log = logging.getLogger(__name__)

AuthFunc = Callable[[object, bytes, int, int], "tuple[bool, str]"]

INTERNAL_ERROR = "internal error"
HTTP_AUTH_TIMEOUT = 10.0


class AuthConfigError(ValueError):
    """Raised when an authentication configuration is invalid."""


@dataclass
class CommandAuthProvider:
    """Authenticates by running a command; exit status 0 means accepted."""

    cmd: str

    def auth(self, addr: object, payload: bytes, send: int, recv: int) -> tuple[bool, str]:
        """Run the command with address, payload and speeds; its output is the message."""
        args = [
            self.cmd,
            str(addr),
            bytes(payload).decode("utf-8", "surrogateescape"),
            str(send),
            str(recv),
        ]
        try:
            proc = subprocess.run(
                args, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, check=False
            )
        except (OSError, ValueError) as exc:
            log.error("Failed to execute auth command: %s", exc)
            return False, INTERNAL_ERROR
        message = proc.stdout.decode("utf-8", "replace").strip()
        return proc.returncode == 0, message


def _parse_auth_response(data: Any) -> tuple[bool, str]:
    if data is None:
        return False, ""
    if not isinstance(data, dict):
        raise ValueError("auth response is not an object")
    ok = data.get("ok")
    msg = data.get("msg")
    if ok is not None and not isinstance(ok, bool):
        raise ValueError("auth response 'ok' is not a boolean")
    if msg is not None and not isinstance(msg, str):
        raise ValueError("auth response 'msg' is not a string")
    return bool(ok), msg or ""


@dataclass
class HTTPAuthProvider:
    """Authenticates by posting a JSON request to an HTTP endpoint."""

    url: str
    timeout: float = HTTP_AUTH_TIMEOUT
    session: requests.Session = field(default_factory=requests.Session)

    def auth(self, addr: object, payload: bytes, send: int, recv: int) -> tuple[bool, str]:
        """Ask the endpoint; any failure on the way rejects with an internal error."""
        body = {
            "addr": str(addr),
            "payload": base64.b64encode(bytes(payload)).decode("ascii"),
            "send": send,
            "recv": recv,
        }
        try:
            resp = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("Failed to send auth request: %s", exc)
            return False, INTERNAL_ERROR
        with resp:
            if resp.status_code != 200:
                log.error("Invalid status code from auth server: %d", resp.status_code)
                return False, INTERNAL_ERROR
            try:
                return _parse_auth_response(json.loads(resp.content))
            except ValueError as exc:
                log.error("Failed to unmarshal auth response: %s", exc)
                return False, INTERNAL_ERROR


def _load(raw: str | bytes | None) -> Any:
    if raw is None:
        raise AuthConfigError("invalid config")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise AuthConfigError("invalid config") from exc


def _string_map(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise AuthConfigError("invalid config")
    result = {}
    for key, item in value.items():
        if item is None:
            item = ""
        if not isinstance(item, str):
            raise AuthConfigError("invalid config")
        result[key] = item
    return result


def _string_list(value: Any) -> list[str] | None:
    if value is None:
        return []
    if not isinstance(value, list):
        return None
    if not all(item is None or isinstance(item, str) for item in value):
        return None
    return [item or "" for item in value]


def password_auth_func(raw: str | bytes | None) -> AuthFunc:
    """Build a checker from a list of passwords or a legacy ``{"password": ...}`` object."""
    value = _load(raw)
    passwords = _string_list(value)
    if passwords is None:
        password = _string_map(value).get("password", "")
        if not password:
            raise AuthConfigError("invalid config")
        passwords = [password]
    accepted = {p.encode("utf-8", "surrogatepass") for p in passwords}

    def check(addr: object, payload: bytes, send: int, recv: int) -> tuple[bool, str]:
        if bytes(payload) in accepted:
            return True, "Welcome"
        return False, "Wrong password"

    return check


def external_auth_func(raw: str | bytes | None) -> AuthFunc:
    """Build a checker backed by an HTTP endpoint (``http``) or a command (``cmd``)."""
    settings = _string_map(_load(raw))
    if settings.get("http"):
        return HTTPAuthProvider(url=settings["http"]).auth
    if settings.get("cmd"):
        return CommandAuthProvider(cmd=settings["cmd"]).auth
    raise AuthConfigError("invalid config")