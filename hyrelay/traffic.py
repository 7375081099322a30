"""Per-user traffic and connection counters in Prometheus text format."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace

UPLINK_METRIC = "hysteria_traffic_uplink_bytes_total"
DOWNLINK_METRIC = "hysteria_traffic_downlink_bytes_total"
CONN_METRIC = "hysteria_active_conn"

# Families in the order a registry exposes them: sorted by name.
_FAMILIES = (
    (CONN_METRIC, "gauge", "conn"),
    (DOWNLINK_METRIC, "counter", "down"),
    (UPLINK_METRIC, "counter", "up"),
)


@dataclass
class _Counters:
    up: float = 0.0
    down: float = 0.0
    conn: float = 0.0


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_value(value: float) -> str:
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


class TrafficCounter:
    """Counts uplink and downlink bytes and live connections for each user."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, _Counters] = {}

    def _get(self, auth: str) -> _Counters:
        counters = self._counters.get(auth)
        if counters is None:
            counters = self._counters[auth] = _Counters()
        return counters

    def rx(self, auth: str, n: int) -> None:
        """Record ``n`` bytes sent down to the client."""
        with self._lock:
            self._get(auth).down += n

    def tx(self, auth: str, n: int) -> None:
        """Record ``n`` bytes sent up by the client."""
        with self._lock:
            self._get(auth).up += n

    def inc_conn(self, auth: str) -> None:
        with self._lock:
            self._get(auth).conn += 1

    def dec_conn(self, auth: str) -> None:
        with self._lock:
            self._get(auth).conn -= 1

    def render(self) -> str:
        """Return all counters in the Prometheus text exposition format."""
        with self._lock:
            snapshot = sorted((auth, replace(c)) for auth, c in self._counters.items())
        if not snapshot:
            return ""
        lines = []
        for name, kind, attr in _FAMILIES:
            lines.append(f"# TYPE {name} {kind}")
            for auth, counters in snapshot:
                value = _format_value(float(getattr(counters, attr)))
                lines.append(f'{name}{{auth="{_escape_label(auth)}"}} {value}')
        return "\n".join(lines) + "\n"