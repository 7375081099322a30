"""Masking of IP addresses in log output."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

_V4_MAPPED_PREFIX = 0xFFFF


def _prefix_bits(length: int, width: int) -> int:
    return ((1 << length) - 1) << (width - length)


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ValueError("missing ']' in address")
        if end + 1 == len(addr) or addr[end + 1] != ":":
            raise ValueError("missing port in address")
        host, port = addr[1:end], addr[end + 2 :]
        if "[" in addr[1:] or "]" in port:
            raise ValueError("unexpected bracket in address")
        return host, port
    colon = addr.rfind(":")
    if colon < 0:
        raise ValueError("missing port in address")
    host, port = addr[:colon], addr[colon + 1 :]
    if ":" in host:
        raise ValueError("too many colons in address")
    if "[" in addr or "]" in addr:
        raise ValueError("unexpected bracket in address")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if "%" in host:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _format_16(value: int) -> str:
    if value >> 32 == _V4_MAPPED_PREFIX:
        return str(ipaddress.IPv4Address(value & 0xFFFFFFFF))
    return str(ipaddress.IPv6Address(value))


@dataclass
class IPMasker:
    """Masks addresses to a CIDR prefix length; ``None`` leaves that family alone."""

    ipv4_mask: int | None = None
    ipv6_mask: int | None = None

    def __post_init__(self) -> None:
        if self.ipv4_mask is not None and not 0 <= self.ipv4_mask <= 32:
            raise ValueError(f"invalid IPv4 prefix length: {self.ipv4_mask}")
        if self.ipv6_mask is not None and not 0 <= self.ipv6_mask <= 128:
            raise ValueError(f"invalid IPv6 prefix length: {self.ipv6_mask}")

    def mask(self, addr: str) -> str:
        """Mask ``addr``, which is either ``host:port`` or a bare host."""
        if self.ipv4_mask is None and self.ipv6_mask is None:
            return addr
        try:
            host, port = _split_host_port(addr)
        except ValueError:
            host, port = addr, ""
        ip = _parse_ip(host)
        if ip is None:
            return addr
        v4 = ip if isinstance(ip, ipaddress.IPv4Address) else ip.ipv4_mapped
        if v4 is not None and self.ipv4_mask is not None:
            host = str(ipaddress.IPv4Address(int(v4) & _prefix_bits(self.ipv4_mask, 32)))
        elif self.ipv6_mask is not None:
            if isinstance(ip, ipaddress.IPv4Address):
                value = (_V4_MAPPED_PREFIX << 32) | int(ip)
            else:
                value = int(ip)
            host = _format_16(value & _prefix_bits(self.ipv6_mask, 128))
        if port:
            return _join_host_port(host, port)
        return host