"""Checking for a newer release."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0


@dataclass(frozen=True)
class ReleaseInfo:
    url: str = ""
    tag_name: str = ""
    created_at: str = ""
    published_at: str = ""


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"release field {key!r} is not a string")
    return value


def fetch_latest_release(url: str, timeout: float = DEFAULT_TIMEOUT) -> ReleaseInfo:
    """Fetch the latest release description from ``url``."""
    with requests.get(url, timeout=timeout) as resp:
        data = resp.json()
    if data is None:
        return ReleaseInfo()
    if not isinstance(data, dict):
        raise ValueError("release info is not an object")
    return ReleaseInfo(
        url=_text(data, "html_url"),
        tag_name=_text(data, "tag_name"),
        created_at=_text(data, "created_at"),
        published_at=_text(data, "published_at"),
    )


def check_update(app_version: str, url: str) -> ReleaseInfo | None:
    """Return the latest release if it differs from ``app_version``, else ``None``."""
    current = app_version.split("-")[0]
    try:
        info = fetch_latest_release(url)
    except (requests.RequestException, ValueError) as exc:
        log.debug("Update check failed: %s", exc)
        return None
    if info.tag_name == current:
        return None
    log.info("New version available: %s (%s)", info.tag_name, info.url)
    return info