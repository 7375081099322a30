"""Locating and downloading the GeoIP country database."""

from __future__ import annotations

import logging
import os

import requests

log = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


def download_mmdb(filename: str | os.PathLike[str], url: str) -> None:
    """Download the database at ``url`` into ``filename``."""
    with requests.get(url, stream=True) as resp, open(filename, "wb") as out:
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            out.write(chunk)


def ensure_mmdb(filename: str | os.PathLike[str], url: str) -> str:
    """Return the database path, downloading it first if it does not exist."""
    path = os.fspath(filename)
    try:
        os.stat(path)
    except FileNotFoundError:
        log.info("GeoLite2 database not found, downloading...")
        download_mmdb(path, url)
        log.info("GeoLite2 database downloaded: %s", path)
    return path