"""Locations of per-user data directories."""

from __future__ import annotations

import os
import sys


def home_dir() -> str:
    """Return the user's home directory, or ``"."`` if none can be found."""
    home = os.environ.get("HOME", "")
    if not home and sys.platform == "win32":
        drive = os.environ.get("HOMEDRIVE", "")
        path = os.environ.get("HOMEPATH", "")
        home = drive + path
        if not drive or not path:
            home = os.environ.get("USERPROFILE", "")
    return home or "."


def data_dir() -> str:
    """Return the directory where certificates and ACME state are stored."""
    base = os.path.join(home_dir(), ".local", "share")
    xdg_data = os.environ.get("XDG_DATA_HOME", "")
    if xdg_data:
        base = xdg_data
    return os.path.join(base, "certmagic")