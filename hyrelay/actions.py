"""Routing actions chosen by access-control rules."""

from __future__ import annotations

from enum import Enum, auto


class Action(Enum):
    DIRECT = auto()
    PROXY = auto()
    BLOCK = auto()
    HIJACK = auto()


_NAMES = {
    Action.DIRECT: "Direct",
    Action.PROXY: "Proxy",
    Action.BLOCK: "Block",
}


def action_to_string(action: object, arg: str = "") -> str:
    """Describe an action for logs; hijacks include their target."""
    if action is Action.HIJACK:
        return "Hijack to " + arg
    if isinstance(action, Action):
        return _NAMES[action]
    return "Unknown"