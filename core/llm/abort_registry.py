"""Abort registry for in-flight fusion turns.

Thread-safe minimal structure mapping turn_id -> aborted flag. The
generation loop checks it once per iteration; the HTTP layer sets it on
explicit abort or client disconnect.
"""
from __future__ import annotations

from threading import RLock

_ABORTS: dict[str, bool] = {}
_LOCK = RLock()


def register(turn_id: str) -> bool:
    """Register a new turn. False when the id is already in flight."""
    with _LOCK:
        if turn_id in _ABORTS:
            return False
        _ABORTS[turn_id] = False
        return True


def abort(turn_id: str) -> bool:  # noqa: D401
    with _LOCK:
        if turn_id in _ABORTS:
            _ABORTS[turn_id] = True
            return True
        return False


def is_aborted(turn_id: str) -> bool:  # noqa: D401
    with _LOCK:
        return _ABORTS.get(turn_id, False)


def clear(turn_id: str) -> None:  # noqa: D401
    with _LOCK:
        _ABORTS.pop(turn_id, None)


__all__ = [
    "register",
    "abort",
    "is_aborted",
    "clear",
]
