"""Central error taxonomy for fusion turns.

Every error surfaced through metrics/events carries one of these codes so
dashboards and tests can rely on a closed vocabulary.
"""
from __future__ import annotations

_ALLOWED_ERROR_TYPES = {
    # delivery.request
    "transport-error",
    "malformed-response",
    # reasoning.stream
    "reasoning-stream-broken",
    # turn
    "turn-failure",
    "aborted",
    # config
    "config-out-of-range",
    "config-invalid",
    # infra
    "event-handler-error",
}


def validate_error_type(code: str) -> str:
    assert (
        code in _ALLOWED_ERROR_TYPES
    ), f"Unknown error_type '{code}' (not in taxonomy)"
    return code


def map_exception(e: Exception, phase: str) -> str:
    """Classify an exception raised during ``phase`` into a taxonomy code.

    phase: delivery | reasoning | turn
    """
    from core.llm.exceptions import MalformedResponseError  # avoid cycle

    name = e.__class__.__name__.lower()
    if phase == "delivery":
        if isinstance(e, MalformedResponseError):
            return "malformed-response"
        return "transport-error"
    if phase == "reasoning":
        return "reasoning-stream-broken"
    if "abort" in name or "cancel" in name:
        return "aborted"
    return "turn-failure"


__all__ = ["validate_error_type", "map_exception"]
