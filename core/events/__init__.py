"""Fusion turn lifecycle events + any-subscriber bridge.

Events are dataclasses dispatched through `core.eventbus` by class name.
`on(handler)` registers a handler(name, payload) receiving every event;
the built-in metrics collector is always attached.

Lifecycle order for one turn:
    TurnStarted -> ImmediateResponseCompleted -> (ThoughtExtracted |
    ResponseGenerated)* -> GenerationLoopExited -> TurnMetricsReported
TurnFailed / ReasoningConsumptionFailed may occur at any point after
TurnStarted.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from time import time
from typing import Any, Callable, Dict, List, Protocol

from core import metrics as _metrics
from core.eventbus import emit as _emit_bus

EventHandler = Callable[[str, Dict[str, Any]], None]


class SupportsEvent(Protocol):  # pragma: no cover
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        ...


@dataclass(slots=True)
class BaseEvent:
    def to_event(self) -> Dict[str, Any]:  # noqa: D401
        data = asdict(self)
        data["ts"] = data.get("ts") or time()
        return data


@dataclass(slots=True)
class TurnStarted(BaseEvent):
    turn_id: str
    user_input_chars: int


@dataclass(slots=True)
class ImmediateResponseCompleted(BaseEvent):
    """First outward text decided.

    status: ok | fallback | silenced
    latency_ms: time from turn start to the decision.
    """
    turn_id: str
    status: str
    latency_ms: int
    error_type: str | None = None


@dataclass(slots=True)
class ThoughtExtracted(BaseEvent):
    turn_id: str
    seq: int  # 0-based position in the thought log
    chars: int


@dataclass(slots=True)
class ResponseGenerated(BaseEvent):
    turn_id: str
    seq: int  # 0-based position in the response log
    thought_seq: int
    chars: int


@dataclass(slots=True)
class GenerationLoopExited(BaseEvent):
    """Generation loop finished.

    stop_reason: idle | max_responses | char_budget | aborted | error
    """
    turn_id: str
    stop_reason: str
    responses: int
    thoughts: int


@dataclass(slots=True)
class TurnMetricsReported(BaseEvent):
    turn_id: str
    thoughts_extracted: int
    thoughts_processed: int
    responses_generated: int
    processing_time_ms: int
    first_response_time_ms: int | None
    stop_reason: str | None = None


@dataclass(slots=True)
class TurnFailed(BaseEvent):
    turn_id: str
    error_type: str
    message: str | None = None


@dataclass(slots=True)
class ReasoningConsumptionFailed(BaseEvent):
    turn_id: str
    error_type: str
    message: str | None = None


_ANY_SUBS: List[EventHandler] = []


def _metrics_collector(
    name: str, payload: Dict[str, Any]
) -> None:  # noqa: D401
    if name == "TurnStarted":
        _metrics.inc("turns_total", {"status": "started"})
    elif name == "ThoughtExtracted":
        _metrics.inc("thoughts_extracted_total")
    elif name == "ResponseGenerated":
        _metrics.inc("responses_generated_total")
    elif name == "ImmediateResponseCompleted":
        _metrics.observe(
            "first_response_ms",
            payload.get("latency_ms", 0),
            {"status": payload.get("status", "unknown")},
        )
    elif name == "GenerationLoopExited":
        _metrics.inc(
            "generation_loop_exit_total",
            {"reason": payload.get("stop_reason", "unknown")},
        )
    elif name == "TurnMetricsReported":
        if payload.get("stop_reason") != "error":
            _metrics.inc("turns_total", {"status": "completed"})
        _metrics.observe(
            "turn_duration_ms", payload.get("processing_time_ms", 0)
        )
    elif name == "TurnFailed":
        _metrics.inc("turns_total", {"status": "failed"})
    elif name == "ReasoningConsumptionFailed":
        _metrics.inc("reasoning_stream_errors_total")


_ANY_SUBS.append(_metrics_collector)


def emit(ev: BaseEvent | SupportsEvent) -> None:
    name = ev.__class__.__name__
    payload = ev.to_event()
    _emit_bus(name, payload)
    for h in list(_ANY_SUBS):  # copy for isolation
        try:
            h(name, dict(payload))
        except Exception:  # noqa: BLE001
            _metrics.inc("handler_exceptions_total", {"event": name})


def on(handler: EventHandler) -> None:
    _ANY_SUBS.append(handler)


def subscribe(handler: EventHandler):
    on(handler)

    def _unsub() -> None:  # noqa: D401
        try:
            _ANY_SUBS.remove(handler)
        except ValueError:
            pass
    return _unsub


def reset_listeners_for_tests() -> None:  # pragma: no cover
    _ANY_SUBS.clear()
    _ANY_SUBS.append(_metrics_collector)


__all__ = [
    "emit",
    "on",
    "subscribe",
    "BaseEvent",
    "TurnStarted",
    "ImmediateResponseCompleted",
    "ThoughtExtracted",
    "ResponseGenerated",
    "GenerationLoopExited",
    "TurnMetricsReported",
    "TurnFailed",
    "ReasoningConsumptionFailed",
    "reset_listeners_for_tests",
]
