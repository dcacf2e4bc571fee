"""Minimal in-memory metrics collector.

Purpose:
    - Counters and simple latency samples for fusion turn health.
    - Zero external deps; can be swapped by a Prometheus exporter later.

Core API (intentionally tiny):
    inc(name, labels=None, value=1)
    observe(name, value, labels=None)
    snapshot() -> dict (copy for safe reading)

Thread-safety: coarse RLock; reasoning consumer and generation loop run on
different threads and both record here.

Fusion metric names (documented for discoverability):
    - turns_total{status}
    - thoughts_extracted_total
    - delivery_calls_total{phase,status}
    - responses_generated_total
    - fallback_emitted_total{mode}
    - reasoning_stream_errors_total
    - first_response_ms                 (histogram)
    - turn_duration_ms                  (histogram)
    - env_override_total{path}
    - config_validation_errors_total{path,code}
"""
from __future__ import annotations

from threading import RLock
from time import time
from typing import Dict, Tuple, Any

_COUNTERS: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
_HIST: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], list] = {}
_LOCK = RLock()


def _norm_labels(labels: dict[str, Any] | None) -> Tuple[Tuple[str, str], ...]:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def inc(
    name: str,
    labels: dict[str, Any] | None = None,
    value: float = 1.0,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0.0) + value


def observe(
    name: str,
    value: float,
    labels: dict[str, Any] | None = None,
) -> None:
    key = (name, _norm_labels(labels))
    with _LOCK:
        _HIST.setdefault(key, []).append(value)


def _label_str(labels: Tuple[Tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def snapshot() -> dict[str, Any]:
    with _LOCK:
        counters: dict[str, float] = {}
        for (name, labels), v in _COUNTERS.items():
            counters[name + _label_str(labels)] = v
        hist = {}
        for (name, labels), vals in _HIST.items():
            if not vals:
                continue
            ordered = sorted(vals)
            hist[name + _label_str(labels)] = {
                "count": len(vals),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": ordered[len(ordered) // 2],
                "last": vals[-1],
            }
        return {
            "ts": time(),
            "counters": counters,
            "histograms": hist,
        }


def reset_for_tests() -> None:  # pragma: no cover
    with _LOCK:
        _COUNTERS.clear()
        _HIST.clear()


__all__ = [
    "inc",
    "observe",
    "snapshot",
    "reset_for_tests",
]


# ------------------- Helper wrappers -------------------

def inc_delivery_call(phase: str, status: str) -> None:
    """Count one delivery RPC attempt.

    phase: immediate | thought
    status: ok | transport-error | malformed-response
    """
    inc("delivery_calls_total", {"phase": phase, "status": status})


def inc_fallback_emitted(mode: str) -> None:
    """Count immediate-response fallbacks (mode: passthrough|silence)."""
    if mode:
        inc("fallback_emitted_total", {"mode": mode})


__all__ += ["inc_delivery_call", "inc_fallback_emitted"]
