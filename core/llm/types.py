"""Fusion shared types: dialogue state, outward fragments, turn metrics."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True, slots=True)
class Fragment:
    """Smallest outward unit. Consumers concatenate ``delta`` in order."""

    id: str
    delta: str
    type: str = "text-delta"

    def to_event(self) -> Dict[str, str]:
        return {"type": self.type, "id": self.id, "delta": self.delta}


@dataclass(slots=True)
class TurnMetrics:
    turn_id: str
    thoughts_extracted: int
    thoughts_processed: int
    responses_generated: int
    processing_time_ms: int
    first_response_time_ms: int | None
    thoughts: List[str] = field(default_factory=list)
    full_text: str = ""
    stop_reason: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "thoughts_extracted": self.thoughts_extracted,
            "thoughts_processed": self.thoughts_processed,
            "responses_generated": self.responses_generated,
            "processing_time_ms": self.processing_time_ms,
            "first_response_time_ms": self.first_response_time_ms,
            "thoughts": list(self.thoughts),
            "full_text": self.full_text,
            "stop_reason": self.stop_reason,
        }


class DialogueState:
    """Per-turn dialogue state shared by the reasoning consumer and the
    generation loop.

    ``thoughts`` and ``responses`` are append-only. Every append and every
    length read goes through one condition variable, so the generation loop
    never observes a torn length and can block on new thoughts instead of
    polling.
    """

    def __init__(self, user_input: str = "") -> None:
        self._cond = threading.Condition()
        self._thoughts: List[str] = []
        self._responses: List[str] = []
        self.user_input = user_input
        self.start_time = time.monotonic()
        self.first_response_time: float | None = None
        self.thoughts_processed = 0

    # ---------------- appends -----------------
    def add_thought(self, thought: str) -> int:
        """Append a thought; return its 0-based index."""
        with self._cond:
            self._thoughts.append(thought)
            self._cond.notify_all()
            return len(self._thoughts) - 1

    def add_response(self, response: str) -> int:
        with self._cond:
            self._responses.append(response)
            return len(self._responses) - 1

    def mark_first_response(self) -> bool:
        """Record time-to-first-response once; True if this call set it."""
        with self._cond:
            if self.first_response_time is not None:
                return False
            self.first_response_time = time.monotonic()
            return True

    # ---------------- reads -----------------
    @property
    def thoughts(self) -> List[str]:
        with self._cond:
            return list(self._thoughts)

    @property
    def responses(self) -> List[str]:
        with self._cond:
            return list(self._responses)

    def thought_count(self) -> int:
        with self._cond:
            return len(self._thoughts)

    def response_count(self) -> int:
        with self._cond:
            return len(self._responses)

    def snapshot(self) -> tuple[List[str], List[str]]:
        """Consistent (thoughts, responses) copy for prompt building."""
        with self._cond:
            return list(self._thoughts), list(self._responses)

    def full_text(self) -> str:
        with self._cond:
            return " ".join(self._responses)

    def wait_for_thoughts(self, after: int, timeout: float) -> int:
        """Block until more than ``after`` thoughts exist or timeout.

        Returns the thought count observed on wake-up.
        """
        with self._cond:
            self._cond.wait_for(
                lambda: len(self._thoughts) > after, timeout=timeout
            )
            return len(self._thoughts)

    # ---------------- timings -----------------
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)

    def first_response_ms(self) -> int | None:
        if self.first_response_time is None:
            return None
        return int((self.first_response_time - self.start_time) * 1000)


__all__ = ["Fragment", "TurnMetrics", "DialogueState"]
