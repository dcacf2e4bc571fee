"""Pipeline abstraction for fusion turns.

A pipeline turns one incoming conversation into an outward stream in three
steps: prepare() builds the per-turn context, run() drives the turn and
writes the stream, finalize() produces the turn's metrics. Concrete
pipelines live alongside.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable

from core.llm.types import DialogueState, TurnMetrics


@dataclass
class TurnContext:
    turn_id: str
    state: DialogueState
    # Runtime populated fields
    stop_reason: str | None = None
    next_unit_id: int = 1
    reasoning_done: bool = False
    reasoning_error: str | None = None
    reasoning_thread: threading.Thread | None = None
    finished: bool = False


class GenerationPipeline(ABC):  # pragma: no cover - interface
    @abstractmethod
    def prepare(self, *args, **kwargs) -> TurnContext:  # noqa: D401
        raise NotImplementedError

    @abstractmethod
    def run(
        self,
        ctx: TurnContext,
        reasoning_events: Iterable[Dict[str, Any]],
        stream: Any,
    ) -> None:  # noqa: D401
        raise NotImplementedError

    @abstractmethod
    def finalize(self, ctx: TurnContext) -> TurnMetrics:  # noqa: D401
        raise NotImplementedError


__all__ = [
    "TurnContext",
    "GenerationPipeline",
]
