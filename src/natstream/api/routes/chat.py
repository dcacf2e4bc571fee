"""/chat route: one fusion turn streamed as SSE.

Frames: ``meta`` (turn id) first, one ``delta`` per fragment, then ``end``
or ``error``. A client that goes away mid-stream aborts the turn.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, Iterator, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from core import metrics
from core.config import ConfigError, get_config
from core.errors import map_exception
from core.llm import abort_registry
from core.llm.exceptions import TurnFailure
from core.llm.pipeline.fusion import FusionController
from core.llm.reasoning import OpenAIReasoningSource
from natstream.api.sse import json_event

log = logging.getLogger("natstream.api")

router = APIRouter()

ReasoningFactory = Callable[[List[Dict[str, Any]]], Iterable[Dict[str, Any]]]


class ChatMessage(BaseModel):  # noqa: D401
    role: str = Field(pattern=r"^(system|user|assistant)$")
    content: str | List[Dict[str, Any]]


class ChatRequest(BaseModel):  # noqa: D401
    messages: List[ChatMessage] = Field(min_length=1)
    turn_id: str | None = None


# ---------------- wiring -----------------
_LOCK = threading.Lock()
_controller: FusionController | None = None
_reasoning_factory: ReasoningFactory | None = None


def default_reasoning(
    messages: List[Dict[str, Any]],
) -> Iterator[Dict[str, Any]]:
    """Reasoning events from the configured endpoint (lazy: pulled by the
    turn's prefetch thread, not the request thread)."""
    source = OpenAIReasoningSource(get_config().fusion.reasoning)
    try:
        yield from source.stream(messages)
    finally:
        source.close()


def configure(
    controller: FusionController | None = None,
    reasoning_factory: ReasoningFactory | None = None,
) -> None:
    """Install a controller and/or reasoning factory (app wiring, tests)."""
    global _controller, _reasoning_factory
    with _LOCK:
        if controller is not None:
            _controller = controller
        if reasoning_factory is not None:
            _reasoning_factory = reasoning_factory


def get_controller() -> FusionController:
    global _controller
    with _LOCK:
        if _controller is None:
            _controller = FusionController(get_config().fusion)
        return _controller


def get_reasoning_factory() -> ReasoningFactory:
    with _LOCK:
        return _reasoning_factory or default_reasoning


def reset_for_tests() -> None:  # pragma: no cover
    global _controller, _reasoning_factory
    with _LOCK:
        if _controller is not None:
            _controller.close()
        _controller = None
        _reasoning_factory = None


# ---------------- route -----------------
@router.post("/chat")
def chat(req: ChatRequest):  # noqa: D401
    messages = [m.model_dump() for m in req.messages]
    turn_id = req.turn_id or str(uuid.uuid4())
    try:
        controller = get_controller()
        events = get_reasoning_factory()(messages)
        stream = controller.process_stream(messages, events, turn_id=turn_id)
    except (TurnFailure, ConfigError) as exc:
        code = map_exception(exc, "turn")
        log.error(
            "chat turn rejected: %s", exc, extra={"turn_id": turn_id}
        )
        return JSONResponse(
            status_code=500,
            content={"error": str(exc), "error_type": code, "turn_id": turn_id},
        )
    metrics.inc("sse_stream_open_total")

    def _sse() -> Iterator[str]:
        finished = False
        try:
            yield json_event("meta", {"turn_id": turn_id})
            for fragment in stream:
                yield json_event("delta", fragment.to_event())
            finished = True
            yield json_event("end", {"turn_id": turn_id})
        except TurnFailure as exc:
            finished = True
            yield json_event(
                "error",
                {
                    "turn_id": turn_id,
                    "error_type": "turn-failure",
                    "message": str(exc),
                },
            )
        finally:
            if not finished:
                # client disconnected before the turn ended
                log.info("client gone, aborting", extra={"turn_id": turn_id})
                abort_registry.abort(turn_id)
                stream.cancel()

    return StreamingResponse(_sse(), media_type="text/event-stream")


__all__ = [
    "router",
    "ChatRequest",
    "configure",
    "get_controller",
    "get_reasoning_factory",
    "default_reasoning",
]
