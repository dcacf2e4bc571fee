"""Dual-model fusion pipeline.

One turn merges two models into a single outward stream:

  1. Immediate response: the delivery model answers from the user input
     alone, so the first words go out before any reasoning exists.
  2. Concurrent processing: the reasoning request is opened before the
     immediate response and buffered; once that response is out, a
     detached thread drains the buffer and appends extracted thoughts to
     the dialogue state, while the generation loop turns each new thought
     into one more delivery response and paces it onto the outward stream.
  3. Close: once the loop stops (idle bound, response cap, character
     budget or abort) the stream is closed, whether or not the reasoning
     stream has finished.
  4. Metrics report: always, including failure paths.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, Iterator, Sequence

from core import metrics
from core.config.schemas.fusion import FusionConfig
from core.errors import map_exception
from core.events import (
    GenerationLoopExited,
    ImmediateResponseCompleted,
    ReasoningConsumptionFailed,
    ResponseGenerated,
    ThoughtExtracted,
    TurnFailed,
    TurnMetricsReported,
    TurnStarted,
    emit,
)
from core.llm import abort_registry
from core.llm.delivery import DeliveryClient, DeliveryGenerator
from core.llm.exceptions import GenerationError, TurnFailure
from core.llm.pacing import OutwardStream, PacingEmitter
from core.llm.thoughts import ThoughtExtractor
from core.llm.types import DialogueState, Fragment, TurnMetrics
from .base import GenerationPipeline, TurnContext

log = logging.getLogger("fusion.controller")

USER_INPUT_PLACEHOLDER = "User question"

MetricsCallback = Callable[[TurnMetrics], None]

_PREFETCH_END = object()


class _PrefetchFailed:
    __slots__ = ("exc",)

    def __init__(self, exc: BaseException) -> None:
        self.exc = exc


def extract_user_input(messages: Sequence[Dict[str, Any]]) -> str:
    """Text of the most recent user message (text parts joined by spaces)."""
    for msg in reversed(list(messages or [])):
        if msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(
                part.get("text", "")
                for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
        return ""
    return USER_INPUT_PLACEHOLDER


class FusionController(GenerationPipeline):
    """Runs fusion turns. Per-turn state lives in TurnContext, so one
    controller can serve concurrent turns."""

    def __init__(
        self,
        cfg: FusionConfig,
        client: DeliveryClient | None = None,
        on_metrics: MetricsCallback | None = None,
    ) -> None:
        self.cfg = cfg
        self._client = client
        self._client_lock = threading.Lock()
        self.on_metrics = on_metrics
        self.pacer = PacingEmitter(cfg.pacing.word_delay_ms / 1000.0)

    # ---------------- wiring -----------------
    def _generator(self) -> DeliveryGenerator:
        with self._client_lock:
            if self._client is None:
                self._client = DeliveryClient(self.cfg.delivery)
            return DeliveryGenerator(self._client)

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    # ---------------- pipeline contract -----------------
    def prepare(
        self,
        messages: Sequence[Dict[str, Any]],
        turn_id: str | None = None,
    ) -> TurnContext:
        turn_id = turn_id or uuid.uuid4().hex
        state = DialogueState(user_input=extract_user_input(messages))
        ctx = TurnContext(turn_id=turn_id, state=state)
        if not self.cfg.delivery.endpoint_url:
            self._reject(ctx, "delivery endpoint_url not configured")
        if not abort_registry.register(turn_id):
            self._reject(ctx, f"turn {turn_id} already in flight")
        log.info(
            "turn started",
            extra={"turn_id": turn_id, "user_chars": len(state.user_input)},
        )
        emit(
            TurnStarted(
                turn_id=turn_id, user_input_chars=len(state.user_input)
            )
        )
        return ctx

    def _reject(self, ctx: TurnContext, message: str) -> None:
        """Fail a turn during setup: report it, then raise TurnFailure."""
        ctx.stop_reason = "error"
        ctx.finished = True
        log.error("turn rejected: %s", message, extra={"turn_id": ctx.turn_id})
        emit(
            TurnFailed(
                turn_id=ctx.turn_id, error_type="turn-failure", message=message
            )
        )
        self._report(ctx)
        raise TurnFailure(message)

    def run(
        self,
        ctx: TurnContext,
        reasoning_events: Iterable[Dict[str, Any]],
        stream: OutwardStream,
    ) -> None:
        """Drive one turn to completion, writing ``stream``.

        Raises TurnFailure on any unexpected error; the stream is failed
        first so its consumer never hangs.
        """
        try:
            events = self._start_reasoning_prefetch(ctx, reasoning_events)
            self._immediate_response(ctx, stream)
            self._start_reasoning_consumer(ctx, events)
            self._generation_loop(ctx, stream)
            stream.close()
            log.info(
                "turn stream closed",
                extra={"turn_id": ctx.turn_id, "stop_reason": ctx.stop_reason},
            )
        except Exception as exc:  # noqa: BLE001
            ctx.stop_reason = "error"
            code = map_exception(exc, "turn")
            log.exception(
                "turn failed", extra={"turn_id": ctx.turn_id, "code": code}
            )
            emit(
                TurnFailed(turn_id=ctx.turn_id, error_type=code, message=str(exc))
            )
            failure = TurnFailure(f"turn {ctx.turn_id} failed: {exc}")
            stream.fail(failure)
            raise failure from exc
        finally:
            ctx.finished = True
            self._report(ctx)
            abort_registry.clear(ctx.turn_id)

    def finalize(self, ctx: TurnContext) -> TurnMetrics:
        state = ctx.state
        thoughts = state.thoughts
        return TurnMetrics(
            turn_id=ctx.turn_id,
            thoughts_extracted=len(thoughts),
            thoughts_processed=state.thoughts_processed,
            responses_generated=state.response_count(),
            processing_time_ms=state.elapsed_ms(),
            first_response_time_ms=state.first_response_ms(),
            thoughts=thoughts,
            full_text=state.full_text(),
            stop_reason=ctx.stop_reason,
        )

    # ---------------- entry point -----------------
    def process_stream(
        self,
        messages: Sequence[Dict[str, Any]],
        reasoning_events: Iterable[Dict[str, Any]],
        turn_id: str | None = None,
    ) -> OutwardStream:
        """Start a turn on a producer thread; return the pull side.

        Setup failures (TurnFailure from prepare) raise here, before any
        stream exists.
        """
        ctx = self.prepare(messages, turn_id=turn_id)
        stream = OutwardStream(self.cfg.pacing.max_buffered_fragments)

        def _produce() -> None:
            try:
                self.run(ctx, reasoning_events, stream)
            except TurnFailure:
                # already logged and delivered to the stream consumer
                log.debug("producer for turn %s ended with failure", ctx.turn_id)

        threading.Thread(
            target=_produce, name=f"fusion-{ctx.turn_id[:8]}", daemon=True
        ).start()
        return stream

    # ---------------- phases -----------------
    def _immediate_response(
        self, ctx: TurnContext, stream: OutwardStream
    ) -> None:
        state = ctx.state
        unit_id = ctx.next_unit_id
        ctx.next_unit_id += 1
        try:
            text = self._generator().generate_immediate(state.user_input)
        except GenerationError as exc:
            code = map_exception(exc, "delivery")
            metrics.inc_delivery_call("immediate", code)
            state.mark_first_response()
            mode = self.cfg.fallback_behavior
            log.warning(
                "immediate response failed, fallback=%s: %s",
                mode,
                exc,
                extra={"turn_id": ctx.turn_id},
            )
            if mode == "passthrough" and stream.desired_size is not None:
                stream.push(
                    Fragment(id=str(unit_id), delta=self.cfg.fallback_text)
                )
            metrics.inc_fallback_emitted(mode)
            emit(
                ImmediateResponseCompleted(
                    turn_id=ctx.turn_id,
                    status="fallback" if mode == "passthrough" else "silenced",
                    latency_ms=state.first_response_ms() or 0,
                    error_type=code,
                )
            )
            return
        metrics.inc_delivery_call("immediate", "ok")
        state.mark_first_response()
        self.pacer.emit(text, stream, unit_id)
        log.info(
            "immediate response emitted",
            extra={
                "turn_id": ctx.turn_id,
                "first_response_ms": state.first_response_ms(),
            },
        )
        emit(
            ImmediateResponseCompleted(
                turn_id=ctx.turn_id,
                status="ok",
                latency_ms=state.first_response_ms() or 0,
            )
        )

    def _start_reasoning_prefetch(
        self, ctx: TurnContext, events: Iterable[Dict[str, Any]]
    ) -> Iterator[Dict[str, Any]]:
        """Start pulling the reasoning stream now, buffering its events.

        The upstream request overlaps the immediate response; thoughts are
        only extracted once the consumer drains the buffer.
        """
        buffered: "queue.Queue[Any]" = queue.Queue()

        def _pull() -> None:
            source = iter(events)
            try:
                for event in source:
                    buffered.put(event)
                    if ctx.finished or abort_registry.is_aborted(ctx.turn_id):
                        break
            except Exception as exc:  # noqa: BLE001
                buffered.put(_PrefetchFailed(exc))
            finally:
                close = getattr(source, "close", None)
                if close is not None:
                    close()
                buffered.put(_PREFETCH_END)

        threading.Thread(
            target=_pull, name=f"prefetch-{ctx.turn_id[:8]}", daemon=True
        ).start()

        def _drain() -> Iterator[Dict[str, Any]]:
            while True:
                item = buffered.get()
                if item is _PREFETCH_END:
                    return
                if isinstance(item, _PrefetchFailed):
                    raise item.exc
                yield item

        return _drain()

    def _start_reasoning_consumer(
        self, ctx: TurnContext, events: Iterable[Dict[str, Any]]
    ) -> threading.Thread:
        """Launch the detached reasoning consumer.

        Its failures are logged and reported as events; they never reach
        the turn result. The loop does not join it.
        """
        extractor = ThoughtExtractor(
            self.cfg.markers.begin, self.cfg.markers.end
        )
        state = ctx.state

        def _consume() -> None:
            try:
                for event in events:
                    for thought in extractor.feed_event(event):
                        seq = state.add_thought(thought)
                        emit(
                            ThoughtExtracted(
                                turn_id=ctx.turn_id,
                                seq=seq,
                                chars=len(thought),
                            )
                        )
                    if ctx.finished or abort_registry.is_aborted(ctx.turn_id):
                        break
                if extractor.pending.strip():
                    log.debug(
                        "dropping unterminated reasoning tail (%d chars)",
                        len(extractor.pending),
                    )
            except Exception as exc:  # noqa: BLE001
                ctx.reasoning_error = map_exception(exc, "reasoning")
                log.warning(
                    "reasoning consumption failed: %s",
                    exc,
                    extra={"turn_id": ctx.turn_id},
                )
                emit(
                    ReasoningConsumptionFailed(
                        turn_id=ctx.turn_id,
                        error_type=ctx.reasoning_error,
                        message=str(exc),
                    )
                )
            finally:
                ctx.reasoning_done = True

        thread = threading.Thread(
            target=_consume,
            name=f"reasoning-{ctx.turn_id[:8]}",
            daemon=True,
        )
        ctx.reasoning_thread = thread
        thread.start()
        return thread

    def _generation_loop(
        self, ctx: TurnContext, stream: OutwardStream
    ) -> None:
        state = ctx.state
        bounds = self.cfg.loop
        poll_s = bounds.poll_interval_ms / 1000.0
        generator = self._generator()
        last_thought_count = 0
        idle = 0
        while True:
            if abort_registry.is_aborted(ctx.turn_id) or stream.cancelled:
                ctx.stop_reason = "aborted"
                break
            if idle >= bounds.idle_bound:
                ctx.stop_reason = "idle"
                break
            if state.thought_count() > last_thought_count:
                state.thoughts_processed += 1
                try:
                    text = generator.generate(state)
                except GenerationError as exc:
                    code = map_exception(exc, "delivery")
                    metrics.inc_delivery_call("thought", code)
                    log.warning(
                        "delivery failed for thought %d: %s",
                        last_thought_count,
                        exc,
                        extra={"turn_id": ctx.turn_id, "code": code},
                    )
                    text = ""
                else:
                    metrics.inc_delivery_call("thought", "ok")
                if text.strip():
                    unit_id = ctx.next_unit_id
                    ctx.next_unit_id += 1
                    self.pacer.emit(text, stream, unit_id)
                    seq = state.add_response(text)
                    last_thought_count = seq + 1
                    idle = 0
                    emit(
                        ResponseGenerated(
                            turn_id=ctx.turn_id,
                            seq=seq,
                            thought_seq=seq,
                            chars=len(text),
                        )
                    )
                else:
                    # retry the same thought after one poll interval
                    idle += 1
                    time.sleep(poll_s)
            else:
                seen = state.wait_for_thoughts(last_thought_count, poll_s)
                if seen <= last_thought_count:
                    idle += 1
            if state.response_count() >= bounds.max_responses:
                ctx.stop_reason = "max_responses"
                break
            if len(state.full_text()) > bounds.char_budget:
                ctx.stop_reason = "char_budget"
                break
        log.info(
            "generation loop exited",
            extra={
                "turn_id": ctx.turn_id,
                "stop_reason": ctx.stop_reason,
                "responses": state.response_count(),
            },
        )
        emit(
            GenerationLoopExited(
                turn_id=ctx.turn_id,
                stop_reason=ctx.stop_reason or "unknown",
                responses=state.response_count(),
                thoughts=state.thought_count(),
            )
        )

    def _report(self, ctx: TurnContext) -> TurnMetrics:
        report = self.finalize(ctx)
        emit(
            TurnMetricsReported(
                turn_id=report.turn_id,
                thoughts_extracted=report.thoughts_extracted,
                thoughts_processed=report.thoughts_processed,
                responses_generated=report.responses_generated,
                processing_time_ms=report.processing_time_ms,
                first_response_time_ms=report.first_response_time_ms,
                stop_reason=report.stop_reason,
            )
        )
        if self.on_metrics is not None:
            try:
                self.on_metrics(report)
            except Exception:  # noqa: BLE001
                log.exception(
                    "metrics callback failed", extra={"turn_id": ctx.turn_id}
                )
        return report


__all__ = [
    "FusionController",
    "extract_user_input",
    "USER_INPUT_PLACEHOLDER",
]
