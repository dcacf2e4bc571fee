import json
import threading
import time

import httpx
import pytest

from core import metrics
from core.config.schemas.fusion import FusionConfig
from core.events import subscribe
from core.llm import abort_registry
from core.llm.delivery import DeliveryClient
from core.llm.exceptions import ReasoningStreamError, StreamStateError, TurnFailure
from core.llm.pacing import OutwardStream
from core.llm.pipeline.fusion import (
    FusionController,
    USER_INPUT_PLACEHOLDER,
    extract_user_input,
)

QUESTION = [{"role": "user", "content": "What is machine learning?"}]

THOUGHTS_STREAM = [
    {"type": "text-delta", "id": "0", "delta": "[bt]ML is a subset"},
    {"type": "text-delta", "id": "1", "delta": " of AI[et] <|sil|> [bt]It le"},
    {"type": "text-delta", "id": "2", "delta": "arns from data[et] <|sil|> "},
    {"type": "tool-call", "id": "3", "delta": "[bt]ignored[et]"},
    {"type": "text-delta", "id": "4", "delta": "[bt]Used for vision[et]"},
]


def _reply(request: httpx.Request) -> httpx.Response:
    """Immediate prompt -> "Great question."; step k -> "Response k."."""
    prompt = json.loads(request.content)["messages"][0]["content"]
    k = prompt.count("<|im_start|>knowledge")
    text = "Great question." if k == 0 else f"Response {k}."
    return httpx.Response(
        200, json={"choices": [{"message": {"content": text}}]}
    )


def _controller(cfg, handler=_reply, on_metrics=None):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    client = DeliveryClient(cfg.delivery, http_client=http)
    return FusionController(cfg, client=client, on_metrics=on_metrics)


def _run_turn(controller, events, messages=QUESTION, turn_id=None):
    ctx = controller.prepare(messages, turn_id=turn_id)
    stream = OutwardStream(1024)
    controller.run(ctx, events, stream)
    if ctx.reasoning_thread is not None:
        ctx.reasoning_thread.join(2.0)
    return ctx, list(stream)


def _text(frags):
    return "".join(f.delta for f in frags)


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_for_tests()
    yield


def test_extract_user_input_variants():
    assert extract_user_input(QUESTION) == "What is machine learning?"
    msgs = [
        {"role": "user", "content": "old"},
        {"role": "assistant", "content": "a"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "part one"},
                {"type": "image", "url": "x"},
                {"type": "text", "text": "part two"},
            ],
        },
    ]
    assert extract_user_input(msgs) == "part one part two"
    assert extract_user_input([{"role": "system", "content": "s"}]) == (
        USER_INPUT_PLACEHOLDER
    )
    assert extract_user_input([]) == USER_INPUT_PLACEHOLDER


def test_missing_delivery_endpoint_is_turn_failure():
    reports = []
    names = []
    unsub = subscribe(lambda name, p: names.append(name))
    try:
        with pytest.raises(TurnFailure):
            FusionController(
                FusionConfig(), on_metrics=reports.append
            ).prepare(QUESTION, turn_id="turn-unconfigured")
    finally:
        unsub()
    assert len(reports) == 1
    assert reports[0].stop_reason == "error"
    assert reports[0].responses_generated == 0
    assert names == ["TurnFailed", "TurnMetricsReported"]
    assert abort_registry.abort("turn-unconfigured") is False
    snap = metrics.snapshot()["counters"]
    assert snap["turns_total{status=failed}"] == 1
    assert "turns_total{status=completed}" not in snap


def test_duplicate_turn_id_in_flight_is_rejected(fusion_cfg):
    reports = []
    ctrl = _controller(fusion_cfg, on_metrics=reports.append)
    first = ctrl.prepare(QUESTION, turn_id="turn-dup")
    with pytest.raises(TurnFailure, match="already in flight"):
        ctrl.prepare(QUESTION, turn_id="turn-dup")
    assert [r.stop_reason for r in reports] == ["error"]
    # the first turn keeps its abort flag
    assert abort_registry.abort("turn-dup") is True
    stream = OutwardStream(1024)
    ctrl.run(first, [], stream)
    assert first.stop_reason == "aborted"
    assert abort_registry.is_aborted("turn-dup") is False


def test_full_turn_machine_learning(fusion_cfg):
    reports = []
    ctrl = _controller(fusion_cfg, on_metrics=reports.append)
    ctx, frags = _run_turn(ctrl, THOUGHTS_STREAM)
    assert _text(frags) == (
        "Great question. Response 1. Response 2. Response 3. "
    )
    assert frags[0].delta == "Great "
    assert ctx.state.thoughts == [
        "ML is a subset of AI",
        "It learns from data",
        "Used for vision",
    ]
    assert len(reports) == 1
    rep = reports[0]
    assert rep.thoughts_extracted == 3
    assert rep.thoughts_processed == 3
    assert rep.responses_generated == 3
    assert rep.first_response_time_ms is not None
    assert rep.processing_time_ms >= rep.first_response_time_ms
    assert rep.stop_reason == "idle"
    assert rep.full_text == "Response 1. Response 2. Response 3."
    snap = metrics.snapshot()["counters"]
    assert snap["delivery_calls_total{phase=immediate,status=ok}"] == 1
    assert snap["delivery_calls_total{phase=thought,status=ok}"] == 3
    assert snap["responses_generated_total"] == 3


def test_no_markers_exits_on_idle_and_closes(fusion_cfg):
    reports = []
    ctrl = _controller(fusion_cfg, on_metrics=reports.append)
    events = [{"type": "text-delta", "id": "0", "delta": "plain text, no thoughts"}]
    ctx, frags = _run_turn(ctrl, events)
    assert _text(frags) == "Great question. "
    assert ctx.stop_reason == "idle"
    assert reports[0].responses_generated == 0
    assert reports[0].thoughts_extracted == 0


def test_delivery_down_passthrough_fallback(fusion_cfg):
    reports = []
    ctrl = _controller(
        fusion_cfg,
        handler=lambda r: httpx.Response(500, text="down"),
        on_metrics=reports.append,
    )
    events = [{"type": "text-delta", "id": "0", "delta": "[bt]a thought[et]"}]
    ctx, frags = _run_turn(ctrl, events)
    assert [(f.id, f.delta) for f in frags] == [
        ("1", "Let me think about that... ")
    ]
    rep = reports[0]
    assert rep.responses_generated == 0
    assert rep.thoughts_extracted == 1
    assert rep.thoughts_processed >= 1
    assert rep.first_response_time_ms is not None
    assert rep.stop_reason == "idle"
    snap = metrics.snapshot()["counters"]
    assert snap["fallback_emitted_total{mode=passthrough}"] == 1
    assert snap[
        "delivery_calls_total{phase=immediate,status=transport-error}"
    ] == 1
    assert snap["delivery_calls_total{phase=thought,status=transport-error}"] >= 1


def test_delivery_down_silence_emits_nothing(fusion_cfg):
    cfg = fusion_cfg.model_copy(update={"fallback_behavior": "silence"})
    reports = []
    ctrl = _controller(
        cfg,
        handler=lambda r: httpx.Response(503),
        on_metrics=reports.append,
    )
    ctx, frags = _run_turn(ctrl, [])
    assert frags == []
    assert reports[0].first_response_time_ms is not None
    snap = metrics.snapshot()["counters"]
    assert snap["fallback_emitted_total{mode=silence}"] == 1


def test_responses_never_outnumber_thoughts(fusion_cfg):
    reports = []
    ctrl = _controller(fusion_cfg, on_metrics=reports.append)
    events = [
        {"type": "text-delta", "id": str(i), "delta": f"[bt]t{i}[et]"}
        for i in range(2)
    ]
    ctx, _ = _run_turn(ctrl, events)
    rep = reports[0]
    assert rep.responses_generated <= rep.thoughts_extracted
    assert rep.responses_generated == 2


def test_max_responses_cap(fusion_cfg):
    cfg = fusion_cfg.model_copy(
        update={"loop": fusion_cfg.loop.model_copy(update={"max_responses": 2})}
    )
    ctrl = _controller(cfg)
    events = [
        {"type": "text-delta", "id": str(i), "delta": f"[bt]t{i}[et]"}
        for i in range(8)
    ]
    ctx, frags = _run_turn(ctrl, events)
    assert ctx.stop_reason == "max_responses"
    assert ctx.state.response_count() == 2
    assert _text(frags).endswith("Response 2. ")


def test_char_budget_stops_loop(fusion_cfg):
    cfg = fusion_cfg.model_copy(
        update={"loop": fusion_cfg.loop.model_copy(update={"char_budget": 10})}
    )
    ctrl = _controller(cfg)
    events = [
        {"type": "text-delta", "id": str(i), "delta": f"[bt]t{i}[et]"}
        for i in range(4)
    ]
    ctx, _ = _run_turn(ctrl, events)
    assert ctx.stop_reason == "char_budget"
    assert ctx.state.responses == ["Response 1."]


def test_abort_stops_generation_loop(fusion_cfg):
    def handler(request):
        prompt = json.loads(request.content)["messages"][0]["content"]
        if "<|im_start|>knowledge" in prompt:
            abort_registry.abort("turn-abort")
        return _reply(request)

    ctrl = _controller(fusion_cfg, handler=handler)
    events = [
        {"type": "text-delta", "id": str(i), "delta": f"[bt]t{i}[et]"}
        for i in range(5)
    ]
    ctx, frags = _run_turn(ctrl, events, turn_id="turn-abort")
    assert ctx.stop_reason == "aborted"
    assert ctx.state.response_count() == 1
    # registry entry cleared once the turn is done
    assert abort_registry.is_aborted("turn-abort") is False


def test_metrics_callback_error_is_isolated(fusion_cfg):
    def boom(report):
        raise RuntimeError("callback exploded")

    got = []
    unsub = subscribe(
        lambda name, p: got.append(name) if name == "TurnMetricsReported" else None
    )
    try:
        ctrl = _controller(fusion_cfg, on_metrics=boom)
        ctx, frags = _run_turn(ctrl, [])
    finally:
        unsub()
    assert _text(frags) == "Great question. "
    assert got == ["TurnMetricsReported"]


def test_reasoning_failure_is_reported_not_raised(fusion_cfg):
    def broken():
        yield {"type": "text-delta", "id": "0", "delta": "[bt]only one[et]"}
        raise ReasoningStreamError("connection reset")

    failures = []
    unsub = subscribe(
        lambda name, p: failures.append(p)
        if name == "ReasoningConsumptionFailed"
        else None
    )
    try:
        ctrl = _controller(fusion_cfg)
        ctx, frags = _run_turn(ctrl, broken())
    finally:
        unsub()
    assert _text(frags) == "Great question. Response 1. "
    assert ctx.reasoning_done is True
    assert ctx.reasoning_error == "reasoning-stream-broken"
    assert failures and failures[0]["error_type"] == "reasoning-stream-broken"
    snap = metrics.snapshot()["counters"]
    assert snap["reasoning_stream_errors_total"] == 1


def test_unexpected_error_fails_stream_and_raises(fusion_cfg):
    def handler(request):
        raise RuntimeError("handler bug")

    reports = []
    ctrl = _controller(fusion_cfg, handler=handler, on_metrics=reports.append)
    ctx = ctrl.prepare(QUESTION)
    stream = OutwardStream()
    with pytest.raises(TurnFailure) as ei:
        ctrl.run(ctx, [], stream)
    assert isinstance(ei.value.__cause__, RuntimeError)
    with pytest.raises(TurnFailure):
        list(stream)
    assert reports and reports[0].stop_reason == "error"
    snap = metrics.snapshot()["counters"]
    assert snap["turns_total{status=failed}"] == 1


def test_run_on_closed_stream_is_turn_failure(fusion_cfg):
    ctrl = _controller(fusion_cfg)
    ctx = ctrl.prepare(QUESTION)
    stream = OutwardStream()
    stream.close()
    with pytest.raises(TurnFailure) as ei:
        ctrl.run(ctx, [], stream)
    assert isinstance(ei.value.__cause__, StreamStateError)


def test_process_stream_first_fragment_precedes_thoughts(fusion_cfg):
    order = []
    gate = threading.Event()
    unsub = subscribe(
        lambda name, p: order.append(name)
        if name in {"ImmediateResponseCompleted", "ThoughtExtracted"}
        else None
    )

    def slow_reasoning():
        gate.wait(2.0)
        yield {"type": "text-delta", "id": "0", "delta": "[bt]late[et]"}

    done = threading.Event()
    try:
        ctrl = _controller(fusion_cfg, on_metrics=lambda r: done.set())
        stream = ctrl.process_stream(QUESTION, slow_reasoning())
        it = iter(stream)
        first = next(it)
        gate.set()
        rest = list(it)
        assert done.wait(2.0)
    finally:
        unsub()
    assert first.delta == "Great "
    assert _text([first] + rest) == "Great question. Response 1. "
    assert order == ["ImmediateResponseCompleted", "ThoughtExtracted"]


def test_failed_step_retries_same_thought(fusion_cfg):
    calls = {"knowledge": 0}

    def flaky(request):
        prompt = json.loads(request.content)["messages"][0]["content"]
        if "<|im_start|>knowledge" in prompt:
            calls["knowledge"] += 1
            if calls["knowledge"] == 1:
                return httpx.Response(500, text="hiccup")
        return _reply(request)

    reports = []
    ctrl = _controller(fusion_cfg, handler=flaky, on_metrics=reports.append)
    events = [{"type": "text-delta", "id": "0", "delta": "[bt]only thought[et]"}]
    ctx, frags = _run_turn(ctrl, events)
    assert _text(frags) == "Great question. Response 1. "
    assert ctx.state.thoughts == ["only thought"]
    assert ctx.state.responses == ["Response 1."]
    assert calls["knowledge"] == 2
    rep = reports[0]
    assert rep.thoughts_processed == 2
    assert rep.responses_generated == 1
    snap = metrics.snapshot()["counters"]
    assert snap["delivery_calls_total{phase=thought,status=ok}"] == 1


def test_reasoning_request_overlaps_immediate_response(fusion_cfg):
    marks = {}
    order = []

    def slow_immediate(request):
        prompt = json.loads(request.content)["messages"][0]["content"]
        if "<|im_start|>knowledge" not in prompt:
            time.sleep(0.3)
            marks["immediate_done"] = time.monotonic()
        return _reply(request)

    def reasoning():
        marks["reasoning_started"] = time.monotonic()
        yield {"type": "text-delta", "id": "0", "delta": "[bt]early[et]"}

    unsub = subscribe(
        lambda name, p: order.append(name)
        if name in {"ImmediateResponseCompleted", "ThoughtExtracted"}
        else None
    )
    try:
        ctrl = _controller(fusion_cfg, handler=slow_immediate)
        ctx, frags = _run_turn(ctrl, reasoning())
    finally:
        unsub()
    assert marks["reasoning_started"] < marks["immediate_done"]
    assert order == ["ImmediateResponseCompleted", "ThoughtExtracted"]
    assert _text(frags) == "Great question. Response 1. "
