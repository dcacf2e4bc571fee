"""Reasoning model side: structured-thought prompting + streaming source.

The fusion controller only needs an iterable of ``text-delta`` events.
`OpenAIReasoningSource` produces one from any OpenAI-compatible streaming
chat completions endpoint; tests and other transports can pass plain
iterables instead.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Sequence

import httpx

from core.config.schemas.fusion import ReasoningConfig
from .delivery import normalize_endpoint
from .exceptions import ReasoningStreamError
from .thoughts import TEXT_DELTA

log = logging.getLogger("fusion.reasoning")

STRUCTURED_THOUGHT_SYSTEM_PROMPT = """You are a helpful AI assistant that MUST structure your responses using special markers.

CRITICAL: You MUST wrap every complete thought in [bt] and [et] markers. You MUST use <|sil|> tokens between thoughts for natural pauses.

REQUIRED FORMAT:
[bt]Your first complete thought about the topic[et] <|sil|> [bt]Your second complete thought with more details[et] <|sil|> [bt]Your final thought or conclusion[et]

EXAMPLE:
[bt]Machine learning is a subset of artificial intelligence that enables computers to learn patterns from data[et] <|sil|> [bt]It works by training algorithms on large datasets to recognize and predict outcomes without explicit programming[et] <|sil|> [bt]Popular applications include image recognition, natural language processing, and recommendation systems[et]

IMPORTANT: Every response must contain multiple [bt]...[et] sections with <|sil|> pauses between them. Do not provide responses without these markers."""  # noqa: E501


def inject_thought_prompt(
    messages: Sequence[Dict[str, Any]],
    system_prompt: str = STRUCTURED_THOUGHT_SYSTEM_PROMPT,
) -> List[Dict[str, Any]]:
    """Return a copy of ``messages`` whose system message demands markers.

    An existing system message gets the prompt prepended (blank line
    between); otherwise a new system message is inserted first.
    """
    out = [dict(m) for m in messages]
    for i, msg in enumerate(out):
        if msg.get("role") == "system":
            existing = msg.get("content") or ""
            out[i] = {**msg, "content": system_prompt + "\n\n" + existing}
            return out
    out.insert(0, {"role": "system", "content": system_prompt})
    return out


def _flatten_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            p.get("text", "")
            for p in content
            if isinstance(p, dict) and p.get("type") == "text"
        )
    return ""


class OpenAIReasoningSource:
    """Stream ``text-delta`` events from a chat completions SSE endpoint."""

    def __init__(
        self,
        cfg: ReasoningConfig,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.cfg = cfg
        self.url = normalize_endpoint(cfg.endpoint_url)
        self._client = http_client or httpx.Client(timeout=cfg.timeout_s)

    def _request_body(self, messages: Sequence[Dict[str, Any]]) -> dict:
        if self.cfg.inject_thought_prompt:
            messages = inject_thought_prompt(messages)
        return {
            "model": self.cfg.model,
            "messages": [
                {
                    "role": m.get("role", "user"),
                    "content": _flatten_content(m.get("content")),
                }
                for m in messages
            ],
            "stream": True,
        }

    def stream(
        self, messages: Sequence[Dict[str, Any]]
    ) -> Iterator[Dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        seq = 0
        try:
            with self._client.stream(
                "POST",
                self.url,
                json=self._request_body(messages),
                headers=headers,
            ) as resp:
                if resp.status_code < 200 or resp.status_code >= 300:
                    resp.read()
                    raise ReasoningStreamError(
                        f"reasoning API error: {resp.status_code} "
                        f"{resp.text[:200]}"
                    )
                for line in resp.iter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                        delta = chunk["choices"][0].get("delta") or {}
                    except (ValueError, KeyError, IndexError, TypeError):
                        log.debug("skipping unparsable reasoning chunk")
                        continue
                    text = delta.get("content")
                    if text:
                        yield {"type": TEXT_DELTA, "id": str(seq), "delta": text}
                        seq += 1
        except httpx.HTTPError as exc:
            raise ReasoningStreamError(
                f"reasoning stream broken: {exc}"
            ) from exc

    def close(self) -> None:
        self._client.close()


__all__ = [
    "STRUCTURED_THOUGHT_SYSTEM_PROMPT",
    "inject_thought_prompt",
    "OpenAIReasoningSource",
]
