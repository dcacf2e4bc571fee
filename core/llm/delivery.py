"""Delivery model client: prompt construction, RPC, output sanitation.

The delivery model is a small chat model trained on a ChatML variant with
an extra ``knowledge`` role. Each step shows it the user input, every
earlier (thought, response) pair, and at most one unconsumed thought:

    <|im_start|>user\\n{user_input}<|im_end|>
    <|im_start|>knowledge\\n{thoughts[0]}<|im_end|>
    <|im_start|>assistant\\n{responses[0]}<|im_end|>
    <|im_start|>knowledge\\n{thoughts[1]}<|im_end|>      (new thought)
    <|im_start|>assistant\\n

The whole transcript travels as the content of a single user message of
an OpenAI-compatible ``/v1/chat/completions`` endpoint.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Any, List, Sequence

import httpx

from core.config.schemas.fusion import DeliveryConfig
from .exceptions import MalformedResponseError, TransportError
from .types import DialogueState

log = logging.getLogger("fusion.delivery")

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

_RE_SERVICE = re.compile(r"<\|[^|>]+\|>")
_RE_ROLE_PREFIX = re.compile(r"^\s*(assistant|knowledge)\b\s*", re.IGNORECASE)
_RE_ROLE_WORD = re.compile(r"\b(assistant|knowledge)\b", re.IGNORECASE)
_RE_SPACES = re.compile(r"[ \t]{2,}")


def turn(role: str, text: str) -> str:
    return f"<|im_start|>{role}\n{text}<|im_end|>\n"


def open_assistant_turn() -> str:
    return "<|im_start|>assistant\n"


def build_immediate_prompt(user_input: str) -> str:
    """Prompt for the first response, before any thought exists."""
    return turn("user", user_input) + open_assistant_turn()


def build_prompt(
    user_input: str, thoughts: Sequence[str], responses: Sequence[str]
) -> str:
    """Prompt pairing each response with its thought plus one new thought.

    Callers guarantee ``len(thoughts) > 0`` when ``responses`` is empty.
    """
    parts: List[str] = [turn("user", user_input)]
    if not responses:
        parts.append(turn("knowledge", thoughts[0]))
    else:
        n = len(responses)
        for i in range(n):
            parts.append(turn("knowledge", thoughts[i]))
            parts.append(turn("assistant", responses[i]))
        if len(thoughts) > n:
            parts.append(turn("knowledge", thoughts[n]))
    parts.append(open_assistant_turn())
    return "".join(parts)


def build_prompt_for_state(state: DialogueState) -> str:
    thoughts, responses = state.snapshot()
    return build_prompt(state.user_input, thoughts, responses)


def sanitize(text: str) -> str:
    """Strip control markers and leaked role names from model output."""
    out = _RE_SERVICE.sub("", text or "")
    out = _RE_ROLE_PREFIX.sub("", out)
    out = _RE_ROLE_WORD.sub("", out)
    out = _RE_SPACES.sub(" ", out)
    return out.strip()


def normalize_endpoint(url: str) -> str:
    url = (url or "").rstrip("/")
    if url.endswith(CHAT_COMPLETIONS_PATH):
        return url
    return url + CHAT_COMPLETIONS_PATH


class DeliveryClient:
    """One-shot chat completions client for the delivery model."""

    def __init__(
        self,
        cfg: DeliveryConfig,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.cfg = cfg
        self.url = normalize_endpoint(cfg.endpoint_url)
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=cfg.timeout_s)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["Authorization"] = f"Bearer {self.cfg.api_key}"
        return headers

    def payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.cfg.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.cfg.max_tokens,
            "temperature": self.cfg.temperature,
            "stream": False,
        }

    def complete(self, prompt: str) -> str:
        """Return sanitized completion text.

        Raises TransportError (network / non-2xx) or MalformedResponseError
        (no usable content).
        """
        start = time.perf_counter()
        try:
            response = self._client.post(
                self.url, json=self.payload(prompt), headers=self._headers()
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"delivery request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise TransportError(
                f"delivery API error: {response.status_code} "
                f"{response.reason_phrase} - {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError(
                f"delivery response missing content: {exc}"
            ) from exc
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError("delivery response content empty")
        text = sanitize(content)
        if not text:
            raise MalformedResponseError(
                "delivery response empty after sanitation"
            )
        log.debug(
            "delivery completion in %.0f ms (%d chars)",
            (time.perf_counter() - start) * 1000.0,
            len(text),
        )
        return text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class DeliveryGenerator:
    """Prompt construction over dialogue state + delivery RPC."""

    def __init__(self, client: DeliveryClient) -> None:
        self.client = client

    def generate_immediate(self, user_input: str) -> str:
        return self.client.complete(build_immediate_prompt(user_input))

    def generate(self, state: DialogueState) -> str:
        return self.client.complete(build_prompt_for_state(state))


__all__ = [
    "CHAT_COMPLETIONS_PATH",
    "DeliveryClient",
    "DeliveryGenerator",
    "build_immediate_prompt",
    "build_prompt",
    "build_prompt_for_state",
    "normalize_endpoint",
    "sanitize",
]
