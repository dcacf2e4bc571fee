"""Incremental [bt]...[et] thought extraction from a reasoning stream.

The reasoning model wraps every complete thought in begin/end markers and
pads between them with noise (``<|sil|>`` pauses, whitespace). Chunks
arrive at arbitrary boundaries, so markers may be split across feeds:

    "[bt]ML is AI su" + "bset[et] <|sil|> [bt]It trains on da" + "ta[et]"
    -> ["ML is AI subset", "It trains on data"]

Rules:
  * Emit a thought only once its end marker has arrived
  * Text outside markers is discarded
  * Whitespace-only bodies are dropped
  * No flush on stream end: an unterminated trailing thought is lost
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List

log = logging.getLogger("fusion.thoughts")

TEXT_DELTA = "text-delta"


class ThoughtExtractor:
    def __init__(self, begin: str = "[bt]", end: str = "[et]") -> None:
        if not begin or not end:
            raise ValueError("thought markers must be non-empty")
        self.begin = begin
        self.end = end
        self._buffer = ""
        self.extracted = 0

    @property
    def pending(self) -> str:
        """Unconsumed buffer tail (partial thought or noise)."""
        return self._buffer

    def feed(self, fragment: str) -> List[str]:
        self._buffer += fragment
        out: List[str] = []
        while True:
            b = self._buffer.find(self.begin)
            if b == -1:
                # keep only what could still grow into a begin marker
                keep = len(self.begin) - 1
                self._buffer = self._buffer[-keep:] if keep else ""
                break
            e = self._buffer.find(self.end, b + len(self.begin))
            if e == -1:
                # wait for the end marker in a later feed
                break
            body = self._buffer[b + len(self.begin):e].strip()
            self._buffer = self._buffer[e + len(self.end):]
            if body:
                out.append(body)
                log.debug("thought extracted (%d chars)", len(body))
        self.extracted += len(out)
        return out

    def feed_event(self, event: Dict[str, Any]) -> List[str]:
        """Feed a reasoning stream event; non text-delta events are ignored."""
        if event.get("type") != TEXT_DELTA:
            return []
        return self.feed(event.get("delta") or "")


__all__ = ["ThoughtExtractor", "TEXT_DELTA"]
