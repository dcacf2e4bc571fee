"""SSE utilities."""
from __future__ import annotations

import json
from typing import Any, Dict


def format_event(event: str | None, data: str) -> str:
    lines = []
    if event:
        lines.append(f"event: {event}")
    # data may contain newlines; split per SSE framing rules
    for line in data.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def json_event(event: str, payload: Dict[str, Any]) -> str:
    return format_event(event, json.dumps(payload, ensure_ascii=False))


def parse_events(body: str) -> list[tuple[str | None, str]]:
    """Split an SSE body back into (event, data) pairs (client/test side)."""
    out: list[tuple[str | None, str]] = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        name = None
        data_lines = []
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data_lines.append(line[len("data: "):])
        out.append((name, "\n".join(data_lines)))
    return out
