"""Outward stream + word pacing.

`OutwardStream` is the pull side handed to the transport: a bounded queue
of fragments terminated by close() or fail(). `PacingEmitter` re-emits a
generated sentence word by word with a small delay so the client sees
incremental output instead of a sentence dump.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Iterator

from .exceptions import StreamStateError
from .types import Fragment

log = logging.getLogger("fusion.pacing")

_CLOSE = object()

# Trailing space fragment id offset (keeps ids distinct from word ids).
TRAILER_ID_OFFSET = 1000


class OutwardStream:
    """Pull-based fragment stream.

    Producers call push/close/fail; one consumer iterates. push() blocks
    while the buffer is full (backpressure) and becomes a no-op once the
    consumer cancelled.
    """

    def __init__(self, max_buffered: int = 256) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=max_buffered)
        self._lock = threading.Lock()
        self._closed = False
        self._cancelled = threading.Event()
        self._error: BaseException | None = None
        self.pushed = 0

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def desired_size(self) -> int | None:
        """Remaining buffer capacity; None once closed (nothing accepted)."""
        if self.closed or self.cancelled:
            return None
        return self._queue.maxsize - self._queue.qsize()

    def _put(self, item: object) -> bool:
        while not self._cancelled.is_set():
            try:
                self._queue.put(item, timeout=0.05)
                return True
            except queue.Full:
                continue
        return False

    def push(self, fragment: Fragment) -> None:
        with self._lock:
            if self._closed:
                raise StreamStateError("push on closed outward stream")
        if self._put(fragment):
            self.pushed += 1

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise StreamStateError("outward stream already closed")
            self._closed = True
        self._put(_CLOSE)

    def fail(self, exc: BaseException) -> None:
        """Terminate the stream with an error raised to the consumer."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._error = exc
        self._put(_CLOSE)

    def cancel(self) -> None:
        """Consumer side: stop reading; unblocks producers."""
        self._cancelled.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def __iter__(self) -> Iterator[Fragment]:
        while not self._cancelled.is_set():
            item = self._queue.get()
            if item is _CLOSE:
                if self._error is not None:
                    raise self._error
                return
            yield item  # type: ignore[misc]


class PacingEmitter:
    def __init__(self, word_delay_s: float = 0.03) -> None:
        self.word_delay_s = max(0.0, word_delay_s)

    def emit(self, text: str, stream: OutwardStream, unit_id: int) -> int:
        """Push ``text`` word by word; return number of fragments pushed."""
        if not text or not text.strip():
            return 0
        words = [w for w in text.split() if w]
        pushed = 0
        for i, word in enumerate(words):
            delta = word + (" " if i < len(words) - 1 else "")
            if stream.desired_size is not None:
                stream.push(Fragment(id=str(unit_id), delta=delta))
                pushed += 1
            if self.word_delay_s:
                time.sleep(self.word_delay_s)
        if stream.desired_size is not None:
            stream.push(
                Fragment(id=str(unit_id + TRAILER_ID_OFFSET), delta=" ")
            )
            pushed += 1
        return pushed


__all__ = ["OutwardStream", "PacingEmitter", "TRAILER_ID_OFFSET"]
