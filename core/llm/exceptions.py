"""LLM related exception hierarchy."""


class ModelError(Exception):
    """Base model exception."""


class GenerationError(ModelError):
    """Raised when the delivery model produced no usable text.

    The fusion loop treats it as "no response for this step".
    """


class TransportError(GenerationError):
    """Delivery endpoint unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(GenerationError):
    """Response body lacks ``choices[0].message.content`` or it is empty."""


class ReasoningStreamError(ModelError):
    """Reasoning stream could not be opened or broke mid-flight."""


class TurnFailure(ModelError):
    """Uncaught failure of a whole turn (setup or controller crash)."""


class StreamStateError(RuntimeError):
    """Outward stream used after it was closed or failed."""
