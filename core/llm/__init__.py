"""Fusion layer exports.

No built-in fake delivery client. Tests pass an ``httpx.Client`` backed by
``httpx.MockTransport`` and plain iterables as reasoning streams.
"""

from .types import DialogueState, Fragment, TurnMetrics  # noqa: F401
from .exceptions import (  # noqa: F401
    GenerationError,
    MalformedResponseError,
    ReasoningStreamError,
    StreamStateError,
    TransportError,
    TurnFailure,
)
from .thoughts import ThoughtExtractor  # noqa: F401
from .delivery import DeliveryClient, DeliveryGenerator  # noqa: F401
from .pacing import OutwardStream, PacingEmitter  # noqa: F401
from .reasoning import OpenAIReasoningSource  # noqa: F401

__all__ = [
    "DialogueState",
    "Fragment",
    "TurnMetrics",
    "GenerationError",
    "MalformedResponseError",
    "ReasoningStreamError",
    "StreamStateError",
    "TransportError",
    "TurnFailure",
    "ThoughtExtractor",
    "DeliveryClient",
    "DeliveryGenerator",
    "OutwardStream",
    "PacingEmitter",
    "OpenAIReasoningSource",
]
