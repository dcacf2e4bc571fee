"""Fusion config schema.

Covers the two model endpoints (reasoning + delivery), thought markers,
pacing and generation loop bounds. No side effects / globals.
"""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, ConfigDict


class DeliveryConfig(BaseModel):
    """Fast sentence-completion model (one-shot chat completions RPC)."""

    endpoint_url: str = ""
    api_key: str | None = None
    model: str = "tgi"
    temperature: float = 0.7
    max_tokens: int = 50
    timeout_s: float = 30.0

    model_config = ConfigDict(extra="forbid")

    @field_validator("temperature")
    @classmethod
    def _temp_range(cls, v: float) -> float:  # noqa: D401
        if not (0 <= v <= 2):
            raise ValueError("temperature out of range 0..2")
        return v


class ReasoningConfig(BaseModel):
    """Slow, high-quality model producing [bt]...[et] delimited thoughts."""

    endpoint_url: str = "https://api.openai.com"
    api_key: str | None = None
    model: str = "gpt-4"
    timeout_s: float = 120.0
    inject_thought_prompt: bool = True

    model_config = ConfigDict(extra="forbid")


class MarkersConfig(BaseModel):
    begin: str = Field("[bt]", min_length=1)
    end: str = Field("[et]", min_length=1)

    model_config = ConfigDict(extra="forbid")


class PacingConfig(BaseModel):
    word_delay_ms: int = 30
    # Outward buffer size; producers block once it is full.
    max_buffered_fragments: int = 256

    model_config = ConfigDict(extra="forbid")


class LoopConfig(BaseModel):
    poll_interval_ms: int = 100
    idle_bound: int = 100
    max_responses: int = 5
    char_budget: int = 500

    model_config = ConfigDict(extra="forbid")


class FusionConfig(BaseModel):
    delivery: DeliveryConfig = DeliveryConfig()
    reasoning: ReasoningConfig = ReasoningConfig()
    markers: MarkersConfig = MarkersConfig()
    pacing: PacingConfig = PacingConfig()
    loop: LoopConfig = LoopConfig()
    # passthrough: emit fallback_text when the immediate call fails
    # silence: emit nothing
    fallback_behavior: str = Field(
        "passthrough", pattern="^(passthrough|silence)$"
    )
    fallback_text: str = "Let me think about that... "

    model_config = ConfigDict(extra="forbid")
