"""
Usage accounting

Token usage and estimated cost for one review run.
"""

from dataclasses import dataclass
from typing import Any

# Model pricing in cents per 1M tokens (input/output)
MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-3-haiku-20240307": {"input": 25, "output": 125},
    "claude-3-5-haiku-20241022": {"input": 80, "output": 400},
    "claude-3-5-haiku-latest": {"input": 80, "output": 400},
    "claude-3-5-sonnet-20241022": {"input": 300, "output": 1500},
    "claude-3-5-sonnet-latest": {"input": 300, "output": 1500},
    "claude-sonnet-4-20250514": {"input": 300, "output": 1500},
    "claude-opus-4-20250514": {"input": 1500, "output": 7500},
}

# Used when a model is not listed
DEFAULT_PRICING = {"input": 300, "output": 1500}


def estimate_cost_cents(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimated cost in cents for one call."""
    pricing = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return (
        prompt_tokens / 1_000_000 * pricing["input"]
        + completion_tokens / 1_000_000 * pricing["output"]
    )


@dataclass
class RunUsage:
    """Usage for one review run against a single model."""

    model: str
    call_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_cents: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def record(self, prompt_tokens: int, completion_tokens: int) -> None:
        """Record one completed call."""
        self.call_count += 1
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        self.estimated_cost_cents += estimate_cost_cents(
            self.model, prompt_tokens, completion_tokens
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "model": self.model,
            "callCount": self.call_count,
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "estimatedCostCents": round(self.estimated_cost_cents, 4),
        }
