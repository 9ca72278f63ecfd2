"""
Token counting and usage estimation.

Request cost is estimated from fixed average token counts rather than
metered usage.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class TokenEstimates:
    """Average token counts of a typical request."""
    system_prompt: int = 200
    user_query: int = 20
    response: int = 300

    def __post_init__(self):
        """Validate estimates are non-negative."""
        for name in ("system_prompt", "user_query", "response"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    def typical_usage(self) -> TokenUsage:
        """Usage of one typical request: prompt and query in, response out."""
        return TokenUsage(
            prompt_tokens=self.system_prompt + self.user_query,
            completion_tokens=self.response,
        )
