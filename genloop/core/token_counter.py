"""
Token counting and usage tracking.

Reads metered units from Gemini ``usageMetadata`` blocks, falling back to
fixed per-operation estimates when a response does not report usage.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.
    
    Contains exact token counts reported by the provider, or the estimate
    used in their place.
    """
    prompt_tokens: int
    completion_tokens: int
    estimated: bool = False
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def usage_from_metadata(
    body: Dict[str, Any],
    fallback: Optional[TokenUsage] = None
) -> TokenUsage:
    """Extract token usage from a generateContent response body.
    
    Args:
        body: Parsed JSON response
        fallback: Usage to report when the body has no usage block
        
    Returns:
        Reported usage, or ``fallback`` marked as estimated
    """
    metadata = body.get("usageMetadata") if isinstance(body, dict) else None
    if not isinstance(metadata, dict) or "promptTokenCount" not in metadata:
        if fallback is None:
            return TokenUsage(prompt_tokens=0, completion_tokens=0, estimated=True)
        return TokenUsage(
            prompt_tokens=fallback.prompt_tokens,
            completion_tokens=fallback.completion_tokens,
            estimated=True
        )
    return TokenUsage(
        prompt_tokens=int(metadata.get("promptTokenCount") or 0),
        completion_tokens=int(metadata.get("candidatesTokenCount") or 0)
    )
