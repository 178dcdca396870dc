"""
LLM Provider Protocol

Capabilities and the thinking module talk to a language model through this
protocol. A completion never raises for provider errors; it reports them in
the returned dict:

    {"success": True, "content": "...", "usage": {"total_tokens": 42}}
    {"success": False, "error": "rate limited", "error_type": "RateLimitError"}
"""

from typing import Any, Protocol

from cardsmith.core.domain.models import ModelConfig


class LLMProviderProtocol(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        model_config: ModelConfig | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        ...
