"""
LLM Service for centralized LLM interactions.

Every capability reaches the language model through this service. The
session's ``ModelConfig`` decides provider, model and credentials per call;
an optional YAML file supplies the retry policy, per-model parameters and
logging preferences.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import litellm
import structlog
import yaml

from cardsmith.core.domain.models import ModelConfig, ProviderKind

DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"

_ALLOWED_PARAMS = {
    "temperature",
    "top_p",
    "max_tokens",
    "frequency_penalty",
    "presence_penalty",
    "response_format",
}


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    timeout: int = 60
    retry_on_errors: list[str] = field(
        default_factory=lambda: ["RateLimitError", "Timeout", "APIConnectionError"]
    )


class LLMService:
    """
    Provider-aware completion service over litellm.

    ``openai`` models are called by name with the session's API key (or the
    key from the configured environment variable); ``ollama`` models are
    routed as ``ollama/<model>`` to the configured or local base URL.
    """

    def __init__(
        self,
        config_path: str | None = None,
        default_config: ModelConfig | None = None,
    ):
        """
        Initialize LLMService.

        Args:
            config_path: Optional path to a YAML configuration file
            default_config: Model configuration used when a call passes none

        Raises:
            FileNotFoundError: If config_path is given but doesn't exist
            ValueError: If the config file is empty or invalid
        """
        self.logger = structlog.get_logger().bind(component="llm_service")
        self.default_config = default_config or ModelConfig()
        self.retry_policy = RetryPolicy()
        self.model_params: dict[str, dict[str, Any]] = {}
        self.default_params: dict[str, Any] = {}
        self.logging_config: dict[str, Any] = {}
        self.provider_config: dict[str, Any] = {}
        if config_path:
            self._load_config(config_path)

        self.logger.info(
            "llm_service_initialized",
            default_provider=self.default_config.provider.value,
            default_model=self.default_config.model_name,
        )

    def _load_config(self, config_path: str) -> None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"LLM config not found: {config_path}")

        with open(config_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)

        if not isinstance(config, dict):
            raise ValueError(f"Config file is empty or invalid: {config_path}")

        self.model_params = config.get("model_params", {}) or {}
        self.default_params = config.get("default_params", {}) or {}
        self.logging_config = config.get("logging", {}) or {}
        self.provider_config = config.get("providers", {}) or {}

        retry_config = config.get("retry_policy", {}) or {}
        defaults = RetryPolicy()
        self.retry_policy = RetryPolicy(
            max_attempts=retry_config.get("max_attempts", defaults.max_attempts),
            backoff_multiplier=retry_config.get("backoff_multiplier", defaults.backoff_multiplier),
            timeout=retry_config.get("timeout", defaults.timeout),
            retry_on_errors=retry_config.get("retry_on_errors", defaults.retry_on_errors),
        )

    def _resolve_model(self, config: ModelConfig) -> tuple[str, dict[str, Any]]:
        """Return the litellm model string and connection kwargs for a config.

        Raises:
            ValueError: If an OpenAI model has no API key available
        """
        if config.provider == ProviderKind.OLLAMA:
            ollama = self.provider_config.get("ollama", {})
            base_url = config.base_url or ollama.get("base_url") or DEFAULT_OLLAMA_BASE_URL
            return f"ollama/{config.model_name}", {"api_base": base_url}

        openai_config = self.provider_config.get("openai", {})
        api_key = config.api_key or os.getenv(openai_config.get("api_key_env", "OPENAI_API_KEY"))
        if not api_key:
            raise ValueError("OpenAI API key not configured")
        connection: dict[str, Any] = {"api_key": api_key}
        if config.base_url:
            connection["api_base"] = config.base_url
        return config.model_name, connection

    def _build_params(self, config: ModelConfig, overrides: dict[str, Any]) -> dict[str, Any]:
        params: dict[str, Any] = dict(self.default_params)
        params.update(self.model_params.get(config.model_name, {}))
        params["temperature"] = config.temperature
        if config.max_tokens:
            params["max_tokens"] = config.max_tokens
        params.update(overrides)
        dropped = sorted(k for k in params if k not in _ALLOWED_PARAMS)
        if dropped and self.logging_config.get("log_parameter_mapping", False):
            self.logger.debug("llm_parameters_dropped", params=dropped)
        return {k: v for k, v in params.items() if k in _ALLOWED_PARAMS}

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model_config: ModelConfig | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Perform LLM completion with retry logic.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model_config: Provider, model and credentials for this call
            **kwargs: Parameter overrides (temperature, response_format, ...)

        Returns:
            Dict with:
            - success: bool
            - content: str (if successful)
            - usage: Dict with token counts
            - error: str (if failed)
        """
        config = model_config or self.default_config
        try:
            model, connection = self._resolve_model(config)
        except ValueError as e:
            self.logger.error("llm_configuration_invalid", error=str(e))
            return {"success": False, "error": str(e), "error_type": "ConfigurationError"}

        params = self._build_params(config, kwargs)

        for attempt in range(self.retry_policy.max_attempts):
            try:
                start_time = time.time()
                self.logger.info(
                    "llm_completion_started",
                    model=model,
                    attempt=attempt + 1,
                    message_count=len(messages),
                )

                response = await litellm.acompletion(
                    model=model,
                    messages=messages,
                    timeout=self.retry_policy.timeout,
                    **connection,
                    **params,
                )

                content = response.choices[0].message.content
                usage = getattr(response, "usage", {}) or {}
                if isinstance(usage, dict):
                    token_stats = usage
                else:
                    token_stats = {
                        "total_tokens": getattr(usage, "total_tokens", 0),
                        "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                        "completion_tokens": getattr(usage, "completion_tokens", 0),
                    }

                latency_ms = int((time.time() - start_time) * 1000)
                if self.logging_config.get("log_token_usage", True):
                    self.logger.info(
                        "llm_completion_success",
                        model=model,
                        tokens=token_stats.get("total_tokens", 0),
                        latency_ms=latency_ms,
                    )

                return {
                    "success": True,
                    "content": content,
                    "usage": token_stats,
                    "model": model,
                    "latency_ms": latency_ms,
                }

            except Exception as e:
                error_type = type(e).__name__
                error_msg = str(e)

                should_retry = attempt < self.retry_policy.max_attempts - 1 and any(
                    err_type in error_type or err_type in error_msg
                    for err_type in self.retry_policy.retry_on_errors
                )

                if should_retry:
                    backoff_time = self.retry_policy.backoff_multiplier**attempt
                    self.logger.warning(
                        "llm_completion_retry",
                        model=model,
                        error_type=error_type,
                        attempt=attempt + 1,
                        backoff_seconds=backoff_time,
                    )
                    await asyncio.sleep(backoff_time)
                else:
                    self.logger.error(
                        "llm_completion_failed",
                        model=model,
                        error_type=error_type,
                        error=error_msg[:200],
                        attempts=attempt + 1,
                    )
                    return {
                        "success": False,
                        "error": error_msg,
                        "error_type": error_type,
                        "model": model,
                    }

        return {"success": False, "error": "Max retries exceeded", "model": model}

    async def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        model_config: ModelConfig | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Single-prompt convenience wrapper around ``complete``."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        result = await self.complete(messages, model_config=model_config, **kwargs)
        if result.get("success"):
            result["generated_text"] = result["content"]
        return result
