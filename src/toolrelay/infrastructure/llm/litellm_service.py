"""
LiteLLM Service - model invocation adapter.

Implements LLMProviderProtocol on top of ``litellm.acompletion`` with
model aliases, per-model parameters and a retry policy loaded from a YAML
configuration file (``configs/llm_config.yaml`` by default).
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import litellm
import structlog
import yaml

from toolrelay.core.domain.errors import ModelInvocationError
from toolrelay.core.domain.models import (
    ModelContext,
    ModelResponse,
    ResponseKind,
    ToolRequest,
    Usage,
)
from toolrelay.infrastructure.tools.tool_converter import (
    messages_to_openai_format,
    tools_to_openai_format,
)

ALLOWED_PARAMS = ("temperature", "top_p", "max_tokens", "frequency_penalty", "presence_penalty")


@dataclass
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    backoff_multiplier: float = 2.0
    timeout: int = 30
    retry_on_errors: list[str] = field(default_factory=list)


class LiteLLMService:
    """
    Model adapter returning either tool requests or final content.

    Tool calls whose arguments are not a JSON object are dropped with a
    warning; if nothing usable remains the message content is returned.
    """

    def __init__(
        self,
        config_path: str = "configs/llm_config.yaml",
        model: str | None = None,
        max_output_chars: int = 20000,
    ):
        """
        Initialize LiteLLMService with configuration.

        Args:
            config_path: Path to YAML configuration file
            model: Model alias to use instead of the configured default
            max_output_chars: Truncation limit for tool outputs sent to the model

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        self.logger = structlog.get_logger().bind(component="litellm_service")
        self.max_output_chars = max_output_chars
        self._load_config(config_path)
        self.model_alias = model or self.default_model
        self._check_api_key()

        self.logger.info(
            "llm_service_initialized",
            model_alias=self.model_alias,
            model_aliases=list(self.models.keys()),
        )

    def _load_config(self, config_path: str) -> None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"LLM config not found: {config_path}")

        with open(config_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)

        if config is None:
            raise ValueError(f"Config file is empty or invalid: {config_path}")

        self.default_model = config.get("default_model", "main")
        self.models = config.get("models", {})
        self.model_params = config.get("model_params", {})
        self.default_params = config.get("default_params", {})

        if not self.models:
            raise ValueError("Config must define at least one model in 'models' section")

        retry_config = config.get("retry_policy", {})
        self.retry_policy = RetryPolicy(
            max_attempts=retry_config.get("max_attempts", 3),
            backoff_multiplier=retry_config.get("backoff_multiplier", 2.0),
            timeout=retry_config.get("timeout", 30),
            retry_on_errors=retry_config.get("retry_on_errors", []),
        )
        self.provider_config = config.get("providers", {})

    def _check_api_key(self) -> None:
        api_key_env = self.provider_config.get("openai", {}).get("api_key_env", "OPENAI_API_KEY")
        if not os.getenv(api_key_env):
            self.logger.warning(
                "api_key_missing",
                env_var=api_key_env,
                hint="Set environment variable for API access",
            )

    def _resolve_model(self) -> str:
        return self.models.get(self.model_alias, self.model_alias)

    def _get_model_parameters(self, model: str) -> dict[str, Any]:
        """Parameters for an exact model, a model family prefix, or the defaults."""
        if model in self.model_params:
            params = self.model_params[model]
        else:
            params = next(
                (p for key, p in self.model_params.items() if model.startswith(key)),
                self.default_params,
            )
        return {k: v for k, v in params.items() if k in ALLOWED_PARAMS}

    async def invoke(
        self,
        context: ModelContext,
        output_schema: dict[str, Any] | None = None,
    ) -> ModelResponse:
        """
        Perform one completion with retry logic.

        Raises:
            ModelInvocationError: If every attempt failed or a non-retryable
                error occurred
        """
        actual_model = self._resolve_model()
        params = self._get_model_parameters(actual_model)
        messages = messages_to_openai_format(
            context.system_prompt, context.messages, self.max_output_chars
        )
        if context.tools:
            params["tools"] = tools_to_openai_format(context.tools)
            params["tool_choice"] = "auto"
        if output_schema is not None:
            params["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "final_output", "schema": output_schema},
            }

        for attempt in range(self.retry_policy.max_attempts):
            try:
                start_time = time.time()
                self.logger.info(
                    "llm_completion_started",
                    model=actual_model,
                    attempt=attempt + 1,
                    message_count=len(messages),
                    tool_count=len(context.tools),
                )

                response = await litellm.acompletion(
                    model=actual_model,
                    messages=messages,
                    timeout=self.retry_policy.timeout,
                    **params,
                )

                result = self._to_model_response(response, expects_json=output_schema is not None)
                self.logger.info(
                    "llm_completion_success",
                    model=actual_model,
                    kind=result.kind.value,
                    tokens=result.usage.units,
                    latency_ms=int((time.time() - start_time) * 1000),
                )
                return result

            except Exception as e:
                error_type = type(e).__name__
                error_msg = str(e)

                should_retry = attempt < self.retry_policy.max_attempts - 1 and any(
                    err_type in error_type or err_type in error_msg
                    for err_type in self.retry_policy.retry_on_errors
                )
                if not should_retry:
                    self.logger.error(
                        "llm_completion_failed",
                        model=actual_model,
                        error_type=error_type,
                        error=error_msg[:200],
                        attempts=attempt + 1,
                    )
                    raise ModelInvocationError(
                        f"{error_type} from {actual_model}: {error_msg}"
                    ) from e

                backoff_time = self.retry_policy.backoff_multiplier**attempt
                self.logger.warning(
                    "llm_completion_retry",
                    model=actual_model,
                    error_type=error_type,
                    attempt=attempt + 1,
                    backoff_seconds=backoff_time,
                )
                await asyncio.sleep(backoff_time)

        raise ModelInvocationError(f"Max retries exceeded for {actual_model}")

    def _to_model_response(self, response: Any, expects_json: bool) -> ModelResponse:
        message = response.choices[0].message
        usage = _extract_usage(getattr(response, "usage", None))

        requests = []
        for call in getattr(message, "tool_calls", None) or []:
            raw_args = call.function.arguments or "{}"
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError:
                arguments = None
            if not isinstance(arguments, dict):
                self.logger.warning(
                    "tool_args_parse_failed",
                    tool=call.function.name,
                    raw_args=raw_args[:200],
                )
                continue
            requests.append(
                ToolRequest(id=call.id, name=call.function.name, input_data=arguments)
            )

        if requests:
            return ModelResponse(
                kind=ResponseKind.TOOL_CALL, tool_requests=tuple(requests), usage=usage
            )

        return ModelResponse(
            kind=ResponseKind.JSON if expects_json else ResponseKind.TEXT,
            content=message.content or "",
            usage=usage,
        )


def _extract_usage(usage: Any) -> Usage:
    if usage is None:
        return Usage()
    if isinstance(usage, dict):
        return Usage(
            prompt_tokens=usage.get("prompt_tokens", 0) or 0,
            completion_tokens=usage.get("completion_tokens", 0) or 0,
        )
    return Usage(
        prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )
