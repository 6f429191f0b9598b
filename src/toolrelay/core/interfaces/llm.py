"""
LLM Provider Protocol

The pluggable boundary between the loop and a language model. The loop
assumes nothing about the model beyond this contract.
"""

from typing import Any, Protocol

from toolrelay.core.domain.models import ModelContext, ModelResponse


class LLMProviderProtocol(Protocol):
    """
    Model invocation contract.

    Implementations return either tool requests (``ResponseKind.TOOL_CALL``)
    or final content (``ResponseKind.TEXT`` / ``ResponseKind.JSON``), never
    both, together with token usage. JSON content is validated by the loop,
    not by the provider.
    """

    async def invoke(
        self,
        context: ModelContext,
        output_schema: dict[str, Any] | None = None,
    ) -> ModelResponse:
        """
        Run one model call.

        Args:
            context: System prompt, conversation messages and visible tools
            output_schema: JSON schema the final answer should follow, if any

        Returns:
            ModelResponse with tool requests or content plus usage

        Raises:
            ModelInvocationError: If the model cannot be reached after retries
        """
        ...
