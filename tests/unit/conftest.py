"""Shared fixtures for unit tests."""

from unittest.mock import AsyncMock

import pytest

from toolrelay.core.domain.models import ModelResponse, ResponseKind, ToolRequest, Usage
from toolrelay.infrastructure.tools.native.function_tool import FunctionTool


@pytest.fixture
def tool_call():
    """Build a TOOL_CALL ModelResponse from (id, name, input) triples."""

    def build(*calls, prompt_tokens=10, completion_tokens=5):
        return ModelResponse(
            kind=ResponseKind.TOOL_CALL,
            tool_requests=tuple(
                ToolRequest(id=call_id, name=name, input_data=input_data)
                for call_id, name, input_data in calls
            ),
            usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        )

    return build


@pytest.fixture
def text_response():
    """Build a TEXT ModelResponse."""

    def build(content, prompt_tokens=10, completion_tokens=5):
        return ModelResponse(
            kind=ResponseKind.TEXT,
            content=content,
            usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        )

    return build


@pytest.fixture
def mock_llm_provider():
    """Mock LLMProviderProtocol; tests script ``invoke.side_effect``."""
    return AsyncMock()


@pytest.fixture
def add_tool():
    """Local tool adding two integers."""

    def add(a: int, b: int) -> int:
        """Add two integers."""
        return a + b

    return FunctionTool(add)
