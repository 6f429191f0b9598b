"""
Context Builder

Assembles the input of one model call from the conversation, the resolved
tools and the budget state. Near the end of the budget it appends the tool
limit directive as a regular user message, so the directive becomes part of
the durable transcript seen by every later call and by observers.
"""

import json
from typing import Any

from toolrelay.core.domain.budget import BudgetEnforcer
from toolrelay.core.domain.models import (
    Message,
    ModelContext,
    TextContent,
    ToolDefinition,
    ToolInteractions,
)
from toolrelay.core.prompts.loop_prompts import (
    APPROVAL_MARKER,
    APPROVAL_SECTION,
    BUDGET_LINE,
    DEFAULT_SYSTEM_PROMPT,
    OUTPUT_FORMAT_SECTION,
    TOOL_LIMIT_DIRECTIVE,
)


def has_limit_directive(messages: tuple[Message, ...]) -> bool:
    return any(
        isinstance(message.content, TextContent)
        and message.content.text == TOOL_LIMIT_DIRECTIVE
        for message in messages
    )


class ContextBuilder:
    def __init__(
        self,
        system_prompt: str | None = None,
        approval_tool_name: str | None = None,
        output_schema: dict[str, Any] | None = None,
    ):
        """
        Args:
            system_prompt: Base system prompt (DEFAULT_SYSTEM_PROMPT if None)
            approval_tool_name: Approval tool named in the restricted-tools
                section; the section is omitted when None
            output_schema: JSON schema of the final answer, if any
        """
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.approval_tool_name = approval_tool_name
        self.output_schema = output_schema

    def build(
        self,
        prior_messages: tuple[Message, ...],
        tools: dict[str, ToolDefinition],
        interactions: ToolInteractions,
    ) -> ModelContext:
        """
        Build the context for the next model call.

        Args:
            prior_messages: Conversation so far
            tools: Resolved tool definitions visible to the model
            interactions: Budget state before the call

        Returns:
            ModelContext whose ``messages`` may end with the tool limit
            directive; callers persist these messages as the new history.
        """
        messages = prior_messages
        if BudgetEnforcer.check(interactions).final_call and not has_limit_directive(messages):
            messages = messages + (Message.user_text(TOOL_LIMIT_DIRECTIVE),)

        return ModelContext(
            system_prompt=self._system_prompt(interactions),
            messages=messages,
            tools=tuple(tools.values()),
        )

    def _system_prompt(self, interactions: ToolInteractions) -> str:
        sections = [self.system_prompt]
        if self.approval_tool_name:
            sections.append(
                APPROVAL_SECTION.format(
                    marker=APPROVAL_MARKER, approval_tool=self.approval_tool_name
                )
            )
        if self.output_schema is not None:
            sections.append(
                OUTPUT_FORMAT_SECTION.format(schema=json.dumps(self.output_schema, indent=2))
            )
        sections.append(BUDGET_LINE.format(current=interactions.current, max=interactions.max))
        return "\n\n".join(sections)
