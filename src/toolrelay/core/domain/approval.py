"""
Approval Gate

Decides which restricted tools the model may call directly. A tool marked
``requires_approval`` is unlocked once the approval cache holds an
affirmative decision for (agent identity, tool name). Until then its
description carries APPROVAL_MARKER so the model requests approval through
the approval tool instead of calling it.

Decisions arrive as results of the approval service tool and are written
back with ``record`` before the results enter the conversation.
"""

from dataclasses import replace
from typing import Any

import structlog

from toolrelay.core.domain.models import ApprovalDecision, ToolDefinition
from toolrelay.core.domain.registry import ServiceToolSpec
from toolrelay.core.interfaces.approval import ApprovalCacheProtocol
from toolrelay.core.prompts.loop_prompts import APPROVAL_MARKER

APPROVAL_TOOL_NAME = "request_tool_approval"
APPROVAL_TOOL_PRIORITY = 100


def approval_tool_spec(
    name: str = APPROVAL_TOOL_NAME, priority: int = APPROVAL_TOOL_PRIORITY
) -> ServiceToolSpec:
    """
    Service tool through which the model asks a human to unlock tools.

    The expected result payload is
    ``{"approvals": [{"tool": str, "value": bool, "comments": str?}]}``.
    """
    return ServiceToolSpec(
        name=name,
        description=(
            "Request approval from the user before using restricted tools. "
            "Explain what you need to do with each tool and why."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": "Message to the user explaining why the tools are needed",
                },
                "tools": {
                    "type": "array",
                    "items": {"type": "string"},
                    "minItems": 1,
                    "description": "Names of the restricted tools to unlock",
                },
            },
            "required": ["message", "tools"],
        },
        priority=priority,
    )


def parse_approval_result(result_data: Any) -> list[ApprovalDecision]:
    """
    Extract decisions from an approval tool result.

    Malformed entries are skipped; a payload without an ``approvals`` list
    yields no decisions.
    """
    if not isinstance(result_data, dict):
        return []
    approvals = result_data.get("approvals")
    if not isinstance(approvals, list):
        return []

    decisions = []
    for item in approvals:
        if not isinstance(item, dict) or not isinstance(item.get("tool"), str):
            continue
        decisions.append(
            ApprovalDecision(
                tool_name=item["tool"],
                approved=bool(item.get("value", False)),
                comment=item.get("comments"),
            )
        )
    return decisions


class ApprovalGate:
    """Resolves approval state of tools against a pluggable cache."""

    def __init__(self, agent_identity: str, cache: ApprovalCacheProtocol | None = None):
        """
        Args:
            agent_identity: Key under which this agent's decisions are cached
            cache: Approval cache; without one restricted tools stay locked
        """
        self.agent_identity = agent_identity
        self.cache = cache
        self.logger = structlog.get_logger().bind(
            component="approval_gate", agent=agent_identity
        )

    async def resolve(self, registry: dict[str, ToolDefinition]) -> dict[str, ToolDefinition]:
        """
        Return the registry with approval flags resolved.

        Approved tools lose ``requires_approval``; still-restricted tools get
        APPROVAL_MARKER prepended to their description. The input registry is
        not modified.
        """
        restricted = [name for name, tool in registry.items() if tool.requires_approval]
        if not restricted:
            return dict(registry)

        decisions: dict[str, ApprovalDecision] = {}
        if self.cache is not None:
            decisions = await self.cache.get_batched(self.agent_identity, restricted)

        resolved = dict(registry)
        for name in restricted:
            decision = decisions.get(name)
            tool = registry[name]
            if decision is not None and decision.approved:
                resolved[name] = replace(tool, requires_approval=False)
            else:
                resolved[name] = replace(
                    tool, description=f"{APPROVAL_MARKER} {tool.description}"
                )

        self.logger.debug(
            "approvals_resolved",
            restricted=restricted,
            approved=[n for n in restricted if not resolved[n].requires_approval],
        )
        return resolved

    async def record(self, decisions: list[ApprovalDecision]) -> None:
        """Write decisions to the cache. No-op without a cache or decisions."""
        if not decisions:
            return
        if self.cache is None:
            self.logger.warning(
                "approval_decisions_dropped",
                reason="no approval cache configured",
                tools=[d.tool_name for d in decisions],
            )
            return
        await self.cache.set_batched(self.agent_identity, decisions)
        self.logger.info(
            "approval_decisions_recorded",
            decisions={d.tool_name: d.approved for d in decisions},
        )
