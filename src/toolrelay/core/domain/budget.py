"""
Budget Enforcer

Counts model calls against the configured maximum. The count grows once per
model call, never per tool call.
"""

from dataclasses import dataclass, replace

from toolrelay.core.domain.models import ToolInteractions

DEFAULT_MAX_TOOL_INTERACTIONS = 5


@dataclass(frozen=True)
class BudgetStatus:
    """
    Attributes:
        exhausted: No further model call is allowed
        final_call: The next model call is the last one allowed
    """

    exhausted: bool
    final_call: bool


class BudgetEnforcer:
    @staticmethod
    def check(interactions: ToolInteractions) -> BudgetStatus:
        return BudgetStatus(
            exhausted=interactions.current >= interactions.max,
            final_call=interactions.current >= interactions.max - 1,
        )

    @staticmethod
    def consume(interactions: ToolInteractions) -> ToolInteractions:
        return replace(interactions, current=interactions.current + 1)
