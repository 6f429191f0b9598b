"""
Loop Prompts - fixed texts injected by the execution loop

This module holds every piece of text the loop itself writes into the
conversation or the system prompt:
- DEFAULT_SYSTEM_PROMPT: Base prompt when a profile does not provide one
- TOOL_LIMIT_DIRECTIVE: Durable "answer now" message near the budget limit
- APPROVAL_MARKER / APPROVAL_SECTION: Marking of restricted tools
- OUTPUT_FORMAT_SECTION: Structured output instructions
- Error texts folded into tool results and validation feedback

Usage:
    from toolrelay.core.prompts.loop_prompts import TOOL_LIMIT_DIRECTIVE
"""

DEFAULT_SYSTEM_PROMPT = """
You are a helpful agent. Use the available tools when they are needed to
answer the user's request, and answer directly when they are not.
Prefer calling several independent tools in one turn over calling them one
by one.
""".strip()

TOOL_LIMIT_DIRECTIVE = (
    "You must answer the original question using all the data available to you. "
    "You have run out of tool call budget. No more tool calls are allowed any more. "
    "If you cannot answer the query well, then mention briefly what you have done, "
    "what you can answer based on the collected data, what data is missing and why "
    "you cannot answer any further."
)

APPROVAL_MARKER = "[[REQUIRES APPROVAL]]"

APPROVAL_SECTION = """
## RESTRICTED TOOLS
Tools whose description starts with {marker} must not be called directly.
Call `{approval_tool}` first with the list of restricted tools you need and a
short message explaining why. Once approval is granted the marker disappears
and you may call the tool. If approval is denied, do not request it again in
this conversation.
""".strip()

OUTPUT_FORMAT_SECTION = """
## OUTPUT FORMAT
Your final answer must be a single JSON document that validates against
this JSON schema. Do not wrap it in markdown fences.

{schema}
""".strip()

BUDGET_LINE = "Tool interactions used: {current} of {max}"

UNKNOWN_TOOL_ERROR = (
    "The tool {name} does not exist. Please check if you are using the correct tool "
    "and don't call this tool again until you have confirmed the existence of the "
    "correct tool."
)

APPROVAL_REQUIRED_ERROR = (
    "The tool {name} requires approval before it can be used. "
    "Request approval with the {approval_tool} tool first."
)

INVALID_TOOL_INPUT_ERROR = (
    "The input for tool {name} is invalid and the tool was not called. "
    "Fix the following problems and call it again:\n{violations}"
)

OUTPUT_VALIDATION_FEEDBACK = (
    "Your response failed validation and cannot be accepted. Review the error below, "
    "then provide a corrected response that strictly adheres to the required format "
    "and constraints.\n\nValidation error: {error}"
)

EMPTY_RESPONSE_ERROR = "The response was empty. Provide an answer or use a tool."
