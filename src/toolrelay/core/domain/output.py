"""
Output Validation

JSON-schema checks shared by the dispatcher (tool input) and the loop (final
answer). Violations are reported as readable lines such as
``$.items.0: 'x' is not of type 'integer'`` so they can be fed back to the
model verbatim.
"""

import json
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft7Validator

from toolrelay.core.domain.models import ModelResponse
from toolrelay.core.prompts.loop_prompts import EMPTY_RESPONSE_ERROR


def schema_violations(schema: dict[str, Any], data: Any) -> list[str]:
    """Return one line per schema violation, ordered by path."""
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda item: list(item.path))
    violations = []
    for error in errors:
        path = ".".join(str(segment) for segment in error.path)
        violations.append(f"$.{path}: {error.message}" if path else f"$: {error.message}")
    return violations


@dataclass(frozen=True)
class OutputValidation:
    valid: bool
    output: Any = None
    error: str | None = None


class OutputValidator:
    """
    Validates the final content of a model response.

    Without a schema any non-empty text is accepted as-is. With a schema the
    content must parse as JSON and satisfy the schema; the parsed document is
    the output.
    """

    def __init__(self, output_schema: dict[str, Any] | None = None):
        if output_schema is not None:
            Draft7Validator.check_schema(output_schema)
        self.output_schema = output_schema

    def validate(self, response: ModelResponse) -> OutputValidation:
        content = (response.content or "").strip()
        if not content:
            return OutputValidation(valid=False, error=EMPTY_RESPONSE_ERROR)

        if self.output_schema is None:
            return OutputValidation(valid=True, output=response.content)

        try:
            document = json.loads(_strip_code_fence(content))
        except json.JSONDecodeError as e:
            return OutputValidation(valid=False, error=f"Response is not valid JSON: {e}")

        violations = schema_violations(self.output_schema, document)
        if violations:
            return OutputValidation(valid=False, error="\n".join(violations))
        return OutputValidation(valid=True, output=document)


def _strip_code_fence(content: str) -> str:
    if content.startswith("```") and content.endswith("```"):
        body = content[3:-3]
        if body.startswith("json"):
            body = body[4:]
        return body.strip()
    return content
