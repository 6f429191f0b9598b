"""Calculator tool: evaluates arithmetic expressions without ``eval``."""

import ast
import operator
from typing import Any

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class CalculatorTool:
    """Evaluate +, -, *, /, //, %, ** and parentheses over numbers."""

    def __init__(self, max_exponent: int = 100):
        self.max_exponent = max_exponent

    @property
    def name(self) -> str:
        return "calculator"

    @property
    def description(self) -> str:
        return (
            "Evaluate an arithmetic expression such as '(2 + 3) * 4 / 5'. "
            "Supports + - * / // % ** and parentheses."
        )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "expression": {
                    "type": "string",
                    "description": "Arithmetic expression to evaluate",
                },
            },
            "required": ["expression"],
        }

    async def execute(self, expression: str, **kwargs: Any) -> dict[str, Any]:
        """
        Raises:
            ZeroDivisionError: On division by zero
            ValueError: On unsupported syntax
        """
        tree = ast.parse(expression, mode="eval")
        return {"success": True, "output": self._evaluate(tree.body)}

    def _evaluate(self, node: ast.AST) -> int | float:
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return node.value
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            left = self._evaluate(node.left)
            right = self._evaluate(node.right)
            if isinstance(node.op, ast.Pow) and abs(right) > self.max_exponent:
                raise ValueError(f"Exponent {right} exceeds limit {self.max_exponent}")
            return _BINARY_OPS[type(node.op)](left, right)
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](self._evaluate(node.operand))
        raise ValueError(f"Unsupported expression element: {type(node).__name__}")
