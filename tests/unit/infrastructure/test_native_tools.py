"""Unit tests for the native local tools."""

import pytest

from toolrelay.infrastructure.tools.native.calculator_tool import CalculatorTool
from toolrelay.infrastructure.tools.native.function_tool import FunctionTool


class TestCalculatorTool:
    @pytest.fixture
    def calculator(self):
        return CalculatorTool(max_exponent=10)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "expression,expected",
        [("(2 + 3) * 4", 20), ("7 // 2", 3), ("-3 ** 2", -9), ("10 / 4", 2.5), ("7 % 4", 3)],
    )
    async def test_evaluates(self, calculator, expression, expected):
        """Test supported arithmetic."""
        assert await calculator.execute(expression=expression) == {
            "success": True,
            "output": expected,
        }

    @pytest.mark.asyncio
    async def test_division_by_zero_raises(self, calculator):
        """Test division by zero propagates to the dispatcher."""
        with pytest.raises(ZeroDivisionError):
            await calculator.execute(expression="1 / 0")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expression", ["__import__('os')", "a + 1", "2 ** 100"])
    async def test_rejects_unsupported(self, calculator, expression):
        """Test names, calls and huge exponents are refused."""
        with pytest.raises(ValueError):
            await calculator.execute(expression=expression)

    def test_schema(self, calculator):
        """Test the expression parameter is required."""
        assert calculator.parameters_schema["required"] == ["expression"]


class TestFunctionTool:
    def test_schema_from_signature(self):
        """Test parameter types and required names come from the signature."""

        def lookup(city: str, days: int = 1, metric: bool = True):
            """Look up a forecast."""

        tool = FunctionTool(lookup)

        assert tool.name == "lookup"
        assert tool.description == "Look up a forecast."
        assert tool.parameters_schema["required"] == ["city"]
        assert tool.parameters_schema["properties"]["days"]["type"] == "integer"
        assert tool.parameters_schema["properties"]["metric"]["type"] == "boolean"

    @pytest.mark.asyncio
    async def test_async_function(self):
        """Test coroutine functions are awaited."""

        async def double(x: int) -> int:
            return x * 2

        tool = FunctionTool(double, name="twice", priority=3)

        assert await tool.execute(x=4) == {"success": True, "output": 8}
        assert tool.name == "twice"
        assert tool.priority == 3

    @pytest.mark.asyncio
    async def test_sync_function(self, add_tool):
        """Test plain functions run and their value is wrapped."""
        assert await add_tool.execute(a=1, b=2) == {"success": True, "output": 3}
