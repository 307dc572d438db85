"""Tests for tool registry."""

import pytest

from kora.tools import Tool, ToolRegistry, ToolResult


class EchoTool(Tool):
    """Simple echo tool for testing."""

    @property
    def name(self) -> str:
        return "echo"

    @property
    def description(self) -> str:
        return "Echoes the input message"

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "message": {"type": "string", "description": "Message to echo"},
                "times": {"type": "integer"},
                "mode": {"type": "string", "enum": ["plain", "loud"]},
            },
            "required": ["message"],
        }

    async def execute(self, message: str, times: int = 1, mode: str = "plain") -> ToolResult:
        text = " ".join([message] * times)
        return ToolResult(success=True, output=text.upper() if mode == "loud" else text)


class BrokenTool(EchoTool):
    """Tool that always raises."""

    @property
    def name(self) -> str:
        return "broken"

    async def execute(self, **kwargs) -> ToolResult:
        raise RuntimeError("kaboom")


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([EchoTool()])


def test_register_duplicate_raises(registry: ToolRegistry) -> None:
    with pytest.raises(ValueError, match="already registered"):
        registry.register(EchoTool())


def test_get_and_unregister(registry: ToolRegistry) -> None:
    assert registry.get("echo") is not None
    registry.unregister("echo")
    assert registry.get("echo") is None
    assert registry.list_tools() == []


def test_schema_shape(registry: ToolRegistry) -> None:
    [schema] = registry.get_tools_schema()
    assert schema["type"] == "function"
    assert schema["function"]["name"] == "echo"
    assert schema["function"]["parameters"]["required"] == ["message"]


@pytest.mark.asyncio
async def test_dispatch(registry: ToolRegistry) -> None:
    result = await registry.dispatch("echo", {"message": "hi", "times": 2, "mode": "loud"})
    assert result.success
    assert result.output == "HI HI"


@pytest.mark.asyncio
async def test_dispatch_unknown_tool(registry: ToolRegistry) -> None:
    result = await registry.dispatch("nope", {})
    assert not result.success
    assert "Unknown tool" in result.error


@pytest.mark.parametrize(
    "args, error",
    [
        ({}, "Missing required argument: message"),
        ({"message": 3}, "must be of type string"),
        ({"message": "x", "times": True}, "must be of type integer"),
        ({"message": "x", "mode": "quiet"}, "must be one of: plain, loud"),
    ],
)
@pytest.mark.asyncio
async def test_dispatch_validates(registry: ToolRegistry, args: dict, error: str) -> None:
    result = await registry.dispatch("echo", args)
    assert not result.success
    assert error in result.error


@pytest.mark.asyncio
async def test_dispatch_catches_exceptions() -> None:
    registry = ToolRegistry([BrokenTool()])
    result = await registry.dispatch("broken", {"message": "x"})
    assert not result.success
    assert "kaboom" in result.error
