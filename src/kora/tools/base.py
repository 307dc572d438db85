"""Base tool interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


@dataclass
class ToolResult:
    """Result from tool execution."""

    success: bool
    output: str
    error: str | None = None


class Tool(ABC):
    """Base interface for tools the assistant can call mid-turn."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Tool description for LLM."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool with given arguments."""
        ...

    def get_schema(self) -> dict[str, Any]:
        """Get tool schema for LLM function calling."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate_args(self, args: dict[str, Any]) -> tuple[bool, str | None]:
        """Validate arguments against schema. Returns (valid, error_message)."""
        required = self.parameters.get("required", [])
        properties = self.parameters.get("properties", {})

        for name in required:
            if name not in args:
                return False, f"Missing required argument: {name}"

        for key, value in args.items():
            spec = properties.get(key)
            if spec is None:
                continue

            expected = _JSON_TYPES.get(spec.get("type", ""))
            # bool is an int subclass; reject it for numeric fields
            if expected and (
                not isinstance(value, expected)
                or (isinstance(value, bool) and bool not in expected)
            ):
                return False, f"Argument '{key}' must be of type {spec['type']}"

            allowed = spec.get("enum")
            if allowed is not None and value not in allowed:
                return False, f"Argument '{key}' must be one of: {', '.join(map(str, allowed))}"

        return True, None
