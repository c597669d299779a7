"""Base class for agent tools."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict


@dataclass(frozen=True, slots=True)
class ToolExecutionContext:
    """Per-call metadata handed to a tool. No other ambient state is shared."""
    trace_id: str
    user_id: str
    channel_id: str


class NoArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Tool(ABC):
    """
    Abstract base class for agent tools.

    Tools declare a unique name, a description for the model, and a pydantic
    model describing their arguments. Arguments reach ``execute`` already
    validated.
    """

    args_model: ClassVar[type[BaseModel]] = NoArgs

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""
        pass

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return schema

    @abstractmethod
    async def execute(self, args: BaseModel, ctx: ToolExecutionContext) -> Any:
        """
        Execute the tool with validated arguments.

        Args:
            args: Instance of ``args_model``.
            ctx: Trace, user and channel identifiers for this call.

        Returns:
            Any JSON-serializable result.
        """
        pass

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
