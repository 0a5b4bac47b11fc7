"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from geosearch_agent.errors import GeoSearchError
from geosearch_agent.types import ToolTrace

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolDescriptor:
    """Catalog entry handed to the language model."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def as_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass(slots=True)
class ToolCallResult:
    """Outcome of one tool call: text for the model, structure for the caller."""

    text_content: str
    structured_content: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False

    @classmethod
    def error(cls, message: str) -> "ToolCallResult":
        return cls(text_content=message, structured_content={"error": message}, is_error=True)


class ToolProvider(Protocol):
    """The seam between the orchestrator and whatever hosts the tools."""

    def list_tools(self) -> list[ToolDescriptor]:
        """Return the declared tool catalog."""

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        """Invoke a tool; failures are reported in the result, not raised."""


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: Callable[[BaseModel], ToolCallResult]
    tags: list[str] = Field(default_factory=list)

    def invoke(self, payload: dict[str, Any]) -> ToolCallResult:
        data = self.args_schema.model_validate(payload)
        return self.handler(data)

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            input_schema=self.args_schema.model_json_schema(),
        )


class ToolRegistry:
    """Stores tool specs and serves them through the `ToolProvider` seam."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._observer: Callable[[ToolTrace], None] | None = None

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    def list_tools(self) -> list[ToolDescriptor]:
        return [spec.descriptor() for spec in self._tools.values()]

    def execute(self, name: str, payload: dict[str, Any]) -> ToolCallResult:
        """Run a tool and let validation and search errors propagate."""
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")
        return self._execute_spec(spec, payload)

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        """Run a tool, folding caller-visible failures into an error result."""
        start = perf_counter()
        spec = self._tools.get(name)
        if spec is None:
            result = ToolCallResult.error(f"Unknown tool: {name}")
            self._notify(name, arguments, result, 0.0)
            return result

        try:
            return self._execute_spec(spec, arguments)
        except ValidationError as exc:
            result = ToolCallResult.error(f"Invalid arguments for {name}: {exc}")
        except GeoSearchError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            result = ToolCallResult.error(f"{type(exc).__name__}: {exc}")
        except Exception as exc:  # noqa: BLE001 - reported in the result, never raised
            logger.exception("Tool %s raised", name)
            result = ToolCallResult.error(f"Tool {name} failed: {type(exc).__name__}: {exc}")

        self._notify(name, arguments, result, (perf_counter() - start) * 1000.0)
        return result

    def _execute_spec(self, spec: ToolSpec, payload: dict[str, Any]) -> ToolCallResult:
        start = perf_counter()
        output = spec.invoke(payload)
        self._notify(spec.name, payload, output, (perf_counter() - start) * 1000.0)
        return output

    def _notify(
        self,
        name: str,
        payload: dict[str, Any],
        result: ToolCallResult,
        latency_ms: float,
    ) -> None:
        if self._observer is None:
            return
        self._observer(
            ToolTrace(
                name=name,
                input_payload=json.loads(json.dumps(payload, default=str)),
                output_preview=result.text_content[:320],
                latency_ms=latency_ms,
                is_error=result.is_error,
            )
        )
