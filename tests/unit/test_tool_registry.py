import pytest
from pydantic import BaseModel, Field, ValidationError

from geosearch_agent.agent.registry import ToolCallResult, ToolRegistry, ToolSpec
from geosearch_agent.errors import UpstreamUnavailableError


class EchoInput(BaseModel):
    value: int = Field(ge=1)


def _echo_spec() -> ToolSpec:
    def _handler(data: EchoInput) -> ToolCallResult:
        return ToolCallResult(text_content=str(data.value), structured_content={"value": data.value})

    return ToolSpec(
        name="echo",
        description="echo positive int",
        args_schema=EchoInput,
        handler=_handler,
    )


def test_tool_registry_validation() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    assert registry.execute("echo", {"value": 3}).text_content == "3"

    with pytest.raises(ValidationError):
        registry.execute("echo", {"value": 0})


def test_duplicate_tool_registration_rejected() -> None:
    registry = ToolRegistry()
    spec = _echo_spec()

    registry.register(spec)
    with pytest.raises(ValueError):
        registry.register(spec)


def test_list_tools_exposes_name_description_and_schema() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    [descriptor] = registry.list_tools()

    assert descriptor.name == "echo"
    assert descriptor.input_schema["properties"]["value"]["minimum"] == 1
    assert descriptor.as_openai_tool()["function"]["name"] == "echo"


def test_call_tool_folds_failures_into_error_results() -> None:
    registry = ToolRegistry()
    registry.register(_echo_spec())

    def _down(data: EchoInput) -> ToolCallResult:
        raise UpstreamUnavailableError("Overpass API returned HTTP 504")

    registry.register(
        ToolSpec(name="down", description="always down", args_schema=EchoInput, handler=_down)
    )

    assert registry.call_tool("echo", {"value": 2}).structured_content == {"value": 2}
    assert registry.call_tool("missing", {}).is_error
    assert registry.call_tool("echo", {"value": -1}).is_error

    failed = registry.call_tool("down", {"value": 1})
    assert failed.is_error
    assert "UpstreamUnavailableError" in failed.text_content
    assert failed.structured_content["error"] == failed.text_content


def test_key_error_inside_handler_is_not_reported_as_unknown_tool() -> None:
    registry = ToolRegistry()

    def _lookup(data: EchoInput) -> ToolCallResult:
        raise KeyError("chips_id")

    registry.register(
        ToolSpec(name="lookup", description="missing column", args_schema=EchoInput, handler=_lookup)
    )

    result = registry.call_tool("lookup", {"value": 1})

    assert result.is_error
    assert "Unknown tool" not in result.text_content
    assert "KeyError" in result.text_content
    assert "chips_id" in result.text_content


def test_unexpected_handler_exception_is_folded_into_error_result() -> None:
    registry = ToolRegistry()
    observed = []
    registry.set_observer(observed.append)

    def _broken(data: EchoInput) -> ToolCallResult:
        raise RuntimeError("Connection Error: database file is locked")

    registry.register(
        ToolSpec(name="broken", description="raises", args_schema=EchoInput, handler=_broken)
    )

    result = registry.call_tool("broken", {"value": 1})

    assert result.is_error
    assert "RuntimeError" in result.text_content
    assert "database file is locked" in result.text_content
    assert [trace.is_error for trace in observed] == [True]
