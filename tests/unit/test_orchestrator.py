import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from geosearch_agent.agent.orchestrator import (
    OrchestratorState,
    ToolOrchestrator,
    classify_reply,
    message_text,
)
from geosearch_agent.agent.registry import ToolCallResult, ToolDescriptor
from geosearch_agent.config import AgentConfig
from geosearch_agent.errors import ModelProtocolError, UpstreamUnavailableError


class _FakeProvider:
    def __init__(self, results: dict[str, ToolCallResult] | None = None) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, dict]] = []

    def list_tools(self) -> list[ToolDescriptor]:
        return [ToolDescriptor("search_map_features", "search", {"type": "object", "properties": {}})]

    def call_tool(self, name: str, arguments: dict) -> ToolCallResult:
        self.calls.append((name, arguments))
        if name == "explode":
            raise RuntimeError("connection reset")
        return self.results.get(name) or ToolCallResult.error(f"Unknown tool: {name}")


def _tool_call(call_id: str, name: str = "search_map_features", **args) -> dict:
    return {"name": name, "args": args, "id": call_id, "type": "tool_call"}


def _features(*names: str) -> ToolCallResult:
    output = {"features": [{"name": n} for n in names], "degraded": False}
    return ToolCallResult(text_content=str(output), structured_content=output)


def test_classify_text_and_tool_use() -> None:
    assert classify_reply(AIMessage(content="All done.")).kind == "text"

    reply = classify_reply(
        AIMessage(content="Let me look.", tool_calls=[_tool_call("call-1", name="x", q=1)])
    )
    assert reply.kind == "tool_use"
    assert reply.text == "Let me look."
    assert reply.calls[0].id == "call-1"
    assert reply.calls[0].arguments == {"q": 1}


@pytest.mark.parametrize(
    "message",
    [
        HumanMessage(content="not from the model"),
        AIMessage(content=""),
        AIMessage(
            content="",
            invalid_tool_calls=[
                {"name": "x", "args": "{bad json", "id": "c1", "error": None, "type": "invalid_tool_call"}
            ],
        ),
    ],
)
def test_classify_rejects_malformed_replies(message) -> None:
    with pytest.raises(ModelProtocolError):
        classify_reply(message)


def test_message_text_keeps_only_text_blocks() -> None:
    content = [
        {"type": "text", "text": "Found 2 marinas."},
        {"type": "tool_use", "id": "t1", "name": "search", "input": {}},
        "See map.",
    ]

    assert message_text(content) == "Found 2 marinas.\nSee map."


def test_text_only_reply_finishes_without_tools(scripted_model) -> None:
    model = scripted_model([AIMessage(content="Hello! Ask me about places.")])
    provider = _FakeProvider()
    orchestrator = ToolOrchestrator(llm=model, tool_provider=provider)

    result = orchestrator.ask("hi")

    assert result["answer"] == "Hello! Ask me about places."
    assert result["features"] == []
    assert result["degraded"] is False
    assert provider.calls == []
    assert orchestrator.state is OrchestratorState.FINAL_ANSWER
    assert [turn.role for turn in orchestrator.history] == ["user", "assistant"]
    assert model.bound_tools[0]["function"]["name"] == "search_map_features"


def test_tool_results_are_folded_in_request_order(scripted_model) -> None:
    model = scripted_model(
        [
            AIMessage(content="", tool_calls=[_tool_call("c1", tags={"a": "1"}), _tool_call("c2", name="other")]),
            AIMessage(content="", tool_calls=[_tool_call("c3", name="search_map_features")]),
            AIMessage(content="Here you go."),
        ]
    )
    provider = _FakeProvider(
        {"search_map_features": _features("A"), "other": _features("B", "C")}
    )
    orchestrator = ToolOrchestrator(llm=model, tool_provider=provider)

    result = orchestrator.ask("find things")

    assert [name for name, _ in provider.calls] == ["search_map_features", "other", "search_map_features"]
    assert [f["name"] for f in result["features"]] == ["A", "B", "C", "A"]
    assert result["tool_calls"] == 3

    third_call_messages = model.calls[2]
    tool_messages = [m for m in third_call_messages if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["c1", "c2", "c3"]
    assert [turn.role for turn in orchestrator.history] == [
        "user", "assistant", "tool-result", "tool-result", "assistant", "tool-result", "assistant",
    ]


def test_tool_errors_are_folded_and_reported(scripted_model) -> None:
    model = scripted_model(
        [
            AIMessage(content="", tool_calls=[_tool_call("c1", name="explode"), _tool_call("c2", name="nope")]),
            AIMessage(content="The search service is unavailable right now."),
        ]
    )
    orchestrator = ToolOrchestrator(llm=model, tool_provider=_FakeProvider())

    result = orchestrator.ask("find marinas")

    assert result["degraded"] is True
    assert len(result["errors"]) == 2
    assert "connection reset" in result["errors"][0]
    tool_messages = [m for m in model.calls[1] if isinstance(m, ToolMessage)]
    assert [m.status for m in tool_messages] == ["error", "error"]


def test_degraded_tool_payload_marks_result(scripted_model) -> None:
    output = {"features": [{"name": "X", "error": "similarity query failed"}], "degraded": True}
    provider = _FakeProvider(
        {"search_map_features": ToolCallResult(text_content="{}", structured_content=output)}
    )
    model = scripted_model([AIMessage(content="", tool_calls=[_tool_call("c1")]), AIMessage(content="ok")])

    result = ToolOrchestrator(llm=model, tool_provider=provider).ask("q")

    assert result["degraded"] is True
    assert result["errors"] == []


def test_model_failure_aborts_turn(scripted_model) -> None:
    model = scripted_model([TimeoutError("read timeout")])
    orchestrator = ToolOrchestrator(llm=model, tool_provider=_FakeProvider())

    with pytest.raises(UpstreamUnavailableError):
        orchestrator.ask("hello")
    assert orchestrator.state is OrchestratorState.AWAITING_USER_INPUT


def test_loop_is_bounded_by_max_iterations(scripted_model) -> None:
    replies = [AIMessage(content="", tool_calls=[_tool_call(f"c{i}")]) for i in range(3)]
    provider = _FakeProvider({"search_map_features": _features("A")})
    orchestrator = ToolOrchestrator(
        llm=scripted_model(replies),
        tool_provider=provider,
        config=AgentConfig(max_iterations=3),
    )

    with pytest.raises(ModelProtocolError):
        orchestrator.ask("loop forever")
    assert len(provider.calls) == 3


def test_history_is_kept_across_turns_and_reset(scripted_model) -> None:
    model = scripted_model([AIMessage(content="first"), AIMessage(content="second")])
    orchestrator = ToolOrchestrator(llm=model, tool_provider=_FakeProvider())

    orchestrator.ask("one")
    orchestrator.ask("two")

    assert len(model.calls[1]) == 4  # system + user + assistant + user
    assert len(orchestrator.history) == 4
    orchestrator.reset()
    assert orchestrator.history == []


def test_turn_is_traced(scripted_model) -> None:
    model = scripted_model([AIMessage(content="", tool_calls=[_tool_call("c1")]), AIMessage(content="done")])
    provider = _FakeProvider({"search_map_features": _features("A", "B")})
    orchestrator = ToolOrchestrator(llm=model, tool_provider=provider, session_id="s-1")

    result = orchestrator.ask("q")
    record = orchestrator.trace_store.get(result["trace_id"])

    assert record.session_id == "s-1"
    assert record.feature_count == 2
    assert [trace.name for trace in record.tool_traces] == ["search_map_features"]
