"""Multi-round tool-calling loop between a chat model and the map search tool."""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Literal

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from geosearch_agent.agent.registry import ToolCallResult, ToolProvider
from geosearch_agent.config import AgentConfig
from geosearch_agent.errors import ModelProtocolError, UpstreamUnavailableError
from geosearch_agent.obs.tracing import Timer, TraceStore, estimate_token_count
from geosearch_agent.types import ConversationTurn, ToolTrace

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are a geospatial assistant that answers questions about places and the
aerial imagery covering them.

Rules:
1) Use the map search tool to find features; never invent names, coordinates or chip ids.
2) Prefer OSM tags for kinds of features and names for specific places.
3) For each feature report its name, coordinates and the most similar imagery chips
   with their similarity scores.
4) If the tool reports an error or a degraded result, tell the user which part failed.

Please output your response in nicely formatted markdown.
""".strip()


class OrchestratorState(enum.Enum):
    AWAITING_USER_INPUT = "awaiting_user_input"
    MODEL_THINKING = "model_thinking"
    TOOL_DISPATCH = "tool_dispatch"
    TOOL_RESULT_FOLDED = "tool_result_folded"
    FINAL_ANSWER = "final_answer"


@dataclass(slots=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(slots=True)
class TextReply:
    text: str
    kind: Literal["text"] = "text"


@dataclass(slots=True)
class ToolUseReply:
    text: str
    calls: list[ToolCallRequest]
    kind: Literal["tool_use"] = "tool_use"


ModelReply = TextReply | ToolUseReply


@dataclass(slots=True)
class _TurnState:
    features: list[dict[str, Any]]
    errors: list[str]
    tool_traces: list[ToolTrace]
    degraded: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


class ToolOrchestrator:
    """Owns one session's history and drives the model until it answers.

    Each `ask` appends a user turn, then alternates model calls and tool
    dispatch until the model replies with text only. Tool calls within one
    model turn run sequentially in request order, so the history handed to
    the next model call is deterministic.
    """

    def __init__(
        self,
        *,
        llm: Any,
        tool_provider: ToolProvider,
        trace_store: TraceStore | None = None,
        config: AgentConfig | None = None,
        session_id: str | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        self.llm = llm
        self.tool_provider = tool_provider
        self.trace_store = trace_store or TraceStore()
        self.config = config or AgentConfig()
        self.session_id = session_id or str(uuid.uuid4())
        self.system_prompt = system_prompt
        self.state = OrchestratorState.AWAITING_USER_INPUT

        self._history: list[BaseMessage] = []
        self._bound_model: Any | None = None
        self._lock = threading.Lock()

    @property
    def history(self) -> list[ConversationTurn]:
        return [_to_turn(message) for message in self._history]

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self.state = OrchestratorState.AWAITING_USER_INPUT

    def ask(self, query: str) -> dict[str, Any]:
        """Run one full user turn.

        Returns:
            The final answer with the feature payload accumulated from all
            tool calls, tool errors, a `degraded` flag, the trace id and
            latency figures.

        Raises:
            UpstreamUnavailableError: the model call itself failed.
            ModelProtocolError: the model reply could not be interpreted or
                the loop exceeded `max_iterations`.
        """

        with self._lock:
            turn = _TurnState(features=[], errors=[], tool_traces=[])
            self._history.append(HumanMessage(content=query, id=_new_id()))
            try:
                with Timer() as timer:
                    answer = self._run_loop(turn)
            except Exception:
                self.state = OrchestratorState.AWAITING_USER_INPUT
                raise

            degraded = turn.degraded or bool(turn.errors)
            record = self.trace_store.create_record(
                session_id=self.session_id,
                question=query,
                answer=answer,
                tool_traces=turn.tool_traces,
                feature_count=len(turn.features),
                degraded=degraded,
                errors=turn.errors,
                input_tokens=turn.input_tokens or estimate_token_count(query),
                output_tokens=turn.output_tokens or estimate_token_count(answer),
                latency_ms=timer.elapsed_ms,
            )

        return {
            "answer": answer,
            "features": turn.features,
            "degraded": degraded,
            "errors": turn.errors,
            "tool_calls": len(turn.tool_traces),
            "trace_id": record.trace_id,
            "latency_ms": record.latency_ms,
            "latency_target_met": record.latency_ms
            <= (self.config.target_latency_seconds * 1000.0),
        }

    def _run_loop(self, turn: _TurnState) -> str:
        for _ in range(self.config.max_iterations):
            self.state = OrchestratorState.MODEL_THINKING
            message = self._call_model()
            _record_usage(message, turn)
            reply = classify_reply(message)
            self._history.append(message)

            if reply.kind == "text":
                self.state = OrchestratorState.FINAL_ANSWER
                return reply.text

            self.state = OrchestratorState.TOOL_DISPATCH
            for call in reply.calls:
                result = self._dispatch(call, turn)
                self._history.append(
                    ToolMessage(
                        content=result.text_content,
                        tool_call_id=call.id,
                        name=call.name,
                        status="error" if result.is_error else "success",
                        id=_new_id(),
                    )
                )
                self._fold(call, result, turn)
            self.state = OrchestratorState.TOOL_RESULT_FOLDED

        raise ModelProtocolError(
            f"Model did not produce a final answer within {self.config.max_iterations} rounds"
        )

    def _call_model(self) -> AIMessage:
        if self._bound_model is None:
            catalog = [tool.as_openai_tool() for tool in self.tool_provider.list_tools()]
            self._bound_model = self.llm.bind_tools(catalog)
        messages = [SystemMessage(content=self.system_prompt), *self._history]
        try:
            return self._bound_model.invoke(messages)
        except Exception as exc:  # noqa: BLE001 - provider SDKs raise their own types
            logger.error("Language model call failed: %s", exc)
            raise UpstreamUnavailableError(f"Language model call failed: {exc}") from exc

    def _dispatch(self, call: ToolCallRequest, turn: _TurnState) -> ToolCallResult:
        logger.info("Calling tool %s with args %s", call.name, call.arguments)
        start = perf_counter()
        try:
            result = self.tool_provider.call_tool(call.name, call.arguments)
        except Exception as exc:  # noqa: BLE001 - folded into history for the model
            logger.exception("Tool %s raised", call.name)
            result = ToolCallResult.error(f"Tool {call.name} failed: {exc}")

        turn.tool_traces.append(
            ToolTrace(
                name=call.name,
                input_payload=call.arguments,
                output_preview=result.text_content[:320],
                latency_ms=(perf_counter() - start) * 1000.0,
                is_error=result.is_error,
            )
        )
        return result

    @staticmethod
    def _fold(call: ToolCallRequest, result: ToolCallResult, turn: _TurnState) -> None:
        if result.is_error:
            turn.errors.append(f"{call.name}: {result.text_content}")
            return
        features = result.structured_content.get("features") or []
        turn.features.extend(features)
        if result.structured_content.get("degraded"):
            turn.degraded = True


def classify_reply(message: Any) -> ModelReply:
    """Turn a raw chat-model message into a `TextReply` or `ToolUseReply`."""

    if not isinstance(message, AIMessage):
        raise ModelProtocolError(
            f"Expected an AI message from the model, got {type(message).__name__}"
        )
    if message.invalid_tool_calls:
        names = ", ".join(str(call.get("name")) for call in message.invalid_tool_calls)
        raise ModelProtocolError(f"Model produced malformed tool calls: {names}")

    text = message_text(message.content)
    if message.tool_calls:
        calls: list[ToolCallRequest] = []
        for call in message.tool_calls:
            if not call.get("id"):
                raise ModelProtocolError(f"Tool call {call.get('name')} has no id")
            calls.append(
                ToolCallRequest(
                    id=str(call["id"]),
                    name=call["name"],
                    arguments=dict(call.get("args") or {}),
                )
            )
        return ToolUseReply(text=text, calls=calls)

    if not text.strip():
        raise ModelProtocolError("Model returned neither text nor tool calls")
    return TextReply(text=text)


def message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(content)
    parts: list[str] = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "\n".join(part for part in parts if part).strip()


def _record_usage(message: Any, turn: _TurnState) -> None:
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return
    turn.input_tokens += int(usage.get("input_tokens", 0))
    turn.output_tokens += int(usage.get("output_tokens", 0))


def _to_turn(message: BaseMessage) -> ConversationTurn:
    if isinstance(message, HumanMessage):
        role = "user"
    elif isinstance(message, ToolMessage):
        role = "tool-result"
    else:
        role = "assistant"
    return ConversationTurn(role=role, content=message.content, id=str(message.id or ""))


def _new_id() -> str:
    return uuid.uuid4().hex
