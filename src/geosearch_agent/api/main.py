"""FastAPI entrypoint for chat, direct search and trace endpoints."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from geosearch_agent.agent.orchestrator import ToolOrchestrator
from geosearch_agent.agent.registry import ToolProvider, ToolRegistry
from geosearch_agent.agent.tools import SEARCH_TOOL_NAME, SearchMapInput, register_search_tool
from geosearch_agent.config import AgentConfig, OverpassConfig, SimilarityConfig
from geosearch_agent.errors import GeoSearchError, ModelProtocolError
from geosearch_agent.obs.tracing import TraceStore
from geosearch_agent.search.overpass import OverpassClient
from geosearch_agent.similarity.engine import BoundingBoxCache, SimilaritySearchEngine
from geosearch_agent.similarity.store import DuckDBEmbeddingStore

logger = logging.getLogger(__name__)


def _create_llm(config: AgentConfig) -> Any:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=config.model,
        temperature=0,
        timeout=config.model_timeout_seconds,
        max_tokens=config.max_tokens,
        max_retries=0,
    )


def _create_registry() -> tuple[ToolRegistry, list[Callable[[], None]]]:
    """Build the search tool from the environment.

    Returns the registry plus the close callbacks for the HTTP client and
    the database it owns.
    """

    overpass = OverpassClient(
        OverpassConfig(endpoint=os.getenv("OVERPASS_URL", OverpassConfig().endpoint))
    )
    store = DuckDBEmbeddingStore(os.getenv("DUCKDB_PATH", "embeddings.db"))
    engine = SimilaritySearchEngine(
        store, bbox_cache=BoundingBoxCache(), config=SimilarityConfig()
    )
    registry = ToolRegistry()
    register_search_tool(registry, overpass, engine)
    return registry, [overpass.close, store.close]


class ChatRequest(BaseModel):
    query: str = Field(min_length=1)
    session_id: str | None = None


class SessionManager:
    """Keeps one orchestrator per chat session; sessions never share history."""

    def __init__(
        self,
        *,
        llm: Any,
        tool_provider: ToolProvider,
        trace_store: TraceStore,
        config: AgentConfig,
    ) -> None:
        self._llm = llm
        self._tool_provider = tool_provider
        self._trace_store = trace_store
        self._config = config
        self._sessions: dict[str, ToolOrchestrator] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str | None) -> ToolOrchestrator:
        with self._lock:
            if session_id is not None and session_id in self._sessions:
                return self._sessions[session_id]
            orchestrator = ToolOrchestrator(
                llm=self._llm,
                tool_provider=self._tool_provider,
                trace_store=self._trace_store,
                config=self._config,
                session_id=session_id,
            )
            self._sessions[orchestrator.session_id] = orchestrator
            return orchestrator

    def drop(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def create_app(
    *,
    llm: Any | None = None,
    registry: ToolRegistry | None = None,
    trace_store: TraceStore | None = None,
    config: AgentConfig | None = None,
) -> FastAPI:
    """Build the API; missing collaborators are created from the environment."""

    agent_config = config or AgentConfig(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    closers: list[Callable[[], None]] = []
    if registry is not None:
        tools = registry
    else:
        tools, closers = _create_registry()
    traces = trace_store or TraceStore()
    model = llm if llm is not None else _create_llm(agent_config)
    sessions = SessionManager(
        llm=model, tool_provider=tools, trace_store=traces, config=agent_config
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            for close in closers:
                close()
            logger.info("Closed %d search resources", len(closers))

    app = FastAPI(title="Geosearch Agent", version="0.1.0", lifespan=lifespan)

    def _chat(query: str, session_id: str | None) -> dict[str, Any]:
        orchestrator = sessions.get(session_id)
        result = orchestrator.ask(query)
        return {"session_id": orchestrator.session_id, **result}

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": model is not None,
            "tools": [tool.name for tool in tools.list_tools()],
            "sessions": len(sessions),
        }

    @app.post("/chat")
    def chat(request: ChatRequest) -> dict[str, Any]:
        if model is None:
            raise HTTPException(status_code=503, detail="Language model is not configured")
        try:
            return _chat(request.query, request.session_id)
        except ModelProtocolError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        except GeoSearchError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.websocket("/ws/chat")
    async def chat_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        session_id = websocket.query_params.get("session_id")
        owned: set[str] = set()
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                    if not isinstance(message, dict):
                        raise ValueError("expected a JSON object")
                except ValueError as exc:
                    await websocket.send_json({"error": f"Invalid message: {exc}"})
                    continue

                query = str(message.get("query", "")).strip()
                if model is None or not query:
                    detail = "Language model is not configured" if model is None else "Empty query"
                    await websocket.send_json({"error": detail})
                    continue

                created = session_id is None or session_id not in sessions
                orchestrator = sessions.get(session_id)
                session_id = orchestrator.session_id
                if created:
                    owned.add(session_id)
                try:
                    result = await run_in_threadpool(orchestrator.ask, query)
                except GeoSearchError as exc:
                    await websocket.send_json({"error": str(exc), "session_id": session_id})
                    continue
                except Exception as exc:  # noqa: BLE001 - the client always gets an answer or an error
                    logger.exception("WebSocket chat failed for session %s", session_id)
                    await websocket.send_json({"error": str(exc), "session_id": session_id})
                    continue
                await websocket.send_json(
                    {
                        "response": result["answer"],
                        "structuredContent": result["features"],
                        "degraded": result["degraded"],
                        "errors": result["errors"],
                        "session_id": session_id,
                    }
                )
        except WebSocketDisconnect:
            logger.info("WebSocket session %s closed", session_id)
        finally:
            for owned_id in owned:
                sessions.drop(owned_id)

    @app.delete("/sessions/{session_id}")
    def drop_session(session_id: str) -> dict[str, Any]:
        if not sessions.drop(session_id):
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return {"deleted": session_id}

    @app.post("/search")
    def search(request: SearchMapInput) -> dict[str, Any]:
        result = tools.call_tool(SEARCH_TOOL_NAME, request.model_dump(exclude_none=True))
        if result.is_error:
            raise HTTPException(status_code=502, detail=result.text_content)
        return result.structured_content

    @app.get("/traces")
    def list_traces(limit: int = 20) -> dict[str, Any]:
        return {"items": [asdict(record) for record in traces.list_recent(limit=limit)]}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = traces.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return traces.summary()

    return app
