"""Configuration models for the geosearch agent."""

from __future__ import annotations

from pydantic import BaseModel, Field

from geosearch_agent.types import BoundingBox

# Greater San Francisco area including the bay.
SF_BBOX_FALLBACK = BoundingBox(south=37.7, west=-122.6, north=37.85, east=-122.3)


class OverpassConfig(BaseModel):
    """Configures the OpenStreetMap Overpass API client."""

    endpoint: str = "https://overpass-api.de/api/interpreter"
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    server_timeout_seconds: int = Field(default=25, ge=1)
    user_agent: str = "geosearch-agent/0.1"


class SimilarityConfig(BaseModel):
    """Configures the batched embedding similarity search."""

    top_k: int = Field(default=5, ge=1, le=50)
    max_concurrency: int = Field(default=8, ge=1, le=64)
    point_timeout_seconds: float = Field(default=10.0, gt=0.0)
    fallback_bbox: BoundingBox = SF_BBOX_FALLBACK


class AgentConfig(BaseModel):
    """Configures the tool-calling loop and latency targets."""

    max_iterations: int = Field(default=6, ge=1)
    model: str = "gpt-4o-mini"
    model_timeout_seconds: float = Field(default=60.0, gt=0.0)
    max_tokens: int = Field(default=1000, ge=1)
    target_latency_seconds: float = Field(default=20.0, gt=0.0)
