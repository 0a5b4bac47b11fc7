"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, NamedTuple


class BoundingBox(NamedTuple):
    """Geographic extent as (south, west, north, east) in WGS84 degrees."""

    south: float
    west: float
    north: float
    east: float


@dataclass(frozen=True, slots=True)
class SearchFilter:
    """Structured map-feature query built once per tool invocation.

    `tags` is kept as an ordered tuple of pairs so the compiled query is
    deterministic for a given input mapping.
    """

    name_pattern: str | None = None
    tags: tuple[tuple[str, str], ...] = ()
    bbox: BoundingBox | None = None
    limit: int = 5

    @classmethod
    def build(
        cls,
        *,
        name_pattern: str | None = None,
        tags: dict[str, str] | None = None,
        bbox: BoundingBox | tuple[float, float, float, float] | None = None,
        limit: int = 5,
    ) -> "SearchFilter":
        return cls(
            name_pattern=name_pattern or None,
            tags=tuple((tags or {}).items()),
            bbox=BoundingBox(*bbox) if bbox is not None else None,
            limit=limit,
        )


@dataclass(slots=True)
class FeaturePoint:
    """A map feature reduced to one representative point."""

    index: int
    longitude: float
    latitude: float
    name: str | None = None
    raw_tags: dict[str, Any] = field(default_factory=dict)
    osm_type: str | None = None
    osm_id: int | None = None
    coordinates_missing: bool = False


@dataclass(slots=True)
class EmbeddingMatch:
    """One ranked imagery chip neighbor of a query point."""

    chip_id: str
    similarity: float
    geometry_wkt: str
    captured_at: str


@dataclass(slots=True)
class FeatureResult:
    """A feature with its ranked embedding matches.

    `error` is set when the similarity query for this feature failed; the
    match list is then empty but the feature is still reported.
    """

    feature: FeaturePoint
    matches: list[EmbeddingMatch] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class ConversationTurn:
    """One entry of a session's message history."""

    role: Literal["user", "assistant", "tool-result"]
    content: Any
    id: str


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    is_error: bool = False
