"""Built-in map search tool exposed to the orchestrator."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

from pydantic import BaseModel, Field

from geosearch_agent.agent.registry import ToolCallResult, ToolRegistry, ToolSpec
from geosearch_agent.search.overpass import OverpassClient
from geosearch_agent.search.query_compiler import build_filter_clauses
from geosearch_agent.similarity.engine import SimilaritySearchEngine
from geosearch_agent.types import FeatureResult, SearchFilter

SEARCH_TOOL_NAME = "search_map_features"

SEARCH_TOOL_DESCRIPTION = """
Search OpenStreetMap data for geographic features and find visually similar
imagery chips for each feature.

Features are matched by name and/or OSM tags. Tags are more reliable when
looking for a kind of feature. Supported tag examples:
- Marinas: {"leisure": "marina"} or {"amenity": "marina"}
- Airports/airfields: {"aeroway": "aerodrome"}
- Parking lots: {"amenity": "parking"} or {"parking": "*"} (wildcard)
- Parks: {"leisure": "park"}; schools: {"amenity": "school"}
- Water bodies: {"natural": "water"}; rivers: {"waterway": "river"}

Name and tags can be combined. Nodes, ways and relations are searched, so both
point locations and areas are returned. When no bbox is given the extent of the
imagery corpus is used.

For each feature the tool returns up to 5 imagery chips ranked by cosine
similarity to the chip under the feature. Each chip covers a 160x160 meter
area and carries a chips_id that can be used to fetch its thumbnail.
Features with "error" set, or a response with "degraded": true, mean part of
the search failed; say so in the answer.
""".strip()


class SearchMapInput(BaseModel):
    name: str | None = Field(
        default=None, description="Search by place name (case-insensitive regex match)"
    )
    tags: dict[str, str] | None = Field(
        default=None,
        description='OSM tags as key-value pairs, e.g. {"leisure": "marina"}. Use "*" as value for wildcard matches.',
    )
    bbox: list[float] | None = Field(
        default=None,
        min_length=4,
        max_length=4,
        description="Optional search area as [south, west, north, east]",
    )
    limit: int = Field(default=5, ge=1, le=50)


def register_search_tool(
    registry: ToolRegistry,
    search_client: OverpassClient,
    engine: SimilaritySearchEngine,
    *,
    top_k: int | None = None,
) -> None:
    """Register `search_map_features`: Overpass search + chip similarity."""

    def _search(input_data: SearchMapInput) -> ToolCallResult:
        search_filter = SearchFilter.build(
            name_pattern=input_data.name,
            tags=input_data.tags,
            bbox=input_data.bbox,
            limit=input_data.limit,
        )
        build_filter_clauses(search_filter)
        if search_filter.bbox is None:
            search_filter = replace(search_filter, bbox=engine.get_bounding_box())
        points = search_client.search(search_filter)
        results = engine.batch_find_similar(points, top_k=top_k)

        output = {
            "features": [feature_payload(result) for result in results],
            "degraded": any(
                result.error or result.feature.coordinates_missing for result in results
            ),
        }
        return ToolCallResult(text_content=json.dumps(output), structured_content=output)

    registry.register(
        ToolSpec(
            name=SEARCH_TOOL_NAME,
            description=SEARCH_TOOL_DESCRIPTION,
            args_schema=SearchMapInput,
            handler=_search,
            tags=["osm", "similarity"],
        )
    )


def feature_payload(result: FeatureResult) -> dict[str, Any]:
    feature = result.feature
    return {
        "name": feature.name or "",
        "lon": feature.longitude,
        "lat": feature.latitude,
        "osm_type": feature.osm_type,
        "osm_id": feature.osm_id,
        "coordinates_missing": feature.coordinates_missing,
        "error": result.error,
        "similarEmbeddings": [
            {
                "chips_id": match.chip_id,
                "similarity": match.similarity,
                "geom_wkt": match.geometry_wkt,
                "datetime": match.captured_at,
            }
            for match in result.matches
        ],
    }
