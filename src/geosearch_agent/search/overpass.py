"""OpenStreetMap feature search via the Overpass API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from geosearch_agent.config import OverpassConfig
from geosearch_agent.errors import UpstreamUnavailableError
from geosearch_agent.search.query_compiler import compile_query
from geosearch_agent.types import FeaturePoint, SearchFilter

logger = logging.getLogger(__name__)


class OverpassClient:
    """Runs compiled filters against Overpass and normalizes the elements.

    The client never retries; transport failures surface as
    `UpstreamUnavailableError` so the caller decides what to do.
    """

    def __init__(
        self,
        config: OverpassConfig | None = None,
        *,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.config = config or OverpassConfig()
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(
            timeout=self.config.timeout_seconds,
            headers={"User-Agent": self.config.user_agent},
        )

    def __enter__(self) -> "OverpassClient":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def search(self, search_filter: SearchFilter) -> list[FeaturePoint]:
        query = compile_query(
            search_filter, server_timeout=self.config.server_timeout_seconds
        )
        elements = self._fetch_elements(query)

        if not elements and search_filter.bbox is not None:
            logger.warning(
                "Overpass returned no elements for bbox %s; check tags/name or the area",
                tuple(search_filter.bbox),
            )

        return [
            normalize_element(index, element)
            for index, element in enumerate(elements[: search_filter.limit])
        ]

    def _fetch_elements(self, query: str) -> list[dict[str, Any]]:
        try:
            response = self._http.get(
                self.config.endpoint,
                params={"data": query},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamUnavailableError(
                f"Overpass API returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Overpass API request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailableError("Overpass API returned a non-JSON body") from exc

        elements = payload.get("elements") if isinstance(payload, dict) else None
        if not isinstance(elements, list):
            raise UpstreamUnavailableError("Overpass API response has no elements array")

        logger.info("Overpass API returned %d elements", len(elements))
        return elements


def normalize_element(index: int, element: dict[str, Any]) -> FeaturePoint:
    """Reduce a raw Overpass element to a `FeaturePoint`.

    Nodes carry `lon`/`lat`; ways and relations queried with `out center`
    carry `center.lon`/`center.lat`. Missing coordinates default to 0.0 and
    are flagged with `coordinates_missing` instead of dropping the element.
    """

    center = element.get("center") or {}
    lon = element.get("lon", center.get("lon"))
    lat = element.get("lat", center.get("lat"))
    missing = lon is None or lat is None
    if missing:
        logger.warning(
            "Overpass element %s/%s has no coordinates; defaulting to 0.0",
            element.get("type"),
            element.get("id"),
        )

    tags = element.get("tags") or {}
    return FeaturePoint(
        index=index,
        longitude=float(lon) if lon is not None else 0.0,
        latitude=float(lat) if lat is not None else 0.0,
        name=tags.get("name"),
        raw_tags=dict(tags),
        osm_type=element.get("type"),
        osm_id=element.get("id"),
        coordinates_missing=missing,
    )
