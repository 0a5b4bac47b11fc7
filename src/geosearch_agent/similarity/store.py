"""Embedding store interfaces and concrete adapters."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from math import sqrt
from pathlib import Path
from typing import Any, Protocol

import duckdb
from shapely import wkt
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry

from geosearch_agent.errors import DatabaseQueryError
from geosearch_agent.types import BoundingBox, EmbeddingMatch

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class EmbeddingSession(Protocol):
    """One connection's worth of read-only queries against the embeddings."""

    def locate(self, longitude: float, latitude: float) -> str | None:
        """Return the id of the chip whose geometry contains the point."""

    def rank_similar(self, chip_id: str, top_k: int) -> list[EmbeddingMatch]:
        """Rank all other chips by cosine similarity to `chip_id`."""

    def extent(self) -> BoundingBox | None:
        """Return the extent of all stored geometries, or None when empty."""

    def interrupt(self) -> None:
        """Abort a query running on this session from another thread."""

    def close(self) -> None:
        """Release the underlying connection."""


class EmbeddingStore(Protocol):
    """Minimal embeddings store contract for similarity search."""

    def session(self) -> EmbeddingSession:
        """Open a new independent session."""


@dataclass(slots=True)
class StoredChip:
    """An imagery chip with its embedding vector and footprint."""

    chip_id: str
    vector: list[float]
    geometry_wkt: str
    captured_at: str


@dataclass(slots=True)
class _IndexedChip:
    chip: StoredChip
    geometry: BaseGeometry


class InMemoryEmbeddingStore:
    """Deterministic embeddings store used for tests and local prototyping."""

    def __init__(self, chips: list[StoredChip] | None = None) -> None:
        self._chips: dict[str, _IndexedChip] = {}
        self.open_sessions = 0
        self._lock = threading.Lock()
        if chips:
            self.upsert(chips)

    def upsert(self, chips: list[StoredChip]) -> None:
        for chip in chips:
            self._chips[chip.chip_id] = _IndexedChip(
                chip=chip, geometry=wkt.loads(chip.geometry_wkt)
            )

    def session(self) -> "_InMemorySession":
        with self._lock:
            self.open_sessions += 1
        return _InMemorySession(self)

    def _release(self) -> None:
        with self._lock:
            self.open_sessions -= 1


class _InMemorySession:
    def __init__(self, store: InMemoryEmbeddingStore) -> None:
        self._store = store
        self._closed = False

    def locate(self, longitude: float, latitude: float) -> str | None:
        point = Point(longitude, latitude)
        for record in self._store._chips.values():
            if record.geometry.contains(point):
                return record.chip.chip_id
        return None

    def rank_similar(self, chip_id: str, top_k: int) -> list[EmbeddingMatch]:
        anchor = self._store._chips.get(chip_id)
        if anchor is None:
            return []
        ranked = sorted(
            (
                EmbeddingMatch(
                    chip_id=record.chip.chip_id,
                    similarity=_cosine_similarity(anchor.chip.vector, record.chip.vector),
                    geometry_wkt=record.chip.geometry_wkt,
                    captured_at=record.chip.captured_at,
                )
                for record in self._store._chips.values()
                if record.chip.chip_id != chip_id
            ),
            key=lambda match: (-match.similarity, match.chip_id),
        )
        return ranked[:top_k]

    def extent(self) -> BoundingBox | None:
        if not self._store._chips:
            return None
        bounds = [record.geometry.bounds for record in self._store._chips.values()]
        return BoundingBox(
            south=min(b[1] for b in bounds),
            west=min(b[0] for b in bounds),
            north=max(b[3] for b in bounds),
            east=max(b[2] for b in bounds),
        )

    def interrupt(self) -> None:
        return None

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._store._release()


class DuckDBEmbeddingStore:
    """Read-only DuckDB adapter.

    Expects a table with columns `chips_id`, `vec` (fixed-size FLOAT array),
    `geom` (GEOMETRY), `geom_wkt` and `datetime`. One database instance is
    opened lazily and shared; every session gets its own cursor so queries
    can run in parallel threads.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        table: str = "embeddings",
        read_only: bool = True,
    ) -> None:
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.path = Path(path)
        self.table = table
        self.read_only = read_only
        self._db: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()
        self._spatial_warned = False

    def session(self) -> "DuckDBSession":
        cursor = self._connection().cursor()
        try:
            cursor.execute("LOAD spatial")
        except duckdb.Error as exc:
            # Spatial functions will fail per query; report once per store.
            if not self._spatial_warned:
                logger.warning("Could not load DuckDB spatial extension: %s", exc)
                self._spatial_warned = True
        return DuckDBSession(cursor, self.table)

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None

    def _connection(self) -> duckdb.DuckDBPyConnection:
        with self._lock:
            if self._db is None:
                try:
                    self._db = duckdb.connect(str(self.path), read_only=self.read_only)
                except duckdb.Error as exc:
                    raise DatabaseQueryError(
                        f"Cannot open embeddings database {self.path}: {exc}"
                    ) from exc
                logger.info("Opened embeddings database %s", self.path)
            return self._db


class DuckDBSession:
    def __init__(self, cursor: duckdb.DuckDBPyConnection, table: str) -> None:
        self._cursor = cursor
        self._table = table

    def locate(self, longitude: float, latitude: float) -> str | None:
        rows = self._fetch(
            f"""
            SELECT CAST(chips_id AS VARCHAR)
            FROM {self._table}
            WHERE ST_Contains(geom, ST_Point(?, ?))
            LIMIT 1
            """,
            [longitude, latitude],
        )
        return str(rows[0][0]) if rows else None

    def rank_similar(self, chip_id: str, top_k: int) -> list[EmbeddingMatch]:
        rows = self._fetch(
            f"""
            SELECT
                CAST(e.chips_id AS VARCHAR) AS chips_id,
                array_cosine_similarity(e.vec, s.vec) AS similarity,
                e.geom_wkt,
                CAST(e.datetime AS VARCHAR) AS datetime
            FROM {self._table} e
            CROSS JOIN (
                SELECT vec FROM {self._table}
                WHERE CAST(chips_id AS VARCHAR) = ?
                LIMIT 1
            ) s
            WHERE CAST(e.chips_id AS VARCHAR) != ?
            ORDER BY similarity DESC, chips_id
            LIMIT ?
            """,
            [chip_id, chip_id, top_k],
        )
        return [
            EmbeddingMatch(
                chip_id=str(row[0]),
                similarity=float(row[1]) if row[1] is not None else 0.0,
                geometry_wkt=str(row[2] or ""),
                captured_at=str(row[3] or ""),
            )
            for row in rows
        ]

    def extent(self) -> BoundingBox | None:
        rows = self._fetch(
            f"""
            SELECT
                MIN(ST_YMin(geom)) AS south,
                MIN(ST_XMin(geom)) AS west,
                MAX(ST_YMax(geom)) AS north,
                MAX(ST_XMax(geom)) AS east
            FROM {self._table}
            WHERE geom IS NOT NULL
            """,
            [],
        )
        if not rows or rows[0][0] is None:
            return None
        south, west, north, east = (float(value) for value in rows[0])
        return BoundingBox(south=south, west=west, north=north, east=east)

    def interrupt(self) -> None:
        self._cursor.interrupt()

    def close(self) -> None:
        self._cursor.close()

    def _fetch(self, query: str, params: list[Any]) -> list[tuple[Any, ...]]:
        try:
            return self._cursor.execute(query, params).fetchall()
        except duckdb.Error as exc:
            raise DatabaseQueryError(str(exc)) from exc


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
