"""Batched point-to-chip similarity search over the embeddings store."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from time import monotonic

from geosearch_agent.config import SimilarityConfig
from geosearch_agent.errors import DatabaseQueryError
from geosearch_agent.similarity.store import EmbeddingSession, EmbeddingStore
from geosearch_agent.types import BoundingBox, EmbeddingMatch, FeaturePoint, FeatureResult

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


class BoundingBoxCache:
    """Holds the corpus bounding box once it has been computed.

    First population is serialized so concurrent callers run the extent
    query at most once. The value is never invalidated; a corpus that
    changes while the process runs keeps the stale extent until `reset()`.
    """

    def __init__(self) -> None:
        self._value: BoundingBox | None = None
        self._lock = threading.Lock()

    def get(self) -> BoundingBox | None:
        return self._value

    def get_or_compute(
        self, compute: Callable[[], BoundingBox | None]
    ) -> BoundingBox | None:
        cached = self._value
        if cached is not None:
            return cached
        with self._lock:
            if self._value is None:
                value = compute()
                if value is not None:
                    self._value = value
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = None


class _PointQuery:
    """One unit of work: locate the containing chip, then rank its neighbors."""

    def __init__(self, store: EmbeddingStore, point: FeaturePoint, top_k: int) -> None:
        self.point = point
        self.timed_out = False
        self._store = store
        self._top_k = top_k
        self._session: EmbeddingSession | None = None
        self._started_at: float | None = None
        self._lock = threading.Lock()

    def run(self) -> list[EmbeddingMatch]:
        session = self._store.session()
        with self._lock:
            self._session = session
            self._started_at = monotonic()
        try:
            chip_id = session.locate(self.point.longitude, self.point.latitude)
            if chip_id is None:
                return []
            matches = session.rank_similar(chip_id, self._top_k)
            return [match for match in matches if match.chip_id != chip_id][: self._top_k]
        finally:
            with self._lock:
                self._session = None
            session.close()

    def interrupt_if_overdue(self, now: float, timeout: float) -> None:
        with self._lock:
            if self.timed_out or self._session is None or self._started_at is None:
                return
            if now - self._started_at < timeout:
                return
            self.timed_out = True
            logger.warning(
                "Similarity query for feature %d exceeded %.1fs; interrupting",
                self.point.index,
                timeout,
            )
            self._session.interrupt()


class SimilaritySearchEngine:
    """Finds imagery chips similar to the chip under each feature point.

    Each point runs on its own store session inside a bounded thread pool
    (`max_concurrency`), so a large batch queues instead of opening one
    connection per feature at once. Results are joined back to their
    feature by `FeaturePoint.index` and returned in input order.
    """

    def __init__(
        self,
        store: EmbeddingStore,
        *,
        bbox_cache: BoundingBoxCache | None = None,
        config: SimilarityConfig | None = None,
    ) -> None:
        self.store = store
        self.bbox_cache = bbox_cache or BoundingBoxCache()
        self.config = config or SimilarityConfig()

    def get_bounding_box(self) -> BoundingBox:
        """Return the corpus extent, or the configured fallback region.

        The fallback is not cached so a later successful query can still
        populate the cache.
        """

        bbox = self.bbox_cache.get_or_compute(self._query_extent)
        if bbox is None:
            logger.warning("Using fallback bounding box %s", tuple(self.config.fallback_bbox))
            return self.config.fallback_bbox
        return bbox

    def batch_find_similar(
        self,
        points: Sequence[FeaturePoint],
        top_k: int | None = None,
    ) -> list[FeatureResult]:
        """Run one similarity query per point and aggregate by feature index.

        A point outside every stored geometry yields no matches. A point
        whose query fails yields no matches and carries `error`; sibling
        points are unaffected.
        """

        if not points:
            return []
        indices = [point.index for point in points]
        if len(set(indices)) != len(indices):
            raise ValueError("FeaturePoint.index values must be unique within a batch")

        limit = top_k if top_k is not None else self.config.top_k
        if limit < 0:
            raise ValueError(f"top_k must be non-negative, got {limit}")
        timeout = self.config.point_timeout_seconds
        workers = min(self.config.max_concurrency, len(points))
        logger.info(
            "Finding similar embeddings for %d features (workers=%d, top_k=%d)",
            len(points),
            workers,
            limit,
        )

        queries = [_PointQuery(self.store, point, limit) for point in points]
        results: dict[int, FeatureResult] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="similarity") as pool:
            futures: dict[Future[list[EmbeddingMatch]], _PointQuery] = {
                pool.submit(query.run): query for query in queries
            }
            pending = set(futures)
            while pending:
                _, pending = wait(pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                now = monotonic()
                for future in pending:
                    futures[future].interrupt_if_overdue(now, timeout)

            for future, query in futures.items():
                results[query.point.index] = self._collect(future, query, timeout)

        return [results[point.index] for point in points]

    def _collect(
        self,
        future: Future[list[EmbeddingMatch]],
        query: _PointQuery,
        timeout: float,
    ) -> FeatureResult:
        point = query.point
        try:
            matches = future.result()
        except Exception as exc:  # noqa: BLE001 - one failed point must not abort the batch
            logger.warning("Similarity query for feature %d failed: %s", point.index, exc)
            error = (
                f"similarity query timed out after {timeout:.1f}s"
                if query.timed_out
                else f"similarity query failed: {exc}"
            )
            return FeatureResult(feature=point, matches=[], error=error)

        if query.timed_out:
            return FeatureResult(
                feature=point,
                matches=[],
                error=f"similarity query timed out after {timeout:.1f}s",
            )
        return FeatureResult(feature=point, matches=matches)

    def _query_extent(self) -> BoundingBox | None:
        try:
            session = self.store.session()
        except DatabaseQueryError as exc:
            logger.warning("Cannot open session for bounding box query: %s", exc)
            return None
        try:
            bbox = session.extent()
        except DatabaseQueryError as exc:
            logger.warning("Bounding box query failed: %s", exc)
            return None
        finally:
            session.close()

        if bbox is None:
            logger.warning("No geometries found in embeddings store")
            return None
        logger.info("Using bounding box from embeddings store: %s", tuple(bbox))
        return bbox
