"""Error taxonomy shared by the search components and the orchestrator."""

from __future__ import annotations


class GeoSearchError(Exception):
    """Base class for errors raised by this package."""


class InvalidFilterError(GeoSearchError, ValueError):
    """The search filter cannot be compiled; correctable by the caller."""


class UpstreamUnavailableError(GeoSearchError):
    """An upstream HTTP service (map data or language model) failed or timed out."""


class DatabaseQueryError(GeoSearchError):
    """A query against the embeddings database failed."""


class ModelProtocolError(GeoSearchError):
    """The language model returned a response this package cannot act on."""
