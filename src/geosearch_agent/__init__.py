"""Geosearch agent package."""

from .config import AgentConfig, OverpassConfig, SimilarityConfig

__all__ = ["AgentConfig", "OverpassConfig", "SimilarityConfig"]
