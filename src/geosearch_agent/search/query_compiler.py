"""Compile structured search filters into Overpass QL."""

from __future__ import annotations

import logging
import re

from geosearch_agent.errors import InvalidFilterError
from geosearch_agent.types import SearchFilter

logger = logging.getLogger(__name__)

_REGEX_SPECIAL = re.compile(r"[.*+?^${}()|\[\]\\]")
_ELEMENT_TYPES = ("node", "way", "relation")


def escape_name_pattern(name: str) -> str:
    """Escape regex metacharacters so Overpass matches them literally."""
    return _REGEX_SPECIAL.sub(lambda match: "\\" + match.group(0), name)


def quote_literal(value: str) -> str:
    """Escape backslashes and double quotes inside an Overpass QL string."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_filter_clauses(search_filter: SearchFilter) -> str:
    """Return the combined tag + name filter string.

    Tag clauses come first in the caller's insertion order, the case-insensitive
    name clause last. A `"*"` tag value matches any value for that key.
    """

    if not search_filter.name_pattern and not search_filter.tags:
        raise InvalidFilterError("Either name or tags must be provided")

    clauses: list[str] = []
    for key, value in search_filter.tags:
        if value == "*":
            clauses.append(f'["{quote_literal(key)}"]')
        else:
            clauses.append(f'["{quote_literal(key)}"="{quote_literal(value)}"]')

    if search_filter.name_pattern:
        escaped = escape_name_pattern(search_filter.name_pattern).replace('"', '\\"')
        clauses.append(f'["name"~"{escaped}",i]')

    return "".join(clauses)


def compile_query(search_filter: SearchFilter, *, server_timeout: int = 25) -> str:
    """Compile a filter into an Overpass QL query string (not URL-encoded)."""

    combined = build_filter_clauses(search_filter)

    if search_filter.bbox is not None:
        south, west, north, east = search_filter.bbox
        scope = f"({south},{west},{north},{east})"
    else:
        logger.warning("Compiling unscoped Overpass query; this searches the whole planet")
        scope = ""

    statements = "\n".join(
        f"  {element_type}{scope}{combined};" for element_type in _ELEMENT_TYPES
    )
    query = f"[out:json][timeout:{server_timeout}];\n(\n{statements}\n);\nout center;"
    logger.debug("Overpass QL query:\n%s", query)
    return query
