"""Catalog lookup: locate the shelter relation and its coordinate columns."""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from shelter_search.core import db

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"

RELATION_CANDIDATES: Tuple[str, ...] = ("evac_sites", "EvacSite", "evacsite", "evac_site", "evacSites")
HAZARD_RELATION_CANDIDATES: Tuple[str, ...] = (
    "EvacSiteHazardCapability",
    "evac_site_hazard_capability",
    "evac_site_hazard_capabilities",
    "evacsitehazardcapability",
)
LAT_CANDIDATES: Tuple[str, ...] = ("latitude", "lat", "ido", "y", "lat_deg", "y_deg", "lat_e7", "lat_e6")
LON_CANDIDATES: Tuple[str, ...] = (
    "longitude",
    "lon",
    "lng",
    "keido",
    "x",
    "lon_deg",
    "x_deg",
    "lon_e7",
    "lon_e6",
)

# Tables, views, materialized views, partitioned and foreign tables.
_RELKINDS = ("r", "v", "m", "p", "f")

_RELATIONS_SQL = """
SELECT n.nspname AS schema, c.relname AS relation, c.relkind AS relkind
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE c.relname = ANY(%(names)s)
  AND c.relkind = ANY(%(relkinds)s)
"""

_COLUMNS_SQL = """
SELECT column_name, data_type, udt_name
FROM information_schema.columns
WHERE table_schema = %(schema)s AND table_name = %(relation)s
ORDER BY ordinal_position
"""


class CatalogError(RuntimeError):
    """Base class for failures while resolving the physical schema."""

    reason = "LOOKUP_FAILED"

    def __init__(self, message: str, discovered_columns: Sequence[str] = (), candidates: Optional[Dict[str, List[str]]] = None):
        super().__init__(message)
        self.discovered_columns = tuple(discovered_columns)
        self.candidates = candidates or {}


class RelationNotFound(CatalogError):
    reason = "RELATION_NOT_FOUND"


class ColumnsNotFound(CatalogError):
    reason = "COLUMNS_NOT_FOUND"


class LatLonNotFound(ColumnsNotFound):
    reason = "LATLON_NOT_FOUND"


def pick_relation(rows: Iterable[Dict[str, str]], candidates: Sequence[str]) -> Optional[Tuple[str, str]]:
    """First candidate name present in ``rows``, preferring the default schema."""
    rows = list(rows)
    for candidate in candidates:
        matches = [row for row in rows if row["relation"] == candidate]
        if not matches:
            continue
        for row in matches:
            if row["schema"] == DEFAULT_SCHEMA:
                return row["schema"], row["relation"]
        return matches[0]["schema"], matches[0]["relation"]
    return None


def find_relation(candidates: Sequence[str] = RELATION_CANDIDATES) -> Optional[Tuple[str, str]]:
    rows = db.fetch_all(_RELATIONS_SQL, {"names": list(candidates), "relkinds": list(_RELKINDS)})
    cleaned = [
        {"schema": str(row.get("schema") or ""), "relation": str(row.get("relation") or "")}
        for row in rows
    ]
    return pick_relation([row for row in cleaned if row["schema"] and row["relation"]], candidates)


def resolve_relation(candidates: Sequence[str] = RELATION_CANDIDATES) -> Tuple[str, str]:
    """Return ``(schema, relation)`` for the shelter relation.

    Raises :class:`RelationNotFound` listing every name tried.
    """
    picked = find_relation(candidates)
    if picked is None:
        raise RelationNotFound(
            "Evac sites relation not found.",
            candidates={"relation": list(candidates)},
        )
    logger.info("Resolved shelter relation %s.%s", picked[0], picked[1])
    return picked


def list_column_info(schema: str, relation: str) -> List[Dict[str, Optional[str]]]:
    rows = db.fetch_all(_COLUMNS_SQL, {"schema": schema, "relation": relation})
    info = []
    for row in rows:
        name = row.get("column_name")
        if not name:
            continue
        info.append({"name": str(name), "type": (row.get("data_type") or row.get("udt_name") or None)})
    return info


def describe_columns(schema: str, relation: str) -> Dict[str, Optional[str]]:
    """Column name to declared type, in physical order.

    Raises :class:`ColumnsNotFound` if none are visible.
    """
    described = {column["name"]: column["type"] for column in list_column_info(schema, relation)}
    if not described:
        raise ColumnsNotFound(f"Evac sites columns not found for {schema}.{relation}.")
    return described


def list_columns(schema: str, relation: str) -> List[str]:
    return list(describe_columns(schema, relation))


def pick_column(columns: Iterable[str], candidates: Iterable[str]) -> Optional[str]:
    """Case-insensitive exact match; the first candidate present wins."""
    by_lower: Dict[str, str] = {}
    for column in columns:
        by_lower.setdefault(column.lower(), column)
    for candidate in candidates:
        hit = by_lower.get(candidate.lower())
        if hit is not None:
            return hit
    return None
