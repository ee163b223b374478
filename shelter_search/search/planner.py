"""Build and run the multi-scale bounding-box + haversine nearby query."""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shelter_search.core import db
from shelter_search.etl.normalize import to_finite_number
from shelter_search.models import NearbyQuery, SchemaDescriptor

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = 111.32
MIN_COS_LAT = 0.2

# Computed column names; must not clash with columns of the shelter relation.
DISTANCE_ALIAS = "_nearby_distance_km"
FACTOR_ALIAS = "_nearby_coord_factor"

_BOOLEAN_TYPES = ("boolean", "bool")


@dataclass(frozen=True)
class ScaleClause:
    factor: float
    bbox_sql: str
    distance_sql: str


@dataclass(frozen=True)
class PlannedQuery:
    sql: str
    params: Dict[str, Any]
    factors: Tuple[float, ...]


def degree_deltas(lat: float, radius_km: float) -> Tuple[float, float]:
    """Latitude and longitude half-widths, in degrees, of a box covering ``radius_km``."""
    lat_delta = radius_km / KM_PER_DEGREE
    cos_lat = max(MIN_COS_LAT, math.cos(math.radians(lat)))
    lon_delta = radius_km / (KM_PER_DEGREE * cos_lat)
    return lat_delta, lon_delta


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lon2 - lon1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def haversine_sql(lat_expr: str, lon_expr: str) -> str:
    """Haversine distance in km from the ``%(center_lat)s``/``%(center_lon)s`` params."""
    return f"""(2 * {EARTH_RADIUS_KM} * asin(LEAST(1.0, sqrt(
        power(sin((radians({lat_expr}) - radians(%(center_lat)s)) / 2), 2) +
        cos(radians(%(center_lat)s)) * cos(radians({lat_expr})) *
        power(sin((radians({lon_expr}) - radians(%(center_lon)s)) / 2), 2)
    ))))"""


def active_predicate(schema: SchemaDescriptor) -> Optional[str]:
    """SQL condition keeping active rows, or None when the relation has no activity column.

    Non-boolean columns (integer or text flags) are compared through their text form.
    """
    if not schema.active_col:
        return None
    column = db.quote_ident(schema.active_col)
    if (schema.active_col_type or "").lower() in _BOOLEAN_TYPES:
        return f"{column} = true"
    return f"lower({column}::text) IN ('true', 't', '1', 'yes', 'y')"


def _degrees_expr(column_sql: str, factor_param: str, factor: float) -> str:
    if factor == 1:
        return f"{column_sql}::double precision"
    return f"({column_sql}::double precision / %({factor_param})s)"


def build_scale_clauses(
    schema: SchemaDescriptor,
    query: NearbyQuery,
    factors: Sequence[float],
    params: Dict[str, Any],
) -> List[ScaleClause]:
    """One bounding box and distance expression per scale hypothesis.

    Each clause's numeric values are added to ``params`` under indexed names.
    """
    lat_col = db.quote_ident(schema.lat_col)
    lon_col = db.quote_ident(schema.lon_col)
    lat_delta, lon_delta = degree_deltas(query.lat, query.radius_km)

    clauses = []
    for index, factor in enumerate(factors):
        params[f"lat_min_{index}"] = (query.lat - lat_delta) * factor
        params[f"lat_max_{index}"] = (query.lat + lat_delta) * factor
        params[f"lon_min_{index}"] = (query.lon - lon_delta) * factor
        params[f"lon_max_{index}"] = (query.lon + lon_delta) * factor
        params[f"factor_{index}"] = factor
        bbox_sql = (
            f"({lat_col} BETWEEN %(lat_min_{index})s AND %(lat_max_{index})s"
            f" AND {lon_col} BETWEEN %(lon_min_{index})s AND %(lon_max_{index})s)"
        )
        distance_sql = haversine_sql(
            _degrees_expr(lat_col, f"factor_{index}", factor),
            _degrees_expr(lon_col, f"factor_{index}", factor),
        )
        clauses.append(ScaleClause(factor=factor, bbox_sql=bbox_sql, distance_sql=distance_sql))
    return clauses


def build_nearby_query(schema: SchemaDescriptor, query: NearbyQuery) -> PlannedQuery:
    factors = tuple(schema.scale_candidates)
    params: Dict[str, Any] = {
        "center_lat": query.lat,
        "center_lon": query.lon,
        "radius_km": query.radius_km,
        "take": query.fetch_buffer,
    }
    clauses = build_scale_clauses(schema, query, factors, params)

    bbox_or = "\n               OR ".join(clause.bbox_sql for clause in clauses)
    # First matching hypothesis wins so a row is attributed exactly one distance.
    distance_case = " ".join(f"WHEN {clause.bbox_sql} THEN {clause.distance_sql}" for clause in clauses)
    factor_case = " ".join(
        f"WHEN {clause.bbox_sql} THEN %(factor_{index})s::double precision" for index, clause in enumerate(clauses)
    )
    active = active_predicate(schema)
    active_clause = f"AND {active}" if active else ""

    sql = f"""
        SELECT *
        FROM (
            SELECT s.*,
                   CASE {distance_case} ELSE NULL END AS {DISTANCE_ALIAS},
                   CASE {factor_case} ELSE NULL END AS {FACTOR_ALIAS}
            FROM {db.qualified_name(schema.schema, schema.relation)} s
            WHERE ({bbox_or})
              {active_clause}
        ) t
        WHERE t.{DISTANCE_ALIAS} <= %(radius_km)s
        ORDER BY t.{DISTANCE_ALIAS} ASC
        LIMIT %(take)s
    """
    return PlannedQuery(sql=sql, params=params, factors=factors)


def within_radius(row: Dict[str, Any], radius_km: float) -> bool:
    distance = to_finite_number(row.get(DISTANCE_ALIAS))
    return distance is not None and 0 <= distance <= radius_km + 1e-9


def plan_and_execute(query: NearbyQuery, schema: SchemaDescriptor, timeout_ms: int = 0) -> List[Dict[str, Any]]:
    """Run the nearby query and keep rows whose distance re-checks inside the radius."""
    planned = build_nearby_query(schema, query)
    logger.info(
        "Nearby query lat=%.6f lon=%.6f radius_km=%.3f factors=%s take=%d",
        query.lat,
        query.lon,
        query.radius_km,
        list(planned.factors),
        query.fetch_buffer,
    )
    rows = db.fetch_all(planned.sql, planned.params, timeout_ms=timeout_ms)
    kept = [row for row in rows if within_radius(row, query.radius_km)]
    if len(kept) != len(rows):
        logger.debug("Dropped %d rows failing the radius re-check", len(rows) - len(kept))
    return kept
