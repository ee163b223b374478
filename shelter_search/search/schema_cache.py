"""Resolve the shelter relation's physical schema and memoize it with a TTL."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Union

import psycopg2
from cachetools import TTLCache

from shelter_search.core import db
from shelter_search.core.config import Settings, get_settings
from shelter_search.etl.normalize import HAZARD_KEYS
from shelter_search.models import HazardTableDescriptor, SchemaDescriptor, SchemaUnavailable
from shelter_search.search import catalog, encoding
from shelter_search.search.catalog import CatalogError, LatLonNotFound, pick_column

logger = logging.getLogger(__name__)

SchemaResult = Union[SchemaDescriptor, SchemaUnavailable]

DIAGNOSTIC_COLUMN_PREVIEW = 40

_SITE_ID_CANDIDATES = ("siteid", "site_id", "evacsiteid", "evac_site_id", "evacsite_id")
_HAZARD_KEY_CANDIDATES = ("hazardtype", "hazard_type", "hazard", "type", "kind", "key", "hazardkey", "hazard_key")
_ENABLED_CANDIDATES = (
    "enabled",
    "is_enabled",
    "isenabled",
    "capable",
    "is_capable",
    "iscapable",
    "supported",
    "is_supported",
    "issupported",
    "available",
    "is_available",
    "isavailable",
    "value",
)


def _candidates() -> Dict[str, List[str]]:
    return {
        "relation": list(catalog.RELATION_CANDIDATES),
        "lat": list(catalog.LAT_CANDIDATES),
        "lon": list(catalog.LON_CANDIDATES),
    }


def hazard_column_candidates(key: str) -> List[str]:
    """Spellings a per-hazard boolean column has been seen under."""
    camel = "".join(part if index == 0 else part.capitalize() for index, part in enumerate(key.split("_")))
    pascal = camel[0].upper() + camel[1:]
    return [
        key,
        key.replace("_", ""),
        camel,
        pascal,
        f"hazard_{key}",
        f"hazard{pascal}",
        f"is_{key}",
        f"is{pascal}",
        f"{camel}Capable",
        f"{camel}Enabled",
        f"is{pascal}Capable",
        f"is{pascal}Enabled",
    ]


def resolve_hazard_table() -> Optional[HazardTableDescriptor]:
    picked = catalog.find_relation(catalog.HAZARD_RELATION_CANDIDATES)
    if picked is None:
        logger.info("No hazard capability relation found; using inline hazard flags only")
        return None
    schema, relation = picked
    columns = [column["name"] for column in catalog.list_column_info(schema, relation)]
    site_id_col = pick_column(columns, _SITE_ID_CANDIDATES)
    if site_id_col is None:
        logger.warning("Hazard capability relation %s.%s has no site id column; ignoring it", schema, relation)
        return None
    hazard_bool_cols = {}
    for key in HAZARD_KEYS:
        column = pick_column(columns, hazard_column_candidates(key))
        if column is not None:
            hazard_bool_cols[key] = column
    return HazardTableDescriptor(
        schema=schema,
        relation=relation,
        site_id_col=site_id_col,
        columns=tuple(columns),
        hazard_key_col=pick_column(columns, _HAZARD_KEY_CANDIDATES),
        enabled_col=pick_column(columns, _ENABLED_CANDIDATES),
        hazards_col=pick_column(columns, ("hazards",)),
        hazard_bool_cols=hazard_bool_cols,
    )


def resolve_schema() -> SchemaDescriptor:
    """Inspect the catalog and sample rows; raises :class:`CatalogError` on failure."""
    schema, relation = catalog.resolve_relation()
    column_types = catalog.describe_columns(schema, relation)
    columns = list(column_types)

    lat_col = pick_column(columns, catalog.LAT_CANDIDATES)
    lon_col = pick_column(columns, catalog.LON_CANDIDATES)
    if lat_col is None or lon_col is None or lat_col == lon_col:
        raise LatLonNotFound("Evac sites lat/lon columns not found.", discovered_columns=columns)

    try:
        coord_encoding = encoding.resolve_encoding(schema, relation, lat_col, lon_col)
    except CatalogError as exc:
        exc.discovered_columns = tuple(columns)
        raise

    hazard_bool_cols = {}
    for key in HAZARD_KEYS:
        column = pick_column(columns, (key, f"hazard_{key}"))
        if column is not None and column not in (lat_col, lon_col):
            hazard_bool_cols[key] = column

    active_col = pick_column(columns, ("isactive", "is_active", "active", "enabled", "is_enabled"))
    descriptor = SchemaDescriptor(
        schema=schema,
        relation=relation,
        lat_col=lat_col,
        lon_col=lon_col,
        encoding=coord_encoding,
        discovered_columns=tuple(columns),
        id_col=pick_column(columns, ("id",)) or "id",
        name_col=pick_column(columns, ("name", "site_name", "shelter_name")),
        address_col=pick_column(columns, ("address", "addr")),
        pref_city_col=pick_column(columns, ("pref_city", "prefcity", "prefecture_city")),
        prefecture_col=pick_column(columns, ("prefecture", "pref_name", "prefName")),
        city_col=pick_column(columns, ("city", "muni", "municipality", "muni_name")),
        municipality_code_col=pick_column(columns, ("municipalitycode", "municipality_code", "municode", "muni_code")),
        common_id_col=pick_column(columns, ("common_id", "commonId")),
        active_col=active_col,
        active_col_type=column_types.get(active_col) if active_col else None,
        hazards_col=pick_column(columns, ("hazards",)),
        hazard_bool_cols=hazard_bool_cols,
        notes_col=pick_column(columns, ("notes",)),
        shelter_fields_col=pick_column(columns, ("shelter_fields", "shelterFields")),
        source_updated_at_col=pick_column(columns, ("source_updated_at", "sourceUpdatedAt")),
        created_at_col=pick_column(columns, ("created_at", "createdAt")),
        updated_at_col=pick_column(columns, ("updated_at", "updatedAt")),
        hazard_table=resolve_hazard_table(),
    )
    logger.info(
        "Resolved shelter schema %s.%s lat=%s lon=%s encoding=%s",
        schema,
        relation,
        lat_col,
        lon_col,
        coord_encoding.value,
    )
    return descriptor


def env_missing() -> SchemaUnavailable:
    return SchemaUnavailable(
        reason="ENV_MISSING",
        message="DATABASE_URL is not set in runtime environment.",
        candidates=_candidates(),
    )


def resolve_schema_result() -> SchemaResult:
    """Like :func:`resolve_schema`, but failures become a :class:`SchemaUnavailable`."""
    try:
        return resolve_schema()
    except CatalogError as exc:
        unavailable = SchemaUnavailable(
            reason=exc.reason,
            message=str(exc),
            discovered_columns=exc.discovered_columns[:DIAGNOSTIC_COLUMN_PREVIEW],
            candidates=_candidates(),
        )
    except psycopg2.Error as exc:
        unavailable = SchemaUnavailable(
            reason="LOOKUP_FAILED",
            message=f"Evac sites schema lookup failed: {db.redact_error_message(str(exc).strip())}.",
            candidates=_candidates(),
        )
    logger.warning("Shelter schema unavailable (%s): %s", unavailable.reason, unavailable.message)
    return unavailable


class SchemaCache:
    """Time-based memo of the resolved schema, shared by every request.

    Failures are cached for the same TTL as successes. The single entry lives
    in a ``TTLCache`` and is only read or replaced under the lock, so one
    resolution runs per expiry and readers never see a partial update.
    """

    _KEY = "schema"

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        resolver: Callable[[], SchemaResult] = resolve_schema_result,
        settings_provider: Callable[[], Settings] = get_settings,
    ) -> None:
        if ttl_seconds is None:
            ttl_seconds = settings_provider().schema_cache_ttl_seconds
        self._resolver = resolver
        self._settings_provider = settings_provider
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl_seconds, timer=clock)
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._cache.ttl

    def get_schema(self) -> SchemaResult:
        if not self._settings_provider().database_url:
            return env_missing()

        with self._lock:
            value = self._cache.get(self._KEY)
            if value is None:
                value = self._resolver()
                self._cache[self._KEY] = value
            return value

    def peek(self) -> Optional[SchemaResult]:
        with self._lock:
            return self._cache.get(self._KEY)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
