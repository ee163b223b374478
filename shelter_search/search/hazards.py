"""Hazard capability loading and eligibility annotation."""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from shelter_search.core import db
from shelter_search.etl.normalize import HAZARD_KEYS, normalize_hazard_key, safe_bool
from shelter_search.models import HazardTableDescriptor, SchemaDescriptor

logger = logging.getLogger(__name__)

MAX_CAPABILITY_IDS = 2000

HazardCapabilityMap = Dict[str, Dict[str, bool]]
T = TypeVar("T")


def _flags_from_capability_row(row: Mapping[str, Any], table: HazardTableDescriptor) -> Dict[str, bool]:
    flags: Dict[str, bool] = {}
    if table.hazards_col:
        raw = row.get(table.hazards_col)
        if isinstance(raw, Mapping):
            for key, value in raw.items():
                hazard_key = normalize_hazard_key(key)
                if hazard_key is not None and safe_bool(value) is True:
                    flags[hazard_key] = True

    if table.hazard_bool_cols:
        for key in HAZARD_KEYS:
            column = table.hazard_bool_cols.get(key)
            if column is not None and safe_bool(row.get(column)) is True:
                flags[key] = True
    elif table.hazard_key_col:
        hazard_key = normalize_hazard_key(row.get(table.hazard_key_col))
        enabled = safe_bool(row.get(table.enabled_col)) if table.enabled_col else True
        if hazard_key is not None and enabled is True:
            flags[hazard_key] = True
    return flags


def load_capabilities(schema: SchemaDescriptor, site_ids: Iterable[str], timeout_ms: int = 0) -> HazardCapabilityMap:
    """Flags from the capability relation for exactly ``site_ids``."""
    table = schema.hazard_table
    ids = list(dict.fromkeys(site_id for site_id in site_ids if site_id))[:MAX_CAPABILITY_IDS]
    capabilities: HazardCapabilityMap = {}
    if table is None or not ids:
        return capabilities

    site_id_col = db.quote_ident(table.site_id_col)
    sql = f"""
        SELECT *
        FROM {db.qualified_name(table.schema, table.relation)}
        WHERE {site_id_col}::text = ANY(%(ids)s)
    """
    for row in db.fetch_all(sql, {"ids": ids}, timeout_ms=timeout_ms):
        raw_id = row.get(table.site_id_col)
        if raw_id is None:
            continue
        current = capabilities.setdefault(str(raw_id), {})
        for key, value in _flags_from_capability_row(row, table).items():
            current[key] = current.get(key, False) or value
    logger.debug("Loaded hazard capabilities for %d of %d sites", len(capabilities), len(ids))
    return capabilities


def merge_flags(inline: Optional[Mapping[str, bool]], loaded: Optional[Mapping[str, bool]]) -> Dict[str, bool]:
    merged = dict(inline or {})
    for key, value in (loaded or {}).items():
        merged[key] = bool(merged.get(key, False) or value)
    return merged


def eligibility(flags: Mapping[str, bool], hazard_filter: Sequence[str]) -> Tuple[bool, Tuple[str, ...]]:
    """``(matches, missing)`` for a site's flags against the requested hazards."""
    missing = tuple(key for key in hazard_filter if flags.get(key) is not True)
    return not missing, missing


def has_any_hazard(flags: Mapping[str, bool]) -> bool:
    return any(flags.get(key) is True for key in HAZARD_KEYS)


def enrich(
    results: Sequence[T],
    hazard_filter: Sequence[str],
    hide_ineligible: bool,
    capabilities: Optional[HazardCapabilityMap] = None,
    include_hazardless: bool = True,
) -> List[T]:
    """Attach merged flags and eligibility to each result.

    ``results`` are NearbyResult or AreaResult values; new instances are
    returned in the same order.
    """
    capabilities = capabilities or {}
    enriched: List[T] = []
    for result in results:
        record = result.record
        flags = merge_flags(record.hazards, capabilities.get(record.id))
        if not include_hazardless and not has_any_hazard(flags):
            continue
        matches, missing = eligibility(flags, hazard_filter)
        if hide_ineligible and not matches:
            continue
        enriched.append(
            replace(
                result,
                record=replace(record, hazards=flags),
                matches_hazards=matches,
                missing_hazards=missing,
            )
        )
    return enriched
