"""Turn raw nearby rows into ordered results, plus observational diagnostics."""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from shelter_search.etl.normalize import normalize_row, to_finite_number
from shelter_search.models import AreaResult, NearbyQuery, NearbyResult, SchemaDescriptor, ShelterRecord
from shelter_search.search.hazards import HazardCapabilityMap, merge_flags
from shelter_search.search.planner import DISTANCE_ALIAS, FACTOR_ALIAS, haversine_km

logger = logging.getLogger(__name__)

DIAGNOSTIC_TOP_N = 50

T = TypeVar("T")


def _factors_for_row(row: Mapping[str, Any], schema: SchemaDescriptor) -> List[float]:
    factors = list(schema.scale_candidates)
    matched = to_finite_number(row.get(FACTOR_ALIAS))
    if matched is not None and matched > 0:
        factors.insert(0, matched)
    return factors


def sort_key(result: NearbyResult):
    return (result.distance_km, result.record.id)


def matches_keyword(record: ShelterRecord, keyword: Optional[str]) -> bool:
    needle = (keyword or "").strip().lower()
    if not needle:
        return True
    haystacks = (record.name, record.address, record.notes)
    return any(needle in (text or "").lower() for text in haystacks)


def dedupe_by_id(results: Iterable[Any]) -> List[Any]:
    seen = set()
    unique = []
    for result in results:
        if result.record.id in seen:
            continue
        seen.add(result.record.id)
        unique.append(result)
    return unique


def duplicate_key(record: ShelterRecord) -> Tuple[Any, ...]:
    """Identity of a physical site: its common id, else name, address and coordinates to 4 decimals."""
    common_id = (record.common_id or "").strip()
    if common_id:
        return ("common_id", common_id)
    return (
        "site",
        (record.name or "").strip().lower(),
        (record.address or "").strip().lower(),
        round(record.lat, 4),
        round(record.lon, 4),
    )


def collapse_duplicates(results: Iterable[T], capabilities: Optional[HazardCapabilityMap] = None) -> List[T]:
    """Keep the first result of each physical site, OR-merging hazard flags across its rows.

    Flags loaded from the capability relation are folded in per row, so a
    capability recorded against a dropped duplicate still counts.
    """
    capabilities = capabilities or {}
    kept: Dict[Tuple[Any, ...], T] = {}
    seen = 0
    for result in results:
        seen += 1
        record = result.record
        flags = merge_flags(record.hazards, capabilities.get(record.id))
        key = duplicate_key(record)
        first = kept.get(key)
        if first is None:
            kept[key] = replace(result, record=replace(record, hazards=flags))
            continue
        base = first.record
        kept[key] = replace(
            first,
            record=replace(
                base,
                hazards=merge_flags(base.hazards, flags),
                notes=base.notes or record.notes,
                shelter_fields=base.shelter_fields or record.shelter_fields,
            ),
        )
    if len(kept) != seen:
        logger.debug("Collapsed %d duplicate site rows", seen - len(kept))
    return list(kept.values())


def assemble_nearby(rows: Iterable[Mapping[str, Any]], schema: SchemaDescriptor, query: NearbyQuery) -> List[NearbyResult]:
    """Normalize rows, drop unplaceable ones, de-duplicate and sort by (distance, id)."""
    results = []
    dropped = 0
    for row in rows:
        record = normalize_row(row, schema, _factors_for_row(row, schema))
        if record is None:
            dropped += 1
            continue
        distance = to_finite_number(row.get(DISTANCE_ALIAS))
        if distance is None:
            distance = haversine_km(query.lat, query.lon, record.lat, record.lon)
        if distance < 0 or distance > query.radius_km + 1e-9:
            dropped += 1
            continue
        if not matches_keyword(record, query.keyword):
            continue
        results.append(NearbyResult(record=record, distance_km=max(0.0, distance)))

    if dropped:
        logger.warning("Dropped %d nearby rows that could not be placed inside the radius", dropped)
    results.sort(key=sort_key)
    return dedupe_by_id(results)


def assemble_area(rows: Iterable[Mapping[str, Any]], schema: SchemaDescriptor, designated_only: bool = False) -> List[AreaResult]:
    results = []
    for row in rows:
        record = normalize_row(row, schema)
        if record is None:
            continue
        if designated_only and not record.shelter_fields:
            continue
        results.append(AreaResult(record=record))
    return dedupe_by_id(results)


def finalize(results: Sequence[NearbyResult], limit: int) -> List[NearbyResult]:
    ordered = sorted(dedupe_by_id(results), key=sort_key)
    return ordered[:limit]


def build_diagnostics(results: Sequence[NearbyResult]) -> Dict[str, Any]:
    distances = [result.distance_km for result in results]
    top = sorted(distances)[:DIAGNOSTIC_TOP_N]
    return {
        "candidateCount": len(distances),
        "minDistanceKm": min(top) if top else None,
        "countWithin1Km": sum(1 for distance in distances if distance <= 1),
        "countWithin5Km": sum(1 for distance in distances if distance <= 5),
    }
