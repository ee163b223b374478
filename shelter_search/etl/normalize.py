"""Conversions applied to raw database rows at the storage boundary."""

import logging
import math
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from shelter_search.models import SchemaDescriptor, ShelterRecord

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "名称不明"

HAZARD_KEYS: Tuple[str, ...] = (
    "earthquake",
    "tsunami",
    "flood",
    "inland_flood",
    "typhoon",
    "landslide",
    "fire",
    "volcano",
    "storm_surge",
)

HAZARD_LABELS: Dict[str, str] = {
    "earthquake": "地震",
    "tsunami": "津波",
    "flood": "洪水",
    "inland_flood": "内水氾濫",
    "typhoon": "台風",
    "landslide": "土砂災害",
    "fire": "火災",
    "volcano": "火山",
    "storm_surge": "高潮",
}
_LABEL_TO_KEY = {label: key for key, label in HAZARD_LABELS.items()}
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")


def to_finite_number(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float, or None when it is not one.

    Drivers hand back numerics as int, float, Decimal or text depending on the
    column type; booleans are never treated as numbers.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def safe_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"true", "t", "1", "yes"}:
            return True
        if text in {"false", "f", "0", "no"}:
            return False
    return None


def safe_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, Decimal)) and not isinstance(value, bool):
        return str(value)
    return None


def normalize_hazard_key(value: Any) -> Optional[str]:
    """Map a label, camelCase or spaced spelling onto one of :data:`HAZARD_KEYS`."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text in _LABEL_TO_KEY:
        return _LABEL_TO_KEY[text]
    key = _CAMEL_BOUNDARY.sub(r"\1_\2", text).lower().replace("-", "_")
    key = re.sub(r"\s+", "_", key)
    return key if key in HAZARD_KEYS else None


def normalize_hazard_filter(values: Iterable[Any]) -> Tuple[str, ...]:
    """Known hazard keys from ``values``, de-duplicated in request order."""
    keys = []
    for value in values or ():
        key = normalize_hazard_key(value)
        if key is not None and key not in keys:
            keys.append(key)
    return tuple(keys)


def normalize_lat_lon(raw_lat: Any, raw_lon: Any, factor: float) -> Optional[Tuple[float, float]]:
    """Decode stored coordinates with ``factor`` and range-check the result."""
    lat = to_finite_number(raw_lat)
    lon = to_finite_number(raw_lon)
    if lat is None or lon is None:
        return None
    if not (math.isfinite(factor) and factor > 0):
        factor = 1.0
    if factor != 1:
        lat, lon = lat / factor, lon / factor
    if abs(lat) > 90 or abs(lon) > 180:
        return None
    return lat, lon


def decode_coordinates(row: Mapping[str, Any], schema: SchemaDescriptor, factors: Iterable[float]) -> Optional[Tuple[float, float]]:
    for factor in factors:
        coords = normalize_lat_lon(row.get(schema.lat_col), row.get(schema.lon_col), factor)
        if coords is not None:
            return coords
    return None


def hazards_from_row(row: Mapping[str, Any], schema: SchemaDescriptor) -> Dict[str, bool]:
    """Collect inline hazard flags from a JSON column or per-hazard boolean columns."""
    hazards: Dict[str, bool] = {}
    if schema.hazards_col:
        raw = row.get(schema.hazards_col)
        if isinstance(raw, Mapping):
            for key, value in raw.items():
                hazard_key = normalize_hazard_key(key)
                if hazard_key is None:
                    continue
                hazards[hazard_key] = hazards.get(hazard_key, False) or safe_bool(value) is True
    for key in HAZARD_KEYS:
        column = schema.hazard_bool_cols.get(key)
        if column is None:
            continue
        hazards[key] = hazards.get(key, False) or safe_bool(row.get(column)) is True
    return hazards


def normalize_row(
    row: Mapping[str, Any],
    schema: SchemaDescriptor,
    factors: Optional[Iterable[float]] = None,
) -> Optional[ShelterRecord]:
    """Build a :class:`ShelterRecord` from a raw row, or None if it cannot be placed."""
    raw_id = row.get(schema.id_col)
    if raw_id is None:
        logger.debug("Dropping row without %s", schema.id_col)
        return None

    coords = decode_coordinates(row, schema, factors if factors is not None else schema.scale_candidates)
    if coords is None:
        logger.debug("Dropping row %s with out-of-range coordinates", raw_id)
        return None

    name = row.get(schema.name_col) if schema.name_col else None
    if not isinstance(name, str) or not name.strip():
        name = UNKNOWN_NAME

    pref_city = safe_str(row.get(schema.pref_city_col)) if schema.pref_city_col else None
    if not pref_city:
        pref = safe_str(row.get(schema.prefecture_col)) if schema.prefecture_col else None
        city = safe_str(row.get(schema.city_col)) if schema.city_col else None
        pref_city = f"{pref}{city}" if pref and city else pref

    updated_at = row.get(schema.updated_at_col) if schema.updated_at_col else None
    if updated_at is None and schema.created_at_col:
        updated_at = row.get(schema.created_at_col)

    return ShelterRecord(
        id=str(raw_id),
        name=name,
        lat=coords[0],
        lon=coords[1],
        address=safe_str(row.get(schema.address_col)) if schema.address_col else None,
        common_id=safe_str(row.get(schema.common_id_col)) if schema.common_id_col else None,
        pref_city=pref_city,
        hazards=hazards_from_row(row, schema),
        notes=safe_str(row.get(schema.notes_col)) if schema.notes_col else None,
        shelter_fields=row.get(schema.shelter_fields_col) if schema.shelter_fields_col else None,
        source_updated_at=row.get(schema.source_updated_at_col) if schema.source_updated_at_col else None,
        updated_at=updated_at,
    )
