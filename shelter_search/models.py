"""Core data models shared by the shelter search engine."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class CoordinateEncoding(str, Enum):
    """How latitude/longitude values are stored in the shelter relation."""

    DEGREES = "DEGREES"
    SCALED_1E6 = "SCALED_1E6"
    SCALED_1E7 = "SCALED_1E7"

    @property
    def factor(self) -> float:
        return _ENCODING_FACTORS[self]


_ENCODING_FACTORS = {
    CoordinateEncoding.DEGREES: 1.0,
    CoordinateEncoding.SCALED_1E6: 1e6,
    CoordinateEncoding.SCALED_1E7: 1e7,
}

# Legacy scale factors tried alongside the resolved encoding.
FALLBACK_SCALE_FACTORS: Tuple[float, ...] = (1.0, 1e2, 1e3, 1e4, 1e5, 1e6, 1e7)


@dataclass(frozen=True)
class HazardTableDescriptor:
    """Physical mapping of the optional per-site hazard capability relation."""

    schema: str
    relation: str
    site_id_col: str
    columns: Tuple[str, ...] = ()
    hazard_key_col: Optional[str] = None
    enabled_col: Optional[str] = None
    hazards_col: Optional[str] = None
    hazard_bool_cols: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SchemaDescriptor:
    """Resolved physical mapping of the shelter relation.

    Never mutated after construction; the schema cache swaps in a new one.
    """

    schema: str
    relation: str
    lat_col: str
    lon_col: str
    encoding: CoordinateEncoding
    discovered_columns: Tuple[str, ...] = ()
    id_col: str = "id"
    name_col: Optional[str] = None
    address_col: Optional[str] = None
    pref_city_col: Optional[str] = None
    prefecture_col: Optional[str] = None
    city_col: Optional[str] = None
    municipality_code_col: Optional[str] = None
    common_id_col: Optional[str] = None
    active_col: Optional[str] = None
    active_col_type: Optional[str] = None
    hazards_col: Optional[str] = None
    hazard_bool_cols: Dict[str, str] = field(default_factory=dict)
    notes_col: Optional[str] = None
    shelter_fields_col: Optional[str] = None
    source_updated_at_col: Optional[str] = None
    created_at_col: Optional[str] = None
    updated_at_col: Optional[str] = None
    hazard_table: Optional[HazardTableDescriptor] = None

    @property
    def scale_candidates(self) -> List[float]:
        """Primary factor first, then the legacy fallback list, de-duplicated."""
        merged: List[float] = []
        for factor in (self.encoding.factor, *FALLBACK_SCALE_FACTORS):
            if not math.isfinite(factor) or factor <= 0 or factor in merged:
                continue
            merged.append(factor)
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": self.schema,
            "relation": self.relation,
            "latCol": self.lat_col,
            "lonCol": self.lon_col,
            "encoding": self.encoding.value,
            "activeCol": self.active_col,
            "activeColType": self.active_col_type,
            "scaleCandidates": self.scale_candidates,
            "discoveredColumns": list(self.discovered_columns),
            "hazardTable": f"{self.hazard_table.schema}.{self.hazard_table.relation}" if self.hazard_table else None,
        }


@dataclass(frozen=True)
class SchemaUnavailable:
    """Why the shelter relation could not be resolved, with operator diagnostics."""

    reason: str
    message: str
    discovered_columns: Tuple[str, ...] = ()
    candidates: Dict[str, List[str]] = field(default_factory=dict)

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "discoveredColumns": list(self.discovered_columns),
            "candidates": self.candidates,
        }


@dataclass(slots=True)
class ShelterRecord:
    """Canonical shelter shape with coordinates in plain degrees."""

    id: str
    name: str
    lat: float
    lon: float
    address: Optional[str] = None
    common_id: Optional[str] = None
    pref_city: Optional[str] = None
    hazards: Dict[str, bool] = field(default_factory=dict)
    notes: Optional[str] = None
    shelter_fields: Any = None
    source_updated_at: Any = None
    updated_at: Any = None


@dataclass(frozen=True)
class NearbyQuery:
    """Caller intent for a point-and-radius search."""

    lat: float
    lon: float
    radius_km: float
    limit: int = 10
    hazard_types: Tuple[str, ...] = ()
    hide_ineligible: bool = False
    keyword: Optional[str] = None
    include_hazardless: bool = True

    def __post_init__(self) -> None:
        if not (math.isfinite(self.lat) and -90 <= self.lat <= 90):
            raise ValueError("lat must be a finite number between -90 and 90")
        if not (math.isfinite(self.lon) and -180 <= self.lon <= 180):
            raise ValueError("lon must be a finite number between -180 and 180")
        if not (math.isfinite(self.radius_km) and self.radius_km > 0):
            raise ValueError("radius_km must be positive")
        if self.limit < 1:
            raise ValueError("limit must be at least 1")

    @property
    def fetch_buffer(self) -> int:
        return max(200, self.limit * 20)


@dataclass(frozen=True)
class AreaQuery:
    """Caller intent for an administrative-area or keyword search."""

    pref_code: Optional[str] = None
    muni_code: Optional[str] = None
    keyword: Optional[str] = None
    limit: int = 50
    offset: int = 0
    hazard_types: Tuple[str, ...] = ()
    hide_ineligible: bool = False
    include_hazardless: bool = True
    designated_only: bool = False

    def __post_init__(self) -> None:
        if self.pref_code is not None and not (len(self.pref_code) == 2 and self.pref_code.isdigit()):
            raise ValueError("pref_code must be two digits")
        if self.muni_code is not None and not (len(self.muni_code) == 6 and self.muni_code.isdigit()):
            raise ValueError("muni_code must be six digits")
        if self.keyword is not None and len(self.keyword) > 80:
            raise ValueError("keyword must be at most 80 characters")
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if not 0 <= self.offset <= 10_000:
            raise ValueError("offset must be between 0 and 10000")


def _record_dict(record: ShelterRecord) -> Dict[str, Any]:
    payload = asdict(record)
    for key in ("source_updated_at", "updated_at"):
        if isinstance(payload[key], datetime):
            payload[key] = payload[key].isoformat()
    return payload


@dataclass(frozen=True)
class NearbyResult:
    record: ShelterRecord
    distance_km: float
    matches_hazards: bool = True
    missing_hazards: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        payload = _record_dict(self.record)
        payload.update(
            distanceKm=self.distance_km,
            matchesHazards=self.matches_hazards,
            missingHazards=list(self.missing_hazards),
        )
        return payload


@dataclass(frozen=True)
class AreaResult:
    record: ShelterRecord
    matches_hazards: bool = True
    missing_hazards: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        payload = _record_dict(self.record)
        payload.update(matchesHazards=self.matches_hazards, missingHazards=list(self.missing_hazards))
        return payload


@dataclass
class SearchResponse:
    """Envelope returned by every public engine operation."""

    ok: bool
    fetch_status: str
    sites: List[Any] = field(default_factory=list)
    last_error: Optional[str] = None
    updated_at: Optional[str] = None
    diagnostics: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, sites: List[Any], diagnostics: Optional[Dict[str, Any]] = None, **extra: Any) -> "SearchResponse":
        return cls(
            ok=True,
            fetch_status="OK",
            sites=sites,
            updated_at=datetime.now(timezone.utc).isoformat(),
            diagnostics=diagnostics,
            extra=extra,
        )

    @classmethod
    def down(cls, message: str, diagnostics: Optional[Dict[str, Any]] = None, **extra: Any) -> "SearchResponse":
        return cls(ok=False, fetch_status="DOWN", last_error=message, diagnostics=diagnostics, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ok": self.ok,
            "fetchStatus": self.fetch_status,
            "updatedAt": self.updated_at,
            "lastError": self.last_error,
            "sites": [site.to_dict() for site in self.sites],
        }
        payload.update(self.extra)
        if self.diagnostics is not None:
            payload["diagnostics"] = self.diagnostics
        return payload
