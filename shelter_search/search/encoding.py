"""Decide how coordinates are stored by voting over sampled rows."""

import logging
from typing import List, Optional, Sequence, Tuple

from shelter_search.core import db
from shelter_search.etl.normalize import to_finite_number
from shelter_search.models import CoordinateEncoding
from shelter_search.search.catalog import CatalogError

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 25

# Checked in this order; a sample is plausible for every range it fits.
_CLASS_LIMITS = (
    (CoordinateEncoding.DEGREES, 90.0, 180.0),
    (CoordinateEncoding.SCALED_1E6, 90e6, 180e6),
    (CoordinateEncoding.SCALED_1E7, 90e7, 180e7),
)


class EncodingUndetermined(CatalogError):
    reason = "ENCODING_UNDETERMINED"


def plausible_encodings(lat: float, lon: float) -> List[CoordinateEncoding]:
    return [
        encoding
        for encoding, lat_limit, lon_limit in _CLASS_LIMITS
        if abs(lat) <= lat_limit and abs(lon) <= lon_limit
    ]


def decide_encoding(samples: Sequence[Tuple[float, float]]) -> Optional[CoordinateEncoding]:
    """Return the first encoding plausible for a strict majority of ``samples``, else None.

    Ranges nest, so degrees are tried before 1e6 and 1e6 before 1e7. Exactly
    half is not a majority, and an empty sample set never decides.
    """
    if not samples:
        return None
    counts = {encoding: 0 for encoding, _, _ in _CLASS_LIMITS}
    for lat, lon in samples:
        for encoding in plausible_encodings(lat, lon):
            counts[encoding] += 1
    for encoding, count in counts.items():
        if count * 2 > len(samples):
            return encoding
    logger.warning("No coordinate encoding reached a majority: %s over %d samples", counts, len(samples))
    return None


def read_sample_coords(schema: str, relation: str, lat_col: str, lon_col: str, limit: int = SAMPLE_SIZE) -> List[Tuple[float, float]]:
    lat_ident = db.quote_ident(lat_col)
    lon_ident = db.quote_ident(lon_col)
    sql = f"""
        SELECT {lat_ident}::double precision AS lat,
               {lon_ident}::double precision AS lon
        FROM {db.qualified_name(schema, relation)}
        WHERE {lat_ident} IS NOT NULL AND {lon_ident} IS NOT NULL
        LIMIT %(limit)s
    """
    samples = []
    for row in db.fetch_all(sql, {"limit": limit}):
        lat = to_finite_number(row.get("lat"))
        lon = to_finite_number(row.get("lon"))
        if lat is None or lon is None:
            continue
        samples.append((lat, lon))
    return samples


def resolve_encoding(schema: str, relation: str, lat_col: str, lon_col: str) -> CoordinateEncoding:
    samples = read_sample_coords(schema, relation, lat_col, lon_col)
    encoding = decide_encoding(samples)
    if encoding is None:
        raise EncodingUndetermined(
            f"Evac sites coord factor mode could not be determined from {len(samples)} samples."
        )
    return encoding
