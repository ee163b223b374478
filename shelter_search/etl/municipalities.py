"""Prefecture and municipality name lookup from a generated JSON reference file."""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional

from shelter_search.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AreaName:
    pref_code: Optional[str] = None
    pref_name: Optional[str] = None
    muni_code: Optional[str] = None
    muni_name: Optional[str] = None


class MunicipalityIndex:
    def __init__(self, rows: List[Dict[str, str]]) -> None:
        self._by_muni: Dict[str, Dict[str, str]] = {}
        self._by_pref: Dict[str, str] = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            if row.get("muniCode"):
                self._by_muni[str(row["muniCode"])] = row
            if row.get("prefCode") and row.get("prefName"):
                self._by_pref[str(row["prefCode"])] = str(row["prefName"])

    def lookup(self, pref_code: Optional[str] = None, muni_code: Optional[str] = None) -> AreaName:
        if not pref_code and muni_code and len(muni_code) == 6 and muni_code.isdigit():
            pref_code = muni_code[:2]
        muni = self._by_muni.get(muni_code) if muni_code else None
        resolved_pref_code = (muni or {}).get("prefCode") or pref_code
        resolved_pref_name = (muni or {}).get("prefName") or (
            self._by_pref.get(resolved_pref_code) if resolved_pref_code else None
        )
        return AreaName(
            pref_code=resolved_pref_code,
            pref_name=resolved_pref_name,
            muni_code=muni_code,
            muni_name=(muni or {}).get("muniName"),
        )


def load_index(path: Optional[str]) -> MunicipalityIndex:
    if not path:
        return MunicipalityIndex([])
    try:
        with open(path, encoding="utf-8") as fh:
            rows = json.load(fh)
    except (OSError, ValueError) as exc:
        logger.warning("Unable to read municipality reference %s: %s", path, exc)
        return MunicipalityIndex([])
    if not isinstance(rows, list):
        logger.warning("Municipality reference %s is not a JSON array", path)
        return MunicipalityIndex([])
    return MunicipalityIndex(rows)


@lru_cache(maxsize=1)
def get_index() -> MunicipalityIndex:
    return load_index(get_settings().municipalities_path)
