"""HTTP entrypoint exposing the shelter search engine (Cloud Run friendly)."""

from __future__ import annotations

import logging
import os
from typing import Any, List, Optional

from flask import Flask, jsonify, request

from shelter_search.core.config import get_settings
from shelter_search.search.engine import ShelterSearchEngine

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & engine ----------
app = Flask(__name__)
_engine: Optional[ShelterSearchEngine] = None

_TRUE_VALUES = {"1", "true", "yes"}


def get_engine() -> ShelterSearchEngine:
    global _engine
    if _engine is None:
        _engine = ShelterSearchEngine()
    return _engine


class BadRequest(ValueError):
    """Raised for malformed query parameters."""


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in _TRUE_VALUES


def _float_arg(name: str, required: bool = False) -> Optional[float]:
    raw = request.args.get(name)
    if raw is None or raw.strip() == "":
        if required:
            raise BadRequest(f"{name} is required")
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise BadRequest(f"{name} must be numeric") from exc


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise BadRequest(f"{name} must be an integer") from exc


def _list_arg(name: str) -> List[str]:
    values: List[str] = []
    for raw in request.args.getlist(name):
        values.extend(part.strip() for part in raw.split(",") if part.strip())
    return values


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, no database round-trip."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "database_configured": bool(settings.database_url),
                "worker_port_config": settings.worker_port,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.get("/shelters/nearby")
def nearby_shelters() -> Any:
    """
    Nearby search.
    Required: lat, lon
    Optional: radiusKm, limit, hazardTypes (comma separated), hideIneligible, q, diagnostics
    """
    try:
        lat = _float_arg("lat", required=True)
        lon = _float_arg("lon", required=True)
        radius_km = _float_arg("radiusKm")
        limit = _int_arg("limit")
        diagnostics = True if _flag("diagnostics") else None
        response = get_engine().nearby_search(
            lat,
            lon,
            radius_km=radius_km,
            hazard_types=_list_arg("hazardTypes"),
            limit=limit,
            hide_ineligible=_flag("hideIneligible"),
            keyword=request.args.get("q"),
            include_diagnostics=diagnostics,
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    return jsonify(response.to_dict()), 200


@app.get("/shelters/search")
def search_shelters() -> Any:
    """
    Area search.
    Optional: prefCode (2 digits), muniCode (6 digits), q, hazardTypes, limit, offset,
    hideIneligible, designatedOnly
    """
    try:
        response = get_engine().area_search(
            pref_code=request.args.get("prefCode") or None,
            muni_code=request.args.get("muniCode") or None,
            keyword=request.args.get("q"),
            hazard_types=_list_arg("hazardTypes"),
            limit=_int_arg("limit"),
            offset=_int_arg("offset") or 0,
            hide_ineligible=_flag("hideIneligible"),
            designated_only=_flag("designatedOnly"),
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    return jsonify(response.to_dict()), 200


@app.get("/shelters/batch")
def shelters_batch() -> Any:
    ids = _list_arg("ids")
    if not ids:
        return jsonify({"error": "ids is required"}), 400
    response = get_engine().get_shelters(ids, hazard_types=_list_arg("hazardTypes"))
    return jsonify(response.to_dict()), 200


@app.get("/shelters/schema")
def shelters_schema() -> Any:
    return jsonify(get_engine().db_diagnostics()), 200


def main() -> None:
    env_port = os.getenv("PORT")
    port = int(env_port or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
