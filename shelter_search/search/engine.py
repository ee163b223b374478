"""Public search operations, composed from the schema cache, planner and enrichment."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import psycopg2

from shelter_search.core import db
from shelter_search.core.config import Settings, get_settings
from shelter_search.etl import municipalities
from shelter_search.etl.normalize import normalize_hazard_filter, to_finite_number
from shelter_search.models import (
    AreaQuery,
    AreaResult,
    NearbyQuery,
    SchemaDescriptor,
    SchemaUnavailable,
    SearchResponse,
)
from shelter_search.search import area, assembler, hazards, planner
from shelter_search.search.schema_cache import SchemaCache

logger = logging.getLogger(__name__)

MAX_BATCH_IDS = 50


class ShelterSearchEngine:
    """Entry point used by the HTTP and CLI layers.

    Every public method returns a :class:`SearchResponse`; schema and query
    failures come back as ``DOWN`` envelopes rather than exceptions. Invalid
    caller input still raises ``ValueError``.
    """

    def __init__(
        self,
        schema_cache: Optional[SchemaCache] = None,
        settings_provider: Callable[[], Settings] = get_settings,
        municipality_index: Optional[Callable[[], municipalities.MunicipalityIndex]] = None,
    ) -> None:
        self.schema_cache = schema_cache or SchemaCache(settings_provider=settings_provider)
        self._settings_provider = settings_provider
        self._municipality_index = municipality_index or municipalities.get_index

    @property
    def settings(self) -> Settings:
        return self._settings_provider()

    def _unavailable_response(self, unavailable: SchemaUnavailable, **extra: Any) -> SearchResponse:
        return SearchResponse.down(
            db.redact_error_message(unavailable.message),
            diagnostics=unavailable.diagnostics(),
            **extra,
        )

    def _query_failed(self, exc: Exception, operation: str, **extra: Any) -> SearchResponse:
        message = db.redact_error_message(str(exc).strip() or exc.__class__.__name__)
        logger.error("%s query failed: %s", operation, message)
        return SearchResponse.down(message, diagnostics={"reason": "QUERY_FAILED"}, **extra)

    def build_nearby_query(
        self,
        lat: float,
        lon: float,
        radius_km: Optional[float] = None,
        hazard_types: Iterable[str] = (),
        limit: Optional[int] = None,
        hide_ineligible: bool = False,
        keyword: Optional[str] = None,
        include_hazardless: bool = True,
    ) -> NearbyQuery:
        settings = self.settings
        radius = settings.default_radius_km if radius_km is None else float(radius_km)
        if radius > settings.max_radius_km:
            radius = settings.max_radius_km
        requested_limit = settings.default_limit if limit is None else int(limit)
        return NearbyQuery(
            lat=float(lat),
            lon=float(lon),
            radius_km=radius,
            limit=min(requested_limit, settings.max_limit),
            hazard_types=normalize_hazard_filter(hazard_types),
            hide_ineligible=hide_ineligible,
            keyword=keyword,
            include_hazardless=include_hazardless,
        )

    def nearby_search(
        self,
        lat: float,
        lon: float,
        radius_km: Optional[float] = None,
        hazard_types: Iterable[str] = (),
        limit: Optional[int] = None,
        hide_ineligible: bool = False,
        keyword: Optional[str] = None,
        include_hazardless: bool = True,
        include_diagnostics: Optional[bool] = None,
    ) -> SearchResponse:
        """Shelters within ``radius_km`` of the point, nearest first.

        Diagnostics are off by default: ``include_diagnostics=None`` follows the
        ``SEARCH_DIAGNOSTICS`` setting, which defaults to false, and the response
        then carries no diagnostics at all. Pass ``include_diagnostics=True`` to
        get them; with no candidates ``minDistanceKm`` is then ``None``.
        """
        query = self.build_nearby_query(
            lat,
            lon,
            radius_km=radius_km,
            hazard_types=hazard_types,
            limit=limit,
            hide_ineligible=hide_ineligible,
            keyword=keyword,
            include_hazardless=include_hazardless,
        )
        return self.run_nearby(query, include_diagnostics=include_diagnostics)

    def run_nearby(self, query: NearbyQuery, include_diagnostics: Optional[bool] = None) -> SearchResponse:
        if include_diagnostics is None:
            include_diagnostics = self.settings.include_diagnostics

        schema = self.schema_cache.get_schema()
        if isinstance(schema, SchemaUnavailable):
            return self._unavailable_response(schema, usedRadiusKm=query.radius_km)

        timeout_ms = self.settings.statement_timeout_ms
        try:
            rows = planner.plan_and_execute(query, schema, timeout_ms=timeout_ms)
            candidates = assembler.assemble_nearby(rows, schema, query)
            capabilities = hazards.load_capabilities(
                schema, (result.record.id for result in candidates), timeout_ms=timeout_ms
            )
        except psycopg2.Error as exc:
            return self._query_failed(exc, "Nearby", usedRadiusKm=query.radius_km)

        candidates = assembler.collapse_duplicates(candidates, capabilities)
        diagnostics = assembler.build_diagnostics(candidates) if include_diagnostics else None
        enriched = hazards.enrich(
            candidates,
            query.hazard_types,
            query.hide_ineligible,
            capabilities,
            include_hazardless=query.include_hazardless,
        )
        sites = assembler.finalize(enriched, query.limit)
        logger.info("Nearby search returned %d of %d candidates", len(sites), len(candidates))
        return SearchResponse.success(sites, diagnostics=diagnostics, usedRadiusKm=query.radius_km)

    def area_search(
        self,
        pref_code: Optional[str] = None,
        muni_code: Optional[str] = None,
        keyword: Optional[str] = None,
        hazard_types: Iterable[str] = (),
        limit: Optional[int] = None,
        offset: int = 0,
        hide_ineligible: bool = False,
        include_hazardless: bool = True,
        designated_only: bool = False,
    ) -> SearchResponse:
        settings = self.settings
        query = AreaQuery(
            pref_code=pref_code or None,
            muni_code=muni_code or None,
            keyword=(keyword or "").strip() or None,
            limit=min(settings.max_limit if limit is None else int(limit), settings.max_limit),
            offset=int(offset),
            hazard_types=normalize_hazard_filter(hazard_types),
            hide_ineligible=hide_ineligible,
            include_hazardless=include_hazardless,
            designated_only=designated_only,
        )
        area_name = self._municipality_index().lookup(pref_code=query.pref_code, muni_code=query.muni_code)
        extra = {
            "prefName": area_name.pref_name,
            "muniCode": query.muni_code,
            "muniName": area_name.muni_name,
        }

        schema = self.schema_cache.get_schema()
        if isinstance(schema, SchemaUnavailable):
            return self._unavailable_response(schema, usedMuniFallback=False, usedPrefFallback=False, **extra)

        steps = area.area_steps(query, area_name)
        trace: List[Dict[str, Any]] = []
        sites: List[AreaResult] = []
        try:
            for step in steps:
                rows = area.fetch_area_rows(schema, query, area_name, step, timeout_ms=settings.statement_timeout_ms)
                sites = self._enrich_area(rows, schema, query)
                trace.append({"step": step, "matchedCount": len(sites)})
                if sites:
                    break
        except psycopg2.Error as exc:
            return self._query_failed(exc, "Area", usedMuniFallback=False, usedPrefFallback=False, **extra)

        executed = [entry["step"] for entry in trace]
        return SearchResponse.success(
            sites,
            diagnostics={"trace": trace} if settings.include_diagnostics else None,
            usedMuniFallback=area.STEP_MUNI_NAME in executed,
            usedPrefFallback=bool(query.muni_code) and area.STEP_PREF_ONLY in executed,
            **extra,
        )

    def _enrich_area(self, rows: Sequence[Dict[str, Any]], schema: SchemaDescriptor, query: AreaQuery) -> List[AreaResult]:
        results = assembler.assemble_area(rows, schema, designated_only=query.designated_only)
        capabilities = hazards.load_capabilities(
            schema, (result.record.id for result in results), timeout_ms=self.settings.statement_timeout_ms
        )
        return hazards.enrich(
            assembler.collapse_duplicates(results, capabilities),
            query.hazard_types,
            query.hide_ineligible,
            capabilities,
            include_hazardless=query.include_hazardless,
        )

    def get_shelters(self, ids: Iterable[str], hazard_types: Iterable[str] = ()) -> SearchResponse:
        """Fetch shelters by id, returned in request order; unknown ids are skipped."""
        unique = [str(site_id) for site_id in dict.fromkeys(ids) if site_id][:MAX_BATCH_IDS]
        schema = self.schema_cache.get_schema()
        if isinstance(schema, SchemaUnavailable):
            return self._unavailable_response(schema)
        if not unique:
            return SearchResponse.success([])

        id_col = db.quote_ident(schema.id_col)
        sql = f"""
            SELECT *
            FROM {db.qualified_name(schema.schema, schema.relation)}
            WHERE {id_col}::text = ANY(%(ids)s)
        """
        timeout_ms = self.settings.statement_timeout_ms
        try:
            rows = db.fetch_all(sql, {"ids": unique}, timeout_ms=timeout_ms)
            results = assembler.assemble_area(rows, schema)
            capabilities = hazards.load_capabilities(schema, unique, timeout_ms=timeout_ms)
        except psycopg2.Error as exc:
            return self._query_failed(exc, "Batch")

        enriched = hazards.enrich(results, normalize_hazard_filter(hazard_types), False, capabilities)
        by_id = {result.record.id: result for result in enriched}
        return SearchResponse.success([by_id[site_id] for site_id in unique if site_id in by_id])

    def schema_status(self) -> Dict[str, Any]:
        schema = self.schema_cache.get_schema()
        if isinstance(schema, SchemaUnavailable):
            return {
                "ok": False,
                "fetchStatus": "DOWN",
                "lastError": db.redact_error_message(schema.message),
                "diagnostics": schema.diagnostics(),
            }
        return {"ok": True, "fetchStatus": "OK", "schema": schema.to_dict()}

    def db_diagnostics(self) -> Dict[str, Any]:
        """Row counts for operators: total, null coordinates, out-of-range coordinates."""
        status = self.schema_status()
        schema = self.schema_cache.peek()
        if not status["ok"] or not isinstance(schema, SchemaDescriptor):
            return status

        lat_col = db.quote_ident(schema.lat_col)
        lon_col = db.quote_ident(schema.lon_col)
        sql = f"""
            SELECT
                COUNT(*) AS count,
                COUNT(*) FILTER (WHERE {lat_col} IS NULL OR {lon_col} IS NULL) AS null_count,
                COUNT(*) FILTER (
                    WHERE {lat_col} IS NOT NULL AND {lon_col} IS NOT NULL
                      AND (ABS({lat_col}::double precision / %(factor)s) > 90
                           OR ABS({lon_col}::double precision / %(factor)s) > 180)
                ) AS invalid_count
            FROM {db.qualified_name(schema.schema, schema.relation)}
        """
        try:
            counts = db.fetch_all(sql, {"factor": schema.encoding.factor})
            hazard_count = None
            if schema.hazard_table is not None:
                table = schema.hazard_table
                hazard_rows = db.fetch_all(
                    f"SELECT COUNT(*) AS count FROM {db.qualified_name(table.schema, table.relation)}"
                )
                hazard_count = int(to_finite_number(hazard_rows[0].get("count")) or 0) if hazard_rows else 0
        except psycopg2.Error as exc:
            return self._query_failed(exc, "Diagnostics").to_dict()

        row = counts[0] if counts else {}
        status["counts"] = {
            "sites": int(to_finite_number(row.get("count")) or 0),
            "nullCoords": int(to_finite_number(row.get("null_count")) or 0),
            "invalidCoords": int(to_finite_number(row.get("invalid_count")) or 0),
            "hazardCapabilities": hazard_count,
        }
        return status
