"""Administrative-area and keyword queries against the shelter relation."""

import logging
from typing import Any, Dict, List, Optional

from shelter_search.core import db
from shelter_search.etl.municipalities import AreaName
from shelter_search.models import AreaQuery, SchemaDescriptor
from shelter_search.search.planner import PlannedQuery, active_predicate

logger = logging.getLogger(__name__)

STEP_MUNI_CODE = "muni-code"
STEP_MUNI_NAME = "muni-name"
STEP_PREF_ONLY = "pref-only"


def like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class _ConditionBuilder:
    def __init__(self) -> None:
        self.conditions: List[str] = []
        self.params: Dict[str, Any] = {}

    def param(self, value: Any) -> str:
        name = f"p{len(self.params)}"
        self.params[name] = value
        return f"%({name})s"

    def any_of(self, columns: List[Optional[str]], operator: str, value: Any) -> None:
        """Append ``(c1 op v OR c2 op v ...)`` over the columns that exist."""
        present = [column for column in columns if column]
        if not present:
            return
        placeholder = self.param(value)
        ors = [f"{db.quote_ident(column)}::text {operator} {placeholder}" for column in present]
        self.conditions.append("(" + " OR ".join(ors) + ")")


def build_area_query(schema: SchemaDescriptor, query: AreaQuery, area: AreaName, step: str) -> PlannedQuery:
    builder = _ConditionBuilder()

    pref_name = (area.pref_name or "").strip()
    if pref_name:
        escaped = like_escape(pref_name)
        ors = []
        for column, pattern in (
            (schema.pref_city_col, f"{escaped}%"),
            (schema.address_col, f"{escaped}%"),
            (schema.address_col, f"%{escaped}%"),
            (schema.prefecture_col, f"%{escaped}%"),
        ):
            if column:
                ors.append(f"{db.quote_ident(column)}::text ILIKE {builder.param(pattern)}")
        if ors:
            builder.conditions.append("(" + " OR ".join(ors) + ")")

    pref_code = query.pref_code or area.pref_code
    if pref_code and schema.municipality_code_col:
        builder.any_of([schema.municipality_code_col], "LIKE", f"{like_escape(pref_code)}%")

    if step == STEP_MUNI_CODE and query.muni_code:
        if schema.municipality_code_col:
            builder.any_of([schema.municipality_code_col], "=", query.muni_code)
        else:
            builder.any_of(
                [schema.pref_city_col, schema.address_col, schema.common_id_col],
                "ILIKE",
                f"%{like_escape(query.muni_code)}%",
            )
    elif step == STEP_MUNI_NAME and area.muni_name:
        builder.any_of(
            [schema.pref_city_col, schema.address_col, schema.city_col],
            "ILIKE",
            f"%{like_escape(area.muni_name)}%",
        )

    keyword = (query.keyword or "").strip()
    if keyword:
        builder.any_of(
            [schema.name_col, schema.address_col, schema.notes_col],
            "ILIKE",
            f"%{like_escape(keyword)}%",
        )

    if query.designated_only and schema.shelter_fields_col:
        builder.conditions.append(f"{db.quote_ident(schema.shelter_fields_col)} IS NOT NULL")
    active = active_predicate(schema)
    if active:
        builder.conditions.append(active)

    where_sql = ("WHERE " + "\n          AND ".join(builder.conditions)) if builder.conditions else ""
    order_col = db.quote_ident(schema.updated_at_col or schema.created_at_col or schema.id_col)
    builder.params["limit"] = query.limit
    builder.params["offset"] = query.offset
    sql = f"""
        SELECT *
        FROM {db.qualified_name(schema.schema, schema.relation)}
        {where_sql}
        ORDER BY {order_col} DESC NULLS LAST, {db.quote_ident(schema.id_col)} ASC
        LIMIT %(limit)s
        OFFSET %(offset)s
    """
    return PlannedQuery(sql=sql, params=builder.params, factors=(schema.encoding.factor,))


def area_steps(query: AreaQuery, area: AreaName) -> List[str]:
    """Query steps to try in order until one yields results."""
    if not query.muni_code:
        return [STEP_PREF_ONLY]
    steps = [STEP_MUNI_CODE]
    if area.muni_name:
        steps.append(STEP_MUNI_NAME)
    steps.append(STEP_PREF_ONLY)
    return steps


def fetch_area_rows(
    schema: SchemaDescriptor,
    query: AreaQuery,
    area: AreaName,
    step: str,
    timeout_ms: int = 0,
) -> List[Dict[str, Any]]:
    planned = build_area_query(schema, query, area, step)
    rows = db.fetch_all(planned.sql, planned.params, timeout_ms=timeout_ms)
    logger.info("Area query step=%s returned %d rows", step, len(rows))
    return rows
