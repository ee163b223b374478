import json

from shelter_search.etl import municipalities
from shelter_search.etl.municipalities import AreaName
from shelter_search.models import AreaQuery, CoordinateEncoding, SchemaDescriptor
from shelter_search.search import area


def _schema(**overrides):
    values = dict(
        schema="public",
        relation="evac_sites",
        lat_col="lat",
        lon_col="lon",
        encoding=CoordinateEncoding.DEGREES,
        name_col="name",
        address_col="address",
        pref_city_col="pref_city",
        updated_at_col="updated_at",
    )
    values.update(overrides)
    return SchemaDescriptor(**values)


def test_like_escape():
    assert area.like_escape("100%_a\\b") == "100\\%\\_a\\\\b"


def test_area_steps_fall_back_from_code_to_name_to_prefecture():
    query = AreaQuery(muni_code="131016")

    assert area.area_steps(query, AreaName(muni_name="千代田区")) == ["muni-code", "muni-name", "pref-only"]
    assert area.area_steps(query, AreaName()) == ["muni-code", "pref-only"]
    assert area.area_steps(AreaQuery(pref_code="13"), AreaName()) == ["pref-only"]


def test_build_area_query_muni_code_without_code_column():
    query = AreaQuery(muni_code="131016", keyword="学校", limit=20, offset=40)
    area_name = AreaName(pref_code="13", pref_name="東京都", muni_code="131016", muni_name="千代田区")

    planned = area.build_area_query(_schema(active_col="is_active"), query, area_name, area.STEP_MUNI_CODE)
    sql = " ".join(planned.sql.split())

    assert "%東京都%" in planned.params.values()
    assert "%131016%" in planned.params.values()
    assert "%学校%" in planned.params.values()
    assert "lower(\"is_active\"::text) IN ('true', 't', '1', 'yes', 'y')" in sql
    assert 'ORDER BY "updated_at" DESC NULLS LAST, "id" ASC' in sql
    assert planned.params["limit"] == 20
    assert planned.params["offset"] == 40


def test_build_area_query_muni_name_step_uses_name():
    query = AreaQuery(muni_code="131016")
    area_name = AreaName(pref_code="13", pref_name="東京都", muni_code="131016", muni_name="千代田区")

    planned = area.build_area_query(_schema(), query, area_name, area.STEP_MUNI_NAME)

    assert "%千代田区%" in planned.params.values()
    assert "131016" not in " ".join(str(value) for value in planned.params.values())


def test_build_area_query_prefers_code_column():
    query = AreaQuery(pref_code="13", muni_code="131016")
    schema = _schema(municipality_code_col="municipality_code")

    planned = area.build_area_query(schema, query, AreaName(), area.STEP_MUNI_CODE)
    sql = " ".join(planned.sql.split())

    assert '"municipality_code"::text LIKE' in sql
    assert '"municipality_code"::text =' in sql
    assert "13%" in planned.params.values()
    assert "131016" in planned.params.values()


def test_municipality_index_lookup(tmp_path):
    path = tmp_path / "municipalities.json"
    path.write_text(
        json.dumps(
            [
                {"prefCode": "13", "prefName": "東京都", "muniCode": "131016", "muniName": "千代田区"},
                {"prefCode": "27", "prefName": "大阪府", "muniCode": "271004", "muniName": "大阪市"},
            ],
            ensure_ascii=False,
        ),
        encoding="utf-8",
    )
    index = municipalities.load_index(str(path))

    assert index.lookup(muni_code="131016") == AreaName("13", "東京都", "131016", "千代田区")
    assert index.lookup(pref_code="27").pref_name == "大阪府"
    assert index.lookup(muni_code="139999") == AreaName("13", "東京都", "139999", None)


def test_load_index_tolerates_bad_files(tmp_path, caplog):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with caplog.at_level("WARNING"):
        index = municipalities.load_index(str(path))

    assert index.lookup(pref_code="13") == AreaName(pref_code="13")
    assert "Unable to read municipality reference" in " ".join(caplog.messages)


def test_build_area_query_active_filter_follows_column_type():
    query = AreaQuery(pref_code="13")
    area_name = AreaName(pref_code="13", pref_name="東京都")

    boolean = area.build_area_query(
        _schema(active_col="is_active", active_col_type="boolean"), query, area_name, area.STEP_PREF_ONLY
    )
    integer = area.build_area_query(
        _schema(active_col="is_active", active_col_type="integer"), query, area_name, area.STEP_PREF_ONLY
    )

    assert '"is_active" = true' in " ".join(boolean.sql.split())
    integer_sql = " ".join(integer.sql.split())
    assert '"is_active" = true' not in integer_sql
    assert "lower(\"is_active\"::text) IN ('true', 't', '1', 'yes', 'y')" in integer_sql
