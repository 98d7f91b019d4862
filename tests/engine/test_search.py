from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest

from search_ingest.engine import Record, SearchParams, build_search_url, parse_search_response
from search_ingest.errors import ParseError


def test_parse_search_response_keeps_extra_fields() -> None:
    body = (
        b'{"total": 2, "nextURL": false, "tooMany": false, "page": 1, "limit": 20,'
        b' "records": [{"memorialId": 7, "firstName": "Ada"}, {"memorialId": 8}]}'
    )
    response = parse_search_response(body)

    assert response.total == 2
    assert response.next_url is False
    assert [r.record_id for r in response.records] == [7, 8]
    assert response.records[0].payload() == {"memorialId": 7, "firstName": "Ada"}


def test_parse_search_response_rejects_malformed_body() -> None:
    with pytest.raises(ParseError):
        parse_search_response(b"<html>busy</html>")
    with pytest.raises(ParseError):
        parse_search_response(b'{"records": [{"firstName": "no id"}]}')


def test_record_round_trips_remote_field_names() -> None:
    record = Record.model_validate({"memorialId": 3, "birthYear": 1900})
    assert '"memorialId":3' in record.to_json()
    assert '"birthYear":1900' in record.to_json()


def test_build_search_url_keeps_wildcards() -> None:
    params = SearchParams(limit=20, death_year=2025, last_name="A*", first_name="B*")
    url = build_search_url("https://search.test/memorial/search", params)

    assert "lastName=A*" in url
    assert "firstName=B*" in url
    query = parse_qs(urlsplit(url).query)
    assert query["ajax"] == ["true"]
    assert query["deathyear"] == ["2025"]
    assert query["page"] == ["1"]
    assert query["skip"] == ["0"]


def test_build_search_url_omits_unset_filters() -> None:
    url = build_search_url("https://search.test/memorial/search", SearchParams(limit=5))
    query = parse_qs(urlsplit(url).query)
    assert "deathyear" not in query
    assert "lastName" not in query
    assert "firstName" not in query


def test_for_offset_derives_page_number() -> None:
    params = SearchParams(limit=20).for_offset(40)
    assert (params.skip, params.page) == (40, 3)
