"""Remote search API schema and URL construction."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import ParseError


class Record(BaseModel):
    """One search hit. Only the identifier is interpreted by the pipeline."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    record_id: int = Field(alias="memorialId")

    def payload(self) -> dict[str, Any]:
        """JSON-ready body using the remote field names."""

        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class SearchResponse(BaseModel):
    """Subset of the search endpoint's JSON document the crawler relies on."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    total: int = 0
    records: list[Record] = Field(default_factory=list)
    next_url: bool | str | None = Field(default=None, alias="nextURL")
    too_many: bool = Field(default=False, alias="tooMany")
    skip: int = 0
    limit: int = 0
    page: int = 0
    pages: int = 0


def parse_search_response(body: bytes | str) -> SearchResponse:
    try:
        return SearchResponse.model_validate_json(body)
    except ValidationError as exc:
        raise ParseError(f"Malformed search response: {exc.error_count()} error(s)") from exc


@dataclass(frozen=True, slots=True)
class SearchParams:
    """Query used to build search URLs for one collection."""

    limit: int = 20
    page: int = 1
    skip: int = 0
    death_year: int = 0
    first_name: str | None = None
    last_name: str | None = None

    def for_offset(self, skip: int) -> "SearchParams":
        return replace(self, skip=skip, page=skip // self.limit + 1)


def build_search_url(base_url: str, params: SearchParams) -> str:
    """Render ``params`` onto ``base_url``; ``*`` wildcards stay unescaped."""

    parts = urlsplit(base_url)
    query = dict(parse_qsl(parts.query))
    query["ajax"] = "true"
    if params.death_year > 0:
        query["deathyear"] = str(params.death_year)
    query["page"] = str(params.page)
    query["limit"] = str(params.limit)
    query["skip"] = str(params.skip)
    if params.last_name is not None:
        query["lastName"] = params.last_name
    if params.first_name is not None:
        query["firstName"] = params.first_name
    encoded = urlencode(sorted(query.items())).replace("%2A", "*")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, encoded, parts.fragment))


__all__ = [
    "Record",
    "SearchParams",
    "SearchResponse",
    "build_search_url",
    "parse_search_response",
]
