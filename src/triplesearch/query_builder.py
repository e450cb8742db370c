"""
TripleSearch Query Builder
==========================

Maps search request parameters to the Elasticsearch Query DSL.

Filter keys are either a plain field list or a modifier followed by a field
list, e.g. ``title``, ``:fuzzy:title,description`` or ``:gte,lt:age``.

    modifier                          query
    --------------------------------  -------------------------------------
    (none), phrase, phrase_prefix     multi_match
    fuzzy                             multi_match with fuzziness AUTO
    term, prefix, wildcard, regexp    term-level query on one field
    terms                             terms, the value split on ","
    fuzzy_phrase                      ordered span_near of fuzzy terms
    gt, gte, lt, lte and pairs        range, a pair takes two values
    has, has-no                       exists / must_not exists
    query                             query_string on one field
    sqs                               simple_query_string
    common[,cutoff[,min_match]]       common terms query

Modifiers that work on a single field reject a field list with an
InvalidFilterError.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .exceptions import InvalidFilterError


FILTER_KEY = re.compile(r":([^:\s]+):(\S*)")
COMMON_FLAG = re.compile(r"common(,[0-9.]+){0,2}")

RANGE_FLAGS = ("gte", "lte", "gt", "lt")
RANGE_PAIRS = ("gte,lte", "gt,lte", "gt,lt", "gte,lt", "lte,gte", "lte,gt", "lt,gt", "lt,gte")
SORT_ORDERS = ("asc", "desc")
SORT_MODES = ("min", "max", "sum", "avg", "median")

DEFAULT_PAGE_SIZE = 10


def is_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return value is not None and str(value).strip().lower() in ("true", "t", "1")


def split_filter(filter_key: str) -> Tuple[Optional[str], List[str]]:
    """
    Split the optional modifier from a filter key.

    Example:
        ":fuzzy:title,description" -> ("fuzzy", ["title", "description"])
        "title" -> (None, ["title"])

    Raises:
        InvalidFilterError: if a modifier is not closed or no field is named
    """
    modifier = None
    fields = filter_key
    if filter_key.startswith(":"):
        match = FILTER_KEY.fullmatch(filter_key)
        if not match:
            raise InvalidFilterError(f"Malformed filter key {filter_key!r}, expected :modifier:fields")
        modifier, fields = match.group(1), match.group(2)
    names = [f for f in fields.split(",") if f]
    if not names:
        raise InvalidFilterError(f"Filter key {filter_key!r} names no field")
    return modifier, names


def single_field(name: str, fields: Sequence[str]) -> str:
    if len(fields) != 1:
        raise InvalidFilterError(f"Param {name} only supports exactly one field, but received {list(fields)}")
    return fields[0]


def _page_value(page: Mapping[str, Any], key: str, default: int) -> int:
    value = page.get(key)
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidFilterError(f"page[{key}] must be an integer, got {value!r}") from None
    if number < 0:
        raise InvalidFilterError(f"page[{key}] must not be negative, got {number}")
    return number


class ElasticQueryBuilder:
    """
    Builds search and count queries for one search request.

    Example:
        builder = ElasticQueryBuilder(
            filter={":fuzzy:title,description": "giraffe"},
            page={"number": "1", "size": "20"},
            attachment_fields=["data"]
        )
        body = builder.build_search_query()
    """

    def __init__(
        self,
        filter: Optional[Mapping[str, str]] = None,
        page: Optional[Mapping[str, Any]] = None,
        sort: Optional[Mapping[str, str]] = None,
        highlight: Optional[Mapping[str, str]] = None,
        collapse_uuids: Any = True,
        attachment_fields: Sequence[str] = (),
        common_terms_cutoff_frequency: float = 0.001
    ):
        page = page or {}
        self.filter = dict(filter or {})
        self.page_number = _page_value(page, "number", 0)
        self.page_size = _page_value(page, "size", DEFAULT_PAGE_SIZE)
        self.sort = dict(sort or {})
        self.highlight = dict(highlight or {})
        self.collapse_uuids = True if collapse_uuids is None else is_true(collapse_uuids)
        self.attachment_fields = list(attachment_fields)
        self.common_terms_cutoff_frequency = common_terms_cutoff_frequency

    def build_search_query(self) -> Dict[str, Any]:
        """
        Build the query to search documents.

        Raises:
            InvalidFilterError: for invalid search parameters
        """
        query: Dict[str, Any] = {}
        self._add_filter(query)
        self._add_sort(query)
        query["from"] = self.page_number * self.page_size
        query["size"] = self.page_size
        self._add_highlight(query)
        self._add_collapse(query)
        if self.attachment_fields:
            query["_source"] = {"excludes": list(self.attachment_fields)}
        return query

    def build_count_query(self) -> Dict[str, Any]:
        """Build the query to count search results."""
        query: Dict[str, Any] = {}
        self._add_filter(query)
        self._add_collapse(query)
        return query

    def _add_filter(self, query: Dict[str, Any]) -> None:
        filters = [self.construct_query_term(key, value) for key, value in self.filter.items()]
        if len(filters) == 1:
            query["query"] = filters[0]
        elif filters:
            query["query"] = {"bool": {"must": filters}}

    def _add_sort(self, query: Dict[str, Any]) -> None:
        if not self.sort:
            return
        sort = []
        for key, order in self.sort.items():
            mode, fields = split_filter(key)
            field = single_field("sort", fields)
            if order not in SORT_ORDERS:
                raise InvalidFilterError(f"Sort order must be one of {SORT_ORDERS}, got {order!r}")
            if mode is None:
                sort.append({field: order})
            elif mode in SORT_MODES:
                sort.append({field: {"order": order, "mode": mode}})
            else:
                raise InvalidFilterError(f"Sort mode must be one of {SORT_MODES}, got {mode!r}")
        query["sort"] = sort

    def _add_highlight(self, query: Dict[str, Any]) -> None:
        fields = self.highlight.get(":fields:")
        if fields and self.filter:
            query["highlight"] = {"fields": {f: {} for f in fields.split(",") if f}}

    def _add_collapse(self, query: Dict[str, Any]) -> None:
        if self.collapse_uuids:
            query["collapse"] = {"field": "uuid"}
            query["aggs"] = {"type_count": {"cardinality": {"field": "uuid"}}}

    def construct_query_term(self, filter_key: str, value: str) -> Dict[str, Any]:
        """Translate a single filter parameter."""
        flag, fields = split_filter(filter_key)
        match_fields = None if fields == ["_all"] else fields

        if flag in (None, "phrase", "phrase_prefix"):
            multi_match: Dict[str, Any] = {"query": value}
            if flag:
                multi_match["type"] = flag
            if match_fields:
                multi_match["fields"] = match_fields
            return {"multi_match": multi_match}

        if flag == "fuzzy":
            multi_match = {"query": value, "fuzziness": "AUTO"}
            if match_fields:
                multi_match["fields"] = match_fields
            return {"multi_match": multi_match}

        if flag in ("term", "prefix", "wildcard", "regexp"):
            return {flag: {single_field(flag, fields): value}}

        if flag == "terms":
            return {"terms": {single_field(flag, fields): value.split(",")}}

        if flag == "fuzzy_phrase":
            field = single_field(flag, fields)
            clauses = [
                {"span_multi": {"match": {"fuzzy": {field: {"value": word, "fuzziness": "AUTO"}}}}}
                for word in value.split()
            ]
            return {"span_near": {"in_order": True, "slop": 2, "clauses": clauses}}

        if flag in RANGE_FLAGS:
            return {"range": {single_field(flag, fields): {flag: value}}}

        if flag in RANGE_PAIRS:
            field = single_field(flag, fields)
            flags = flag.split(",")
            values = value.split(",")
            if len(values) != 2:
                raise InvalidFilterError(
                    f"Expected 2 comma-separated values for filter flag {flag}, but received {value!r}"
                )
            return {"range": {field: {flags[0]: values[0], flags[1]: values[1]}}}

        if flag == "has":
            field = single_field(flag, fields)
            if not is_true(value):
                return {"match_all": {}}
            return {"exists": {"field": field}}

        if flag == "has-no":
            field = single_field(flag, fields)
            if not is_true(value):
                return {"match_all": {}}
            return {"bool": {"must_not": {"exists": {"field": field}}}}

        if flag == "query":
            return {"query_string": {"default_field": single_field(flag, fields), "query": value}}

        if flag == "sqs":
            all_fields = fields == ["_all"]
            sqs: Dict[str, Any] = {"query": value, "default_operator": "and", "all_fields": all_fields}
            if not all_fields:
                sqs["fields"] = fields
            return {"simple_query_string": sqs}

        if COMMON_FLAG.fullmatch(flag):
            field = single_field("common", fields)
            _, *options = flag.split(",")
            try:
                cutoff = float(options[0]) if options else self.common_terms_cutoff_frequency
            except ValueError:
                raise InvalidFilterError(f"Invalid cutoff frequency in filter flag {flag}") from None
            term: Dict[str, Any] = {"query": value, "cutoff_frequency": cutoff}
            if len(options) > 1:
                term["minimum_should_match"] = options[1]
            return {"common": {field: term}}

        raise InvalidFilterError(f"Unsupported filter flag :{flag}:")
