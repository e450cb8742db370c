"""
TripleSearch Search — Search Service
====================================

Answers search requests against the partitioned indexes of the caller.

A request is served from the indexes matching the caller's allowed groups
only. Missing indexes are created and built on the fly; indexes that are
being rebuilt are waited for before they are queried.
"""

import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .authorization import AuthorizationGroup
from .config import SearchConfiguration
from .elastic import ElasticClient
from .index_manager import IndexManager
from .query_builder import ElasticQueryBuilder
from .search_index import IndexStatus, SearchIndex
from .sparql import SparqlClient


logger = logging.getLogger(__name__)


def format_search_results(
    type_name: str,
    type_path: str,
    count: int,
    page: int,
    size: int,
    response: Mapping[str, Any]
) -> Dict[str, Any]:
    """
    Format an Elasticsearch response in a JSON:API like manner.

    Every hit becomes a resource identified by its uuid, with the document
    as attributes and the subject URI added as "uri".
    """
    last_page = (count - 1) // size if count > 0 and size > 0 else 0
    base = f"/{type_path}/search"

    def page_link(number: int) -> str:
        return f"{base}?page[number]={number}&page[size]={size}"

    data = []
    for hit in response.get("hits", {}).get("hits", []):
        source = dict(hit.get("_source") or {})
        data.append({
            "type": type_name,
            "id": source.get("uuid") or hit["_id"],
            "attributes": dict(source, uri=hit["_id"]),
            "highlight": hit.get("highlight")
        })

    return {
        "count": count,
        "data": data,
        "links": {
            "self": page_link(page),
            "first": page_link(0),
            "last": page_link(last_page),
            "prev": page_link(max(page - 1, 0)),
            "next": page_link(min(page + 1, last_page))
        }
    }


def result_count(response: Mapping[str, Any], collapsed: bool) -> int:
    """Number of results: distinct uuids when collapsed, total hits otherwise."""
    if collapsed:
        return int(response.get("aggregations", {}).get("type_count", {}).get("value", 0))
    total = response.get("hits", {}).get("total", 0)
    return int(total.get("value", 0) if isinstance(total, dict) else total)


class SearchService:
    """
    Search requests of one caller.

    Example:
        service = SearchService(configuration, index_manager, elastic)
        results = service.search(
            "documents",
            {"filter": {"title": "giraffes"}},
            allowed_groups=[{"name": "public", "variables": []}]
        )
    """

    def __init__(
        self,
        configuration: SearchConfiguration,
        index_manager: IndexManager,
        elastic: ElasticClient,
        sparql: Optional[SparqlClient] = None,
        wait_timeout: Optional[float] = None
    ):
        """
        Args:
            configuration: Search configuration
            index_manager: Registry the indexes are fetched from
            elastic: Elasticsearch client queries are sent with
            sparql: Triplestore client, only used for health checks
            wait_timeout: Maximum seconds to wait for updating indexes
        """
        self.configuration = configuration
        self.index_manager = index_manager
        self.elastic = elastic
        self.sparql = sparql
        self.wait_timeout = wait_timeout

    def _query_builder(self, type_name: str, params: Mapping[str, Any]) -> ElasticQueryBuilder:
        return ElasticQueryBuilder(
            filter=params.get("filter"),
            page=params.get("page"),
            sort=params.get("sort"),
            highlight=params.get("highlight"),
            collapse_uuids=params.get("collapse_uuids"),
            attachment_fields=self.configuration.attachment_fields(type_name),
            common_terms_cutoff_frequency=self.configuration.common_terms_cutoff_frequency
        )

    def _searchable_indexes(
        self,
        type_name: str,
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]]
    ) -> List[str]:
        # no groups means no access, never "every index"
        indexes = self.index_manager.fetch_indexes(type_name, list(allowed_groups or []), used_groups)
        self.index_manager.wait_for_indexes(indexes, self.wait_timeout)
        return [index.name for index in indexes if index.status is not IndexStatus.DELETED]

    def search(
        self,
        type_path: str,
        params: Mapping[str, Any],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> Dict[str, Any]:
        """
        Search the documents of a type.

        Args:
            type_path: Path the type is exposed on
            params: Request parameters: filter, page, sort, highlight and
                collapse_uuids
            allowed_groups: Allowed groups of the caller
            used_groups: Used groups of the caller

        Returns:
            JSON:API like response with count, data and links

        Raises:
            UnknownTypeError: no type is exposed on type_path
            InvalidFilterError: the parameters are invalid
        """
        type_def = self.configuration.type_for_path(type_path)
        builder = self._query_builder(type_def.name, params)
        query = builder.build_search_query()
        query["track_total_hits"] = True

        index_names = self._searchable_indexes(type_def.name, allowed_groups, used_groups)
        if not index_names:
            return format_search_results(type_def.name, type_path, 0, builder.page_number, builder.page_size, {})

        start = time.time()
        response = self.elastic.search_documents(index_names, query)
        count = result_count(response, builder.collapse_uuids)
        logger.debug(
            "Searched %s in %.1fms: %d results",
            ",".join(index_names), (time.time() - start) * 1000, count
        )
        return format_search_results(type_def.name, type_path, count, builder.page_number, builder.page_size, response)

    def count(
        self,
        type_path: str,
        params: Mapping[str, Any],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> int:
        """Count the search results of a type."""
        type_def = self.configuration.type_for_path(type_path)
        builder = self._query_builder(type_def.name, params)
        query = builder.build_count_query()

        index_names = self._searchable_indexes(type_def.name, allowed_groups, used_groups)
        if not index_names:
            return 0
        if builder.collapse_uuids:
            query["size"] = 0
            return result_count(self.elastic.search_documents(index_names, query), collapsed=True)
        return self.elastic.count_documents(index_names, query or None)

    def update_indexes(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> List[SearchIndex]:
        """Rebuild the matching indexes, creating them where needed."""
        return self.index_manager.fetch_indexes(type_name, allowed_groups, used_groups, force_update=True)

    def invalidate_indexes(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]]
    ) -> List[SearchIndex]:
        return self.index_manager.invalidate_indexes(type_name, allowed_groups)

    def remove_indexes(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]]
    ) -> List[SearchIndex]:
        return self.index_manager.remove_indexes(type_name, allowed_groups)

    def health(self) -> Dict[str, Any]:
        """Availability of the backing services."""
        status = {"elasticsearch": self.elastic.up()}
        if self.sparql is not None:
            status["sparql"] = self.sparql.up()
        status["healthy"] = all(status.values())
        return status
