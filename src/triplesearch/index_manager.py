"""
TripleSearch Index Manager
==========================

Registry of the partitioned search indexes.

Every index is tracked in three places that the manager keeps consistent:
    - an in-memory registry, keyed per type on the serialized group sets
    - Elasticsearch, using the index name as identifier
    - the triplestore, in the administrative graph, so indexes survive a
      restart

Locking is two-tiered. The master lock guards the registry structure only
(finding, creating and removing records). It is released before any index
content is rebuilt; rebuilds are serialized per index by the index's own
lock.
"""

import copy
import json
import logging
import threading
import time
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

from .authorization import AuthorizationGroup, canonical_group_json, sort_authorization_groups
from .config import SearchConfiguration
from .elastic import ElasticClient
from .index_builder import IndexBuilder
from .search_index import IndexStatus, SearchIndex, index_name, registry_key
from .sparql import SparqlClient, binding_value, escape_string, escape_uri


logger = logging.getLogger(__name__)

ADMIN_GRAPH = "http://mu.semte.ch/authorization"
SEARCH_NAMESPACE = "http://mu.semte.ch/vocabularies/authorization/"
MU_NAMESPACE = "http://mu.semte.ch/vocabularies/core/"
INDEX_CLASS = SEARCH_NAMESPACE + "ElasticsearchIndex"
INDEX_BASE_URI = "http://mu.semte.ch/authorization/elasticsearch/indexes/"

PREFIXES = (
    f"PREFIX mu: <{MU_NAMESPACE}>\n"
    f"PREFIX search: <{SEARCH_NAMESPACE}>\n"
)


class IndexManager:
    """
    Finds, creates, builds, invalidates and removes partitioned indexes.

    Example:
        manager = IndexManager(elastic, sparql, configuration, index_builder)
        manager.initialize()
        indexes = manager.fetch_indexes("document", [{"name": "public", "variables": []}])
    """

    def __init__(
        self,
        elastic: ElasticClient,
        sparql: SparqlClient,
        configuration: SearchConfiguration,
        index_builder: IndexBuilder
    ):
        self.elastic = elastic
        self.sparql = sparql
        self.configuration = configuration
        self.index_builder = index_builder
        self._master_lock = threading.Lock()
        # type name -> registry key -> index
        self._indexes: Dict[str, Dict[tuple, SearchIndex]] = {}

    # -- lifecycle ----------------------------------------------------------

    def initialize(self) -> None:
        """
        Prepare the registry at startup.

        Persisted indexes are loaded from the triplestore, or destroyed when
        persistence is disabled. Afterwards every configured eager index is
        ensured and built.
        """
        if self.configuration.persist_indexes:
            logger.info("Loading persisted indexes from the triplestore")
            self.load_persisted()
        else:
            logger.info(
                "Removing indexes as they're configured not to be persisted. "
                "Set 'persist_indexes' to true to enable index persistence."
            )
            self.destroy_all_persisted()

        groups_list = self.configuration.eager_indexing_groups
        type_names = list(self.configuration.type_definitions)
        total = len(groups_list) * len(type_names)
        if not total:
            return

        logger.info("Initializing %d eager indexes", total)
        count = 0
        for allowed_groups in groups_list:
            for type_name in type_names:
                count += 1
                with self._master_lock:
                    index = self._ensure_index(type_name, allowed_groups)
                logger.info(
                    "(%d/%d) Eager index %s for type '%s' and allowed groups %s, status %s",
                    count, total, index.name, type_name, allowed_groups, index.status.value
                )
                self._update_index(index)
        logger.info("Completed initialization of %d eager indexes", total)

    def load_persisted(self) -> None:
        """Rehydrate the registry from the administrative graph."""
        loaded = {}
        for type_name in self.configuration.type_definitions:
            loaded[type_name] = {index.key: index for index in self._persisted_indexes(type_name)}
            logger.debug("Loaded %d persisted indexes for type '%s'", len(loaded[type_name]), type_name)
        with self._master_lock:
            self._indexes = loaded

    def destroy_all_persisted(self) -> None:
        """Remove every index tracked in the triplestore, and its Elasticsearch index."""
        query = (
            f"SELECT DISTINCT ?name WHERE {{\n"
            f"  GRAPH {escape_uri(ADMIN_GRAPH)} {{\n"
            f"    ?index a {escape_uri(INDEX_CLASS)} ;\n"
            f"           {escape_uri(SEARCH_NAMESPACE + 'indexName')} ?name .\n"
            f"  }}\n"
            f"}}"
        )
        names = [binding_value(row, "name") for row in self.sparql.sudo_query(query)]
        with self._master_lock:
            for name in names:
                if name:
                    self._remove_index_by_name(name)
                    logger.info("Removed persisted index %s from triplestore and Elasticsearch", name)
            for indexes in self._indexes.values():
                for index in indexes.values():
                    index.status = IndexStatus.DELETED
            self._indexes = {}

    # -- lookup -------------------------------------------------------------

    def fetch_indexes(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None,
        force_update: bool = False
    ) -> List[SearchIndex]:
        """
        Find or create the indexes for a type and group set and bring them up to date.

        Args:
            type_name: Type to fetch indexes for, None for every type
            allowed_groups: Allowed groups of the caller. None fetches every
                registered index of the type(s) without creating any.
            used_groups: Used groups of the caller
            force_update: Rebuild the indexes even when they are valid

        Returns:
            The indexes, one per allowed group in additive mode. Indexes
            whose rebuild failed are returned with status invalid.

        Raises:
            UnknownTypeError: type_name isn't configured
        """
        with self._master_lock:
            if allowed_groups is None:
                indexes = self._registered(type_name)
            else:
                indexes = [
                    self._get_matching_index(t, groups, used_groups)
                    for t in self._type_names(type_name, configured=True)
                    for groups in self._group_sets(allowed_groups)
                ]

        for index in indexes:
            self._update_index(index, force=force_update)

        if any(index.status is IndexStatus.INVALID for index in indexes):
            logger.warning("Not all indexes are up-to-date. Search results may be incomplete.")
        return indexes

    def wait_for_indexes(self, indexes: Iterable[SearchIndex], timeout: Optional[float] = None) -> bool:
        """
        Block until none of the indexes is being updated.

        Returns:
            False if the timeout expired first
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for index in indexes:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not index.wait_until_settled(remaining):
                logger.warning("Timed out waiting for index %s to finish updating", index.name)
                return False
        return True

    def indexes_for_type(self, type_name: str) -> List[SearchIndex]:
        """Snapshot of the registered indexes of a type."""
        with self._master_lock:
            return list(self._indexes.get(type_name, {}).values())

    # -- invalidation and removal -------------------------------------------

    def invalidate_indexes(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> List[SearchIndex]:
        """
        Mark indexes invalid so they are rebuilt on next use.

        None for type_name or allowed_groups matches every type or every
        group set respectively.

        Returns:
            The invalidated indexes
        """
        with self._master_lock:
            indexes = self._select(type_name, allowed_groups, used_groups)
        logger.info(
            "Found %d indexes to invalidate for %s and %s: %s",
            len(indexes),
            "all types" if type_name is None else f"type '{type_name}'",
            "all groups" if allowed_groups is None else f"allowed groups {allowed_groups}",
            ", ".join(index.name for index in indexes)
        )
        for index in indexes:
            with index.lock:
                if index.status is not IndexStatus.DELETED:
                    logger.debug("Marking index %s as invalid", index.name)
                    index.status = IndexStatus.INVALID
        return indexes

    def remove_indexes(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> List[SearchIndex]:
        """
        Remove indexes from the registry, the triplestore and Elasticsearch.

        A removal waits for a running rebuild of the removed index.

        Returns:
            The removed indexes
        """
        with self._master_lock:
            indexes = self._select(type_name, allowed_groups, used_groups)
            logger.info(
                "Found %d indexes to remove: %s",
                len(indexes), ", ".join(index.name for index in indexes)
            )
            for index in indexes:
                with index.lock:
                    self._indexes.get(index.type_name, {}).pop(index.key, None)
                    self._remove_index_by_name(index.name)
                    index.status = IndexStatus.DELETED
        return indexes

    def remove_index(
        self,
        type_name: str,
        allowed_groups: Sequence[AuthorizationGroup],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> None:
        """Remove one index. Does nothing if it doesn't exist."""
        name = index_name(type_name, allowed_groups, used_groups)
        with self._master_lock:
            index = self._indexes.get(type_name, {}).pop(registry_key(type_name, allowed_groups, used_groups), None)
            self._remove_index_by_name(name)
            if index is not None:
                index.status = IndexStatus.DELETED

    # -- internals (master lock held) ---------------------------------------

    def _type_names(self, type_name: Optional[str], configured: bool = False) -> List[str]:
        if type_name is not None:
            return [type_name]
        if configured:
            return list(self.configuration.type_definitions)
        return list(self._indexes)

    def _group_sets(self, allowed_groups: Sequence[AuthorizationGroup]) -> List[List[AuthorizationGroup]]:
        if self.configuration.additive_indexes:
            return [[group] for group in allowed_groups]
        return [list(allowed_groups)]

    def _registered(self, type_name: Optional[str]) -> List[SearchIndex]:
        indexes = []
        for name in self._type_names(type_name):
            indexes.extend(self._indexes.get(name, {}).values())
        return indexes

    def _select(
        self,
        type_name: Optional[str],
        allowed_groups: Optional[Sequence[AuthorizationGroup]],
        used_groups: Optional[Sequence[AuthorizationGroup]]
    ) -> List[SearchIndex]:
        if allowed_groups is None:
            return self._registered(type_name)
        indexes = []
        for name in self._type_names(type_name):
            for groups in self._group_sets(allowed_groups):
                index = self._find_matching_index(name, groups, used_groups)
                if index is not None:
                    indexes.append(index)
        return indexes

    def _find_matching_index(
        self,
        type_name: str,
        allowed_groups: Sequence[AuthorizationGroup],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> Optional[SearchIndex]:
        return self._indexes.get(type_name, {}).get(registry_key(type_name, allowed_groups, used_groups))

    def _get_matching_index(
        self,
        type_name: str,
        allowed_groups: Sequence[AuthorizationGroup],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> SearchIndex:
        index = self._find_matching_index(type_name, allowed_groups, used_groups)
        if index is not None:
            logger.debug("Found index %s in cache for type '%s'", index.name, type_name)
            return index
        logger.info(
            "No index in cache for type '%s' and allowed groups %s. Fetching it from the triplestore "
            "or creating it. Configure eager indexes to avoid building indexes at runtime.",
            type_name, allowed_groups
        )
        return self._ensure_index(type_name, allowed_groups, used_groups)

    def _ensure_index(
        self,
        type_name: str,
        allowed_groups: Sequence[AuthorizationGroup],
        used_groups: Optional[Sequence[AuthorizationGroup]] = None
    ) -> SearchIndex:
        """
        Make sure the index exists in the triplestore, the registry and Elasticsearch.

        Returns:
            The index, invalid when its Elasticsearch index had to be created
        """
        type_definition = self.configuration.type_definition(type_name)
        allowed = sort_authorization_groups(allowed_groups)
        used = sort_authorization_groups(used_groups or [])
        name = index_name(type_name, allowed, used)

        index = self._find_matching_index(type_name, allowed, used)
        if index is None:
            uri = self._find_index_uri(name)
            if uri is None:
                logger.debug("Creating index %s in triplestore for type '%s'", name, type_name)
                uri = self._create_index_record(type_name, name, allowed, used)
            index = SearchIndex(uri, name, type_name, allowed, used)
            self._indexes.setdefault(type_name, {})[index.key] = index

        if not self.elastic.index_exists(name):
            logger.debug("Creating index %s in Elasticsearch for type '%s'", name, type_name)
            index.status = IndexStatus.INVALID
            mappings = copy.deepcopy(type_definition.mappings) or {}
            properties = mappings.setdefault("properties", {})
            # uuid must be a keyword to collapse results on it
            properties["uuid"] = {"type": "keyword"}
            properties["uri"] = {"type": "keyword"}
            settings = type_definition.settings or self.configuration.default_index_settings or None
            self.elastic.create_index(name, mappings=mappings, settings=settings)
        return index

    def _remove_index_by_name(self, name: str) -> None:
        logger.debug("Removing index %s from triplestore", name)
        self.sparql.sudo_update(
            f"DELETE {{\n"
            f"  GRAPH {escape_uri(ADMIN_GRAPH)} {{ ?s ?p ?o . }}\n"
            f"}} WHERE {{\n"
            f"  GRAPH {escape_uri(ADMIN_GRAPH)} {{\n"
            f"    ?s a {escape_uri(INDEX_CLASS)} ;\n"
            f"       {escape_uri(SEARCH_NAMESPACE + 'indexName')} {escape_string(name)} ;\n"
            f"       ?p ?o .\n"
            f"  }}\n"
            f"}}"
        )
        if self.elastic.delete_index(name):
            logger.debug("Removed index %s from Elasticsearch", name)

    # -- content (index lock) -----------------------------------------------

    def _update_index(self, index: SearchIndex, force: bool = False) -> None:
        """
        Rebuild an invalid index, or any index when forced.

        A forced rebuild requested while another rebuild runs waits for it
        and then rebuilds again. Failures leave the index invalid and are not
        raised.
        """
        if not force and index.status is not IndexStatus.INVALID:
            return
        with index.lock:
            if index.status is IndexStatus.DELETED:
                return
            if not force and index.status is not IndexStatus.INVALID:
                return
            logger.info("Updating index %s", index.name)
            index.status = IndexStatus.UPDATING
            try:
                self.elastic.clear_index(index.name)
                self.index_builder.build(index)
                self.elastic.refresh_index(index.name)
                index.status = IndexStatus.VALID
                logger.info("Index %s is up-to-date", index.name)
            except Exception:
                index.status = IndexStatus.INVALID
                logger.exception("Failed to update index %s", index.name)

    # -- administrative graph -----------------------------------------------

    def _find_index_uri(self, name: str) -> Optional[str]:
        query = (
            f"SELECT ?index WHERE {{\n"
            f"  GRAPH {escape_uri(ADMIN_GRAPH)} {{\n"
            f"    ?index a {escape_uri(INDEX_CLASS)} ;\n"
            f"           {escape_uri(SEARCH_NAMESPACE + 'indexName')} {escape_string(name)} .\n"
            f"  }}\n"
            f"}} LIMIT 1"
        )
        rows = self.sparql.sudo_query(query)
        return binding_value(rows[0], "index") if rows else None

    def _create_index_record(
        self,
        type_name: str,
        name: str,
        allowed_groups: List[AuthorizationGroup],
        used_groups: List[AuthorizationGroup]
    ) -> str:
        record_id = str(uuid.uuid4())
        uri = INDEX_BASE_URI + record_id

        def groups_term(groups):
            return ", ".join(escape_string(canonical_group_json(g)) for g in groups)

        statements = [
            "a search:ElasticsearchIndex",
            f"mu:uuid {escape_string(record_id)}",
            f"search:objectType {escape_string(type_name)}",
        ]
        if allowed_groups:
            statements.append(f"search:hasAllowedGroup {groups_term(allowed_groups)}")
        if used_groups:
            statements.append(f"search:hasUsedGroup {groups_term(used_groups)}")
        statements.append(f"search:indexName {escape_string(name)}")
        triples = " ;\n      ".join(statements)

        self.sparql.sudo_update(
            f"{PREFIXES}"
            f"INSERT DATA {{\n"
            f"  GRAPH {escape_uri(ADMIN_GRAPH)} {{\n"
            f"    {escape_uri(uri)} {triples} .\n"
            f"  }}\n"
            f"}}"
        )
        return uri

    def _persisted_indexes(self, type_name: str) -> List[SearchIndex]:
        query = (
            f"{PREFIXES}"
            f"SELECT ?index ?name ?predicate ?group WHERE {{\n"
            f"  GRAPH {escape_uri(ADMIN_GRAPH)} {{\n"
            f"    ?index a search:ElasticsearchIndex ;\n"
            f"           search:objectType {escape_string(type_name)} ;\n"
            f"           search:indexName ?name .\n"
            f"    OPTIONAL {{\n"
            f"      ?index ?predicate ?group .\n"
            f"      VALUES ?predicate {{ search:hasAllowedGroup search:hasUsedGroup }}\n"
            f"    }}\n"
            f"  }}\n"
            f"}}"
        )
        records: Dict[str, dict] = {}
        for row in self.sparql.sudo_query(query):
            uri = binding_value(row, "index")
            record = records.setdefault(uri, {"name": binding_value(row, "name"), "allowed": [], "used": []})
            group = binding_value(row, "group")
            if group is None:
                continue
            if binding_value(row, "predicate") == SEARCH_NAMESPACE + "hasAllowedGroup":
                record["allowed"].append(json.loads(group))
            else:
                record["used"].append(json.loads(group))

        return [
            SearchIndex(uri, record["name"], type_name, record["allowed"], record["used"])
            for uri, record in records.items()
        ]
