"""
TripleSearch Application
========================

Wires the clients, the index registry, the change queue and the search
service together from a SearchConfiguration.

Usage:
    with TripleSearch.from_config_file("/config/config.json") as app:
        app.start()
        app.delta_handler.route(deltas)
        results = app.search.search("documents", {"filter": {"title": "giraffes"}}, groups)
"""

import logging
import time
from typing import Optional, Tuple

from .authorization import AuthorizationContext
from .config import DEFAULT_CONFIG_PATH, SearchConfiguration, load_configuration
from .delta_handler import DeltaHandler
from .document_builder import DocumentBuilder
from .elastic import ElasticClient
from .index_builder import IndexBuilder
from .index_manager import IndexManager
from .search import SearchService
from .sparql import SparqlClient
from .tika import ExtractionCache, TextExtractor, TikaClient
from .update_handler import AutomaticUpdateStrategy, InvalidatingUpdateStrategy, UpdateHandler


logger = logging.getLogger(__name__)


def elastic_basic_auth(configuration: SearchConfiguration) -> Optional[Tuple[str, str]]:
    """Username and password for Elasticsearch, if a username is configured."""
    if not configuration.elasticsearch_username:
        return None
    return configuration.elasticsearch_username, configuration.elasticsearch_password or ""


class TripleSearch:
    """Composition root owning every long-lived component."""

    def __init__(
        self,
        configuration: SearchConfiguration,
        elastic: Optional[ElasticClient] = None,
        sparql: Optional[SparqlClient] = None,
        tika: Optional[TikaClient] = None
    ):
        self.configuration = configuration
        self.elastic = elastic or ElasticClient(
            hosts=configuration.elasticsearch_hosts,
            api_key=configuration.elasticsearch_api_key,
            basic_auth=elastic_basic_auth(configuration),
            verify_certs=configuration.elasticsearch_verify_certs,
            request_timeout=configuration.elastic_read_timeout
        )
        self.sparql = sparql or SparqlClient(
            configuration.sparql_endpoint,
            pool_size=configuration.connection_pool_size,
            pool_timeout=configuration.connection_pool_timeout
        )
        self.tika = tika or TikaClient(configuration.tika_url)
        self.extractor = TextExtractor(self.tika, ExtractionCache(configuration.extraction_cache_path))

        self.index_builder = IndexBuilder(self.elastic, self.sparql, configuration, self.document_builder)
        self.index_manager = IndexManager(self.elastic, self.sparql, configuration, self.index_builder)

        if configuration.automatic_index_updates:
            logger.info("Setting up automatic index updates")
            strategy = AutomaticUpdateStrategy(
                self.index_manager, self.elastic, self.sparql, configuration, self.document_builder
            )
        else:
            logger.info("Setting up invalidating index updates")
            strategy = InvalidatingUpdateStrategy(self.index_manager)

        self.update_handler = UpdateHandler(
            strategy,
            wait_interval=configuration.update_wait_interval_minutes * 60,
            thread_count=configuration.update_handler_threads,
            queue_path=configuration.update_queue_path,
            persist_interval=configuration.update_persist_interval
        )
        self.delta_handler = DeltaHandler(configuration, self.sparql, self.update_handler)
        self.search = SearchService(configuration, self.index_manager, self.elastic, self.sparql)

    @classmethod
    def from_config_file(cls, path: str = DEFAULT_CONFIG_PATH) -> "TripleSearch":
        return cls(load_configuration(path))

    def document_builder(self, context: AuthorizationContext) -> DocumentBuilder:
        """DocumentBuilder scoped to an authorization context."""
        return DocumentBuilder(
            self.sparql,
            context,
            attachments_path_base=self.configuration.attachments_path_base,
            maximum_file_size=self.configuration.maximum_file_size,
            extractor=self.extractor
        )

    def wait_for_services(self, timeout: float = 300.0, interval: float = 2.0) -> bool:
        """Wait until Elasticsearch and the triplestore are up."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            elastic_up = self.elastic.up()
            sparql_up = self.sparql.up()
            if elastic_up and sparql_up:
                return True
            logger.info("Waiting for services (elasticsearch: %s, sparql: %s)", elastic_up, sparql_up)
            time.sleep(interval)
        return False

    def start(self) -> None:
        """Initialize the indexes and start handling updates."""
        self.index_manager.initialize()
        self.update_handler.start()

    def close(self) -> None:
        self.update_handler.stop()
        self.sparql.close()
        self.tika.close()
        self.elastic.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
