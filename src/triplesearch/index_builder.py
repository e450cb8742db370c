"""
TripleSearch Builder — Index Construction
=========================================

Fills one partitioned index with the documents of its type that are visible
under the index's authorization groups.

Design principles:
    - Paging: subjects are fetched from the triplestore in pages of
      ``batch_size`` using LIMIT/OFFSET, never all at once
    - Pages run sequentially, bounding the load on the triplestore and
      Elasticsearch
    - Parallel fetch: within a page, documents are materialized by a pool of
      ``number_of_threads`` workers
    - Bulk API: each page is uploaded with a single bulk request
    - A document that fails to build is logged and skipped

Typical usage:
    builder = IndexBuilder(elastic, sparql, configuration, document_builder_factory)
    with index.lock:
        stats = builder.build(index)
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

from .authorization import AuthorizationContext
from .config import SearchConfiguration, TypeDefinition
from .document_builder import DocumentBuilder
from .elastic import ElasticClient
from .search_index import SearchIndex
from .sparql import SparqlClient, binding_value, count_from, escape_uri


logger = logging.getLogger(__name__)

DocumentBuilderFactory = Callable[[AuthorizationContext], DocumentBuilder]


def page_count(count: int, batch_size: int, max_batches: Optional[int] = None) -> int:
    """Number of pages needed for count subjects, capped by max_batches unless unset or 0."""
    pages = math.ceil(count / batch_size) if count > 0 else 0
    if max_batches:
        pages = min(pages, max_batches)
    return pages


class IndexBuilder:
    """
    Builds the content of partitioned indexes.

    The caller must hold the index lock for the duration of ``build``.
    """

    def __init__(
        self,
        elastic: ElasticClient,
        sparql: SparqlClient,
        configuration: SearchConfiguration,
        document_builder_factory: DocumentBuilderFactory
    ):
        """
        Args:
            elastic: Elasticsearch client documents are uploaded with
            sparql: Triplestore client subjects are listed with
            configuration: Search configuration (batch size, threads, types)
            document_builder_factory: Creates a DocumentBuilder scoped to an
                authorization context
        """
        self.elastic = elastic
        self.sparql = sparql
        self.configuration = configuration
        self.document_builder_factory = document_builder_factory
        self.batch_size = configuration.batch_size
        self.max_batches = configuration.max_batches
        self.thread_count = max(1, configuration.number_of_threads)

    def build(self, index: SearchIndex, type_definition: Optional[TypeDefinition] = None) -> dict:
        """
        Index every document of the index's type.

        Args:
            index: Target index, its allowed groups scope every query
            type_definition: Type to build (default: the index's type)

        Returns:
            Build statistics dict

        Raises:
            ConfigurationError: a composite type can't be expanded
            SparqlError: listing subjects failed
        """
        if type_definition is None:
            type_definition = self.configuration.type_definition(index.type_name)
        type_definitions = self.configuration.expand_type(type_definition.name)

        context = index.context
        document_builder = self.document_builder_factory(context)

        total_documents = 0
        total_errors = 0
        start_time = time.time()

        with ThreadPoolExecutor(max_workers=self.thread_count, thread_name_prefix="index-builder") as pool:
            for type_def in type_definitions:
                documents, errors = self._build_type(index, type_def, context, document_builder, pool)
                total_documents += documents
                total_errors += errors

        elapsed = time.time() - start_time
        stats = {
            "index": index.name,
            "total_documents": total_documents,
            "total_errors": total_errors,
            "elapsed_seconds": elapsed,
            "rate_per_second": total_documents / elapsed if elapsed > 0 else 0
        }
        logger.info(
            "Built index %s: %d documents, %d errors in %.1f seconds",
            index.name, total_documents, total_errors, elapsed
        )
        return stats

    def _build_type(
        self,
        index: SearchIndex,
        type_def: TypeDefinition,
        context: AuthorizationContext,
        document_builder: DocumentBuilder,
        pool: ThreadPoolExecutor
    ) -> Tuple[int, int]:
        count = self._count_subjects(type_def.rdf_type, context)
        pages = page_count(count, self.batch_size, self.max_batches)
        logger.info(
            "Found %d documents of type %s to index in %s with allowed groups %s, %d batch(es)",
            count, type_def.rdf_type, index.name, index.allowed_groups, pages
        )

        documents_total = 0
        errors_total = 0
        for page in range(pages):
            batch_start = time.time()
            subjects = self._page_subjects(type_def.rdf_type, context, page * self.batch_size)

            futures = [
                (subject, pool.submit(document_builder.fetch_document, subject, type_def.properties))
                for subject in subjects
            ]
            documents: List[Tuple[str, dict]] = []
            for subject, future in futures:
                try:
                    documents.append((subject, future.result()))
                except Exception as e:
                    logger.warning("Failed to build document %s for index %s: %s", subject, index.name, e)
                    errors_total += 1

            if documents:
                success, failed = self.elastic.bulk_upsert(index.name, documents, batch_size=self.batch_size)
                documents_total += success
                errors_total += failed

            logger.info(
                "Processed batch %d/%d for index %s in %.1f seconds",
                page + 1, pages, index.name, time.time() - batch_start
            )
        return documents_total, errors_total

    def _count_subjects(self, rdf_type: str, context: AuthorizationContext) -> int:
        query = f"SELECT (COUNT(DISTINCT ?doc) AS ?count) WHERE {{ ?doc a {escape_uri(rdf_type)} . }}"
        return count_from(self.sparql.query(query, context))

    def _page_subjects(self, rdf_type: str, context: AuthorizationContext, offset: int) -> List[str]:
        query = (
            f"SELECT DISTINCT ?doc WHERE {{ ?doc a {escape_uri(rdf_type)} . }} "
            f"ORDER BY ?doc LIMIT {self.batch_size} OFFSET {offset}"
        )
        rows = self.sparql.query(query, context)
        return [uri for uri in (binding_value(row, "doc") for row in rows) if uri]
