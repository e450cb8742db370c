"""
TripleSearch Elastic — Elasticsearch Client
===========================================

Thin wrapper around the official Elasticsearch client exposing exactly the
operations the index lifecycle needs: index management, single document
writes, bulk upload and search/count.

Transient failures are retried here, at the point of the call:
    - 502/503/504 responses and timeouts by the transport itself
    - connection errors and 429 (too many requests) with capped
      exponential backoff

A persistent failure is raised to the caller; it is never swallowed.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from elasticsearch import (
    ApiError,
    ConnectionError as ElasticConnectionError,
    ConnectionTimeout,
    Elasticsearch,
    NotFoundError,
    TransportError,
)
from elasticsearch.helpers import bulk
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 6


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, (ElasticConnectionError, ConnectionTimeout)):
        return True
    return isinstance(error, ApiError) and error.status_code == 429


_retry = retry(
    stop=stop_after_attempt(MAX_ATTEMPTS),
    wait=wait_exponential(multiplier=1, max=36),
    retry=retry_if_exception(_is_transient),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)


class ElasticClient:
    """
    Elasticsearch operations used by TripleSearch.

    Example:
        client = ElasticClient(hosts=["http://localhost:9200"])
        client.create_index("abc123", mappings={"properties": {}}, settings={})
        client.put_document("abc123", "http://example.org/doc/1", {"title": "giraffes"})
    """

    def __init__(
        self,
        hosts: Optional[List[str]] = None,
        api_key: Optional[str] = None,
        basic_auth: Optional[tuple] = None,
        verify_certs: bool = True,
        request_timeout: int = 180
    ):
        """
        Args:
            hosts: List of ES node URLs (default: ["http://localhost:9200"])
            api_key: API key for authentication
            basic_auth: Tuple of (username, password)
            verify_certs: Verify SSL certificates
            request_timeout: Read timeout in seconds
        """
        conn_kwargs: Dict[str, Any] = {
            "hosts": hosts or ["http://localhost:9200"],
            "verify_certs": verify_certs,
            "request_timeout": request_timeout,
            "retry_on_timeout": True,
            "retry_on_status": (502, 503, 504),
            "max_retries": 3
        }

        if api_key:
            conn_kwargs["api_key"] = api_key
        elif basic_auth:
            conn_kwargs["basic_auth"] = basic_auth

        self._client = Elasticsearch(**conn_kwargs)

    # -- cluster ------------------------------------------------------------

    def health(self) -> dict:
        """Cluster health as returned by Elasticsearch."""
        return self._client.cluster.health().body

    def up(self) -> bool:
        """Elasticsearch is up when the cluster health is green or yellow."""
        try:
            return self.health().get("status") in ("green", "yellow")
        except (ApiError, TransportError) as e:
            logger.debug("Elasticsearch not up: %s", e)
            return False

    # -- indexes ------------------------------------------------------------

    @_retry
    def index_exists(self, index: str) -> bool:
        return bool(self._client.indices.exists(index=index))

    @_retry
    def create_index(
        self,
        index: str,
        mappings: Optional[dict] = None,
        settings: Optional[dict] = None
    ) -> None:
        """
        Create an index.

        Args:
            index: Index name
            mappings: Document mappings, passed as-is
            settings: Index settings, passed as-is
        """
        self._client.indices.create(index=index, mappings=mappings, settings=settings)
        logger.debug("Created index %s", index)

    @_retry
    def delete_index(self, index: str) -> bool:
        """
        Delete an index.

        Returns:
            True if the index existed and was deleted, False if it didn't exist
        """
        try:
            self._client.indices.delete(index=index)
        except NotFoundError:
            logger.debug("Index %s doesn't exist and cannot be deleted", index)
            return False
        logger.debug("Deleted index %s", index)
        return True

    @_retry
    def refresh_index(self, index: str) -> None:
        """Force refresh (makes recent changes searchable)."""
        self._client.indices.refresh(index=index)

    @_retry
    def clear_index(self, index: str) -> None:
        """Delete all documents of an index, keeping the index itself."""
        if self._client.indices.exists(index=index):
            self._client.delete_by_query(
                index=index,
                query={"match_all": {}},
                conflicts="proceed",
                refresh=True
            )
            logger.debug("Cleared index %s", index)

    # -- documents ----------------------------------------------------------

    @_retry
    def put_document(self, index: str, id: str, document: dict) -> None:
        """Insert or replace a document."""
        self._client.index(index=index, id=id, document=document)

    @_retry
    def update_document(self, index: str, id: str, document: dict) -> Optional[dict]:
        """
        Partially update an existing document.

        Returns:
            The update response, or None if the document doesn't exist
        """
        try:
            return self._client.update(index=index, id=id, doc=document).body
        except NotFoundError:
            logger.debug("Cannot update document %s in index %s because it doesn't exist", id, index)
            return None

    def upsert_document(self, index: str, id: str, document: dict) -> None:
        """Update the document, inserting it if it doesn't exist yet."""
        if self.update_document(index, id, document) is None:
            logger.debug("Document %s does not exist yet in %s, inserting it", id, index)
            self.put_document(index, id, document)

    @_retry
    def delete_document(self, index: str, id: str) -> bool:
        """
        Delete a document.

        Returns:
            True if the document existed and was deleted, False otherwise
        """
        try:
            self._client.delete(index=index, id=id)
        except NotFoundError:
            logger.debug("Document %s doesn't exist in index %s and cannot be deleted", id, index)
            return False
        return True

    def bulk_upsert(
        self,
        index: str,
        documents: Iterable[Tuple[str, dict]],
        batch_size: int = 500
    ) -> Tuple[int, int]:
        """
        Index multiple documents using the bulk API.

        Chunks rejected with 429 are retried by the bulk helper itself.

        Args:
            index: Target index
            documents: (id, document) pairs
            batch_size: Documents per bulk request

        Returns:
            Tuple of (succeeded, failed) document counts
        """
        def generate_actions():
            for doc_id, document in documents:
                yield {
                    "_index": index,
                    "_id": doc_id,
                    "_source": document
                }

        success, errors = bulk(
            self._client,
            generate_actions(),
            chunk_size=batch_size,
            max_retries=MAX_ATTEMPTS - 1,
            raise_on_error=False
        )
        failed = errors if isinstance(errors, int) else len(errors)
        if failed:
            logger.warning("%d documents failed to upload to index %s", failed, index)
        return success, failed

    # -- search -------------------------------------------------------------

    @_retry
    def search_documents(self, indexes: List[str], query: dict) -> dict:
        """
        Search one or more indexes.

        Args:
            indexes: Index names
            query: Query DSL body

        Returns:
            The raw Elasticsearch response
        """
        index = ",".join(indexes)
        logger.debug("Searching index(es) %s with body %s", index, query)
        return self._client.search(index=index, body=query).body

    @_retry
    def count_documents(self, indexes: List[str], query: Optional[dict] = None) -> int:
        """Count documents matching a query body containing only "query"."""
        index = ",".join(indexes)
        if query:
            response = self._client.count(index=index, body=query)
        else:
            response = self._client.count(index=index)
        return response["count"]

    def close(self):
        """Close the Elasticsearch client connection."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
