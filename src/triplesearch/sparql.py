"""
TripleSearch SPARQL — Triplestore Client
========================================

A small SPARQL 1.1 protocol client on top of a pooled ``requests`` session.

Every call carries an AuthorizationContext which is sent to the
authorization layer in front of the triplestore as mu-auth-* headers.
Transient failures (connection errors, timeouts, 429 and 5xx responses) are
retried with capped exponential backoff; once the retry budget is spent the
error surfaces to the caller as a SparqlError.

Example:
    client = SparqlClient("http://database:8890/sparql")
    context = AuthorizationContext.for_groups([{"name": "public", "variables": []}])
    rows = client.query("SELECT ?s WHERE { ?s a <http://example.org/Document> }", context)
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from requests.adapters import HTTPAdapter
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .authorization import AuthorizationContext
from .exceptions import ConnectionPoolTimeout, SparqlError


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 6
MAX_BACKOFF_SECONDS = 36

Binding = Dict[str, Dict[str, str]]


class TransientSparqlError(SparqlError):
    """The endpoint answered with a status worth retrying."""


# ---------------------------------------------------------------------------
# Escaping and property paths
# ---------------------------------------------------------------------------

def escape_uri(uri: str) -> str:
    return "<" + re.sub(r'([\\"<>])', r"\\\1", uri) + ">"


def escape_string(value: str) -> str:
    return '"""' + value.replace("\\", "\\\\").replace('"', '\\"') + '"""'


def escape_literal(value: str, datatype: Optional[str] = None, language: Optional[str] = None) -> str:
    """Escape a literal, keeping its datatype or language tag."""
    literal = escape_string(value)
    if language:
        return f"{literal}@{language}"
    if datatype:
        return f"{literal}^^{escape_uri(datatype)}"
    return literal


def predicate_term(predicate: str) -> str:
    """Escape one predicate of a property path; a leading ^ marks the inverse."""
    if predicate.startswith("^"):
        return "^" + escape_uri(predicate[1:])
    return escape_uri(predicate)


def make_predicate_path(path: Iterable[str]) -> str:
    """Turn a configured property path into a SPARQL property path."""
    return "/".join(predicate_term(p) for p in path)


def binding_value(binding: Binding, variable: str) -> Optional[str]:
    term = binding.get(variable)
    return term.get("value") if term else None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SparqlClient:
    """
    Pooled SPARQL client.

    At most ``pool_size`` requests are in flight at once. A caller that
    cannot obtain a connection within ``pool_timeout`` seconds gets a
    ConnectionPoolTimeout instead of waiting indefinitely.
    """

    def __init__(
        self,
        endpoint: str,
        pool_size: int = 10,
        pool_timeout: float = 30.0,
        request_timeout: float = 300.0,
        max_attempts: int = MAX_ATTEMPTS
    ):
        """
        Args:
            endpoint: URL of the SPARQL endpoint
            pool_size: Maximum number of concurrent connections
            pool_timeout: Seconds to wait for a free connection
            request_timeout: Read timeout of a single request
            max_attempts: Attempts per request, including the first one
        """
        self.endpoint = endpoint
        self.pool_timeout = pool_timeout
        self.request_timeout = request_timeout

        self._session = requests.Session()
        adapter = HTTPAdapter(pool_connections=1, pool_maxsize=pool_size, pool_block=True)
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)
        self._slots = threading.BoundedSemaphore(pool_size)

        self._retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, max=MAX_BACKOFF_SECONDS),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, TransientSparqlError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )

    @contextmanager
    def _connection(self) -> Iterator[requests.Session]:
        if not self._slots.acquire(timeout=self.pool_timeout):
            raise ConnectionPoolTimeout(
                f"No SPARQL connection available after {self.pool_timeout} seconds"
            )
        try:
            yield self._session
        finally:
            self._slots.release()

    def _send(self, data: Dict[str, str], context: AuthorizationContext, accept: str) -> requests.Response:
        headers = {"Accept": accept}
        headers.update(context.headers())
        with self._connection() as session:
            response = session.post(self.endpoint, data=data, headers=headers, timeout=self.request_timeout)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSparqlError(
                f"SPARQL endpoint responded {response.status_code}: {response.text[:1024]}"
            )
        if response.status_code >= 400:
            raise SparqlError(
                f"SPARQL endpoint rejected request ({response.status_code}): {response.text[:1024]}"
            )
        return response

    def _post(self, data: Dict[str, str], context: AuthorizationContext, accept: str) -> requests.Response:
        try:
            return self._retrying(self._send, data, context, accept)
        except requests.RequestException as e:
            raise SparqlError(f"Failed to reach SPARQL endpoint {self.endpoint}: {e}") from e

    def query(self, query: str, context: AuthorizationContext) -> List[Binding]:
        """
        Execute a SELECT query.

        Returns:
            The result bindings, one dict per row mapping variable names to
            SPARQL JSON terms ({"type": ..., "value": ..., "datatype": ...})
        """
        logger.debug("Executing query %s", query)
        response = self._post({"query": query}, context, "application/sparql-results+json")
        return response.json()["results"]["bindings"]

    def ask(self, query: str, context: AuthorizationContext) -> bool:
        """Execute an ASK query."""
        logger.debug("Executing ask %s", query)
        response = self._post({"query": query}, context, "application/sparql-results+json")
        return bool(response.json()["boolean"])

    def update(self, query: str, context: AuthorizationContext) -> None:
        """Execute a SPARQL update."""
        logger.debug("Executing update %s", query)
        self._post({"update": query}, context, "application/sparql-results+json")

    def sudo_query(self, query: str) -> List[Binding]:
        return self.query(query, AuthorizationContext.sudo_context())

    def sudo_update(self, query: str) -> None:
        self.update(query, AuthorizationContext.sudo_context())

    def up(self) -> bool:
        """Check whether the endpoint answers a trivial ASK query."""
        try:
            response = self._send(
                {"query": "ASK { ?s ?p ?o }"},
                AuthorizationContext.sudo_context(),
                "application/sparql-results+json"
            )
            return "boolean" in response.json()
        except (requests.RequestException, SparqlError, ValueError) as e:
            logger.debug("SPARQL endpoint not up: %s", e)
            return False

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def count_from(bindings: List[Binding], variable: str = "count") -> int:
    """Read an integer aggregate from the first result row."""
    if not bindings:
        return 0
    value: Any = binding_value(bindings[0], variable)
    return int(value) if value is not None else 0
