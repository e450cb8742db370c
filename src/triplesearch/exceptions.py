"""Exceptions raised by TripleSearch."""


class TripleSearchError(Exception):
    """Base class for all TripleSearch errors."""


class ConfigurationError(TripleSearchError):
    """The search configuration is unusable."""


class InvalidFilterError(TripleSearchError, ValueError):
    """A search request contains an invalid filter, sort or page parameter."""


class UnknownTypeError(TripleSearchError, LookupError):
    """No type is configured for the requested name or path."""


class SparqlError(TripleSearchError):
    """The SPARQL endpoint rejected a request or kept failing."""


class ConnectionPoolTimeout(SparqlError):
    """No pooled connection became available in time."""


class ExtractionError(TripleSearchError):
    """Text extraction failed for a file."""
