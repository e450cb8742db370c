"""
TripleSearch — Authorization-Aware Search Indexes for RDF Data
==============================================================

Keeps Elasticsearch indexes in sync with an RDF triplestore. Every index
holds the documents of one search type as visible to one set of
authorization groups, so a caller only ever searches what it is allowed to
see.

Key Features:
- One index per (type, allowed groups), built lazily or eagerly
- Documents materialized from configurable property paths, with nested
  objects and extracted file content
- Triplestore deltas routed to a debounced update queue
- Filter parameters translated to the Elasticsearch Query DSL

Usage:
    from triplesearch import TripleSearch

    with TripleSearch.from_config_file("/config/config.json") as app:
        app.start()
        results = app.search.search(
            "documents",
            {"filter": {":fuzzy:title,description": "giraffe"}},
            allowed_groups=[{"name": "public", "variables": []}]
        )
"""

__version__ = "0.1.0"

from .app import TripleSearch
from .config import SearchConfiguration, load_configuration
from .index_manager import IndexManager
from .query_builder import ElasticQueryBuilder

__all__ = ["TripleSearch", "SearchConfiguration", "load_configuration", "IndexManager", "ElasticQueryBuilder"]
