from typing import Callable, Dict, List, Optional, Tuple

import pytest

from triplesearch.authorization import AuthorizationContext
from triplesearch.config import ServiceSettings, parse_configuration


DOCUMENT = "http://example.org/Document"
TITLE = "http://purl.org/dc/elements/1.1/title"
CREATOR = "http://purl.org/dc/terms/creator"
NAME = "http://xmlns.com/foaf/0.1/name"
PERSON = "http://xmlns.com/foaf/0.1/Person"
FILE = "http://example.org/file"

PUBLIC = {"name": "public", "variables": []}
GROUP1 = {"name": "group1", "variables": []}
LEGAL = {"name": "department", "variables": ["legal", "europe"]}


def uri(value):
    return {"type": "uri", "value": value}


def literal(value, datatype=None):
    term = {"type": "literal", "value": value}
    if datatype:
        term["datatype"] = datatype
    return term


class FakeSparql:
    """
    In-memory stand-in for SparqlClient.

    ``responder(query, context)`` returns the bindings of a SELECT, ``asker``
    the result of an ASK. Every call is recorded.
    """

    def __init__(self, responder: Optional[Callable] = None, asker: Optional[Callable] = None):
        self.responder = responder or (lambda query, context: [])
        self.asker = asker or (lambda query, context: False)
        self.queries: List[Tuple[str, AuthorizationContext]] = []
        self.updates: List[Tuple[str, AuthorizationContext]] = []

    def query(self, query, context):
        self.queries.append((query, context))
        return self.responder(query, context)

    def ask(self, query, context):
        self.queries.append((query, context))
        return self.asker(query, context)

    def update(self, query, context):
        self.updates.append((query, context))

    def sudo_query(self, query):
        return self.query(query, AuthorizationContext.sudo_context())

    def sudo_update(self, query):
        self.update(query, AuthorizationContext.sudo_context())

    def up(self):
        return True

    def close(self):
        pass


class FakeElastic:
    """In-memory stand-in for ElasticClient."""

    def __init__(self):
        self.indexes: Dict[str, Dict[str, dict]] = {}
        self.created: List[Tuple[str, dict, dict]] = []
        self.searches: List[Tuple[List[str], dict]] = []
        self.search_response: dict = {"hits": {"total": {"value": 0}, "hits": []}}

    def up(self):
        return True

    def health(self):
        return {"status": "green"}

    def index_exists(self, index):
        return index in self.indexes

    def create_index(self, index, mappings=None, settings=None):
        self.created.append((index, mappings, settings))
        self.indexes[index] = {}

    def delete_index(self, index):
        return self.indexes.pop(index, None) is not None

    def refresh_index(self, index):
        pass

    def clear_index(self, index):
        if index in self.indexes:
            self.indexes[index].clear()

    def put_document(self, index, id, document):
        self.indexes.setdefault(index, {})[id] = document

    def update_document(self, index, id, document):
        docs = self.indexes.get(index, {})
        if id not in docs:
            return None
        docs[id].update(document)
        return {"result": "updated"}

    def upsert_document(self, index, id, document):
        if self.update_document(index, id, document) is None:
            self.put_document(index, id, document)

    def delete_document(self, index, id):
        return self.indexes.get(index, {}).pop(id, None) is not None

    def bulk_upsert(self, index, documents, batch_size=500):
        count = 0
        for doc_id, document in documents:
            self.put_document(index, doc_id, document)
            count += 1
        return count, 0

    def search_documents(self, indexes, query):
        self.searches.append((list(indexes), query))
        return self.search_response

    def count_documents(self, indexes, query=None):
        return sum(len(self.indexes.get(i, {})) for i in indexes)

    def close(self):
        pass


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep settings variables of the host environment out of the tests."""
    for name in list(ServiceSettings.model_fields) + ["mu_sparql_endpoint"]:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest.fixture
def raw_config():
    return {
        "persist_indexes": True,
        "batch_size": 2,
        "eager_indexing_groups": [],
        "types": [
            {
                "type": "document",
                "on_path": "documents",
                "rdf_type": DOCUMENT,
                "properties": {
                    "title": TITLE,
                    "author": {
                        "via": CREATOR,
                        "rdf_type": PERSON,
                        "properties": {"name": NAME}
                    },
                    "creator_name": [CREATOR, NAME],
                    "data": {"via": [FILE], "attachment_pipeline": "attachment"}
                },
                "mappings": {"properties": {"title": {"type": "text"}}}
            },
            {
                "type": "person",
                "on_path": "people",
                "rdf_type": PERSON,
                "properties": {"name": NAME, "documents": ["^" + CREATOR]},
                "mappings": {"properties": {}}
            }
        ]
    }


@pytest.fixture
def configuration(raw_config):
    return parse_configuration(raw_config)


@pytest.fixture
def elastic():
    return FakeElastic()
