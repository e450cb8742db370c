import json
import threading

import pytest

from triplesearch.exceptions import UnknownTypeError
from triplesearch.index_manager import ADMIN_GRAPH, SEARCH_NAMESPACE, IndexManager
from triplesearch.search_index import IndexStatus, index_name

from conftest import GROUP1, LEGAL, PUBLIC, FakeSparql, literal, uri


class FakeIndexBuilder:
    def __init__(self, fail=False):
        self.fail = fail
        self.built = []

    def build(self, index, type_definition=None):
        if self.fail:
            raise RuntimeError("triplestore unavailable")
        self.built.append(index.name)
        return {"index": index.name, "total_documents": 0}


def persisted_row(index_uri, name, predicate=None, group=None):
    row = {"index": uri(index_uri), "name": literal(name)}
    if predicate:
        row["predicate"] = uri(SEARCH_NAMESPACE + predicate)
        row["group"] = literal(json.dumps(group))
    return row


def admin_responder(persisted=None, names=()):
    """Answer the administrative graph queries of the index manager."""
    persisted = persisted or {}

    def respond(query, context):
        assert context.sudo
        if "SELECT DISTINCT ?name" in query:
            return [{"name": literal(n)} for n in names]
        for type_name, rows in persisted.items():
            if f'search:objectType """{type_name}"""' in query:
                return rows
        return []
    return respond


@pytest.fixture
def builder():
    return FakeIndexBuilder()


@pytest.fixture
def sparql():
    return FakeSparql(admin_responder())


@pytest.fixture
def manager(elastic, sparql, configuration, builder):
    return IndexManager(elastic, sparql, configuration, builder)


def test_fetch_creates_and_builds_index(manager, elastic, sparql, builder):
    [index] = manager.fetch_indexes("document", [PUBLIC])

    assert index.name == index_name("document", [PUBLIC])
    assert index.status is IndexStatus.VALID
    assert builder.built == [index.name]
    assert index.uri.startswith("http://mu.semte.ch/authorization/elasticsearch/indexes/")

    [(name, mappings, settings)] = elastic.created
    assert name == index.name
    assert mappings["properties"]["uuid"] == {"type": "keyword"}
    assert mappings["properties"]["uri"] == {"type": "keyword"}
    assert mappings["properties"]["title"] == {"type": "text"}
    assert settings is None

    [(insert, context)] = sparql.updates
    assert context.sudo
    assert "INSERT DATA" in insert
    assert f"GRAPH <{ADMIN_GRAPH}>" in insert
    assert f'search:indexName """{index.name}"""' in insert
    assert "search:hasUsedGroup" not in insert


def test_configured_mappings_are_not_mutated(manager, configuration):
    manager.fetch_indexes("document", [PUBLIC])
    assert "uuid" not in configuration.type_definition("document").mappings["properties"]


def test_reordered_groups_resolve_to_the_same_index(manager, elastic, sparql, builder):
    [first] = manager.fetch_indexes("document", [PUBLIC, LEGAL])
    [second] = manager.fetch_indexes("document", [LEGAL, PUBLIC])

    assert first is second
    assert len(elastic.created) == 1
    assert len(sparql.updates) == 1
    assert builder.built == [first.name]


def test_existing_triplestore_record_is_reused(elastic, configuration, builder):
    name = index_name("document", [PUBLIC])

    def respond(query, context):
        if "LIMIT 1" in query and name in query:
            return [{"index": uri("http://example.org/indexes/existing")}]
        return []

    sparql = FakeSparql(respond)
    manager = IndexManager(elastic, sparql, configuration, builder)
    [index] = manager.fetch_indexes("document", [PUBLIC])

    assert index.uri == "http://example.org/indexes/existing"
    assert sparql.updates == []


def test_failed_build_leaves_index_invalid(elastic, sparql, configuration, caplog):
    manager = IndexManager(elastic, sparql, configuration, FakeIndexBuilder(fail=True))

    [index] = manager.fetch_indexes("document", [PUBLIC])

    assert index.status is IndexStatus.INVALID
    assert "Failed to update index" in caplog.text


def test_force_update_rebuilds(manager, builder):
    [index] = manager.fetch_indexes("document", [PUBLIC])
    manager.fetch_indexes("document", [PUBLIC], force_update=True)
    assert builder.built == [index.name, index.name]


def test_additive_indexes(manager, configuration):
    configuration.additive_indexes = True
    indexes = manager.fetch_indexes("document", [PUBLIC, GROUP1])
    assert sorted(i.name for i in indexes) == sorted([
        index_name("document", [PUBLIC]),
        index_name("document", [GROUP1]),
    ])


def test_used_groups_partition_indexes(manager):
    [plain] = manager.fetch_indexes("document", [PUBLIC])
    [used] = manager.fetch_indexes("document", [PUBLIC], [PUBLIC])
    assert plain is not used
    assert used.used_groups == [PUBLIC]


def test_fetch_without_groups_only_returns_registered_indexes(manager, elastic):
    assert manager.fetch_indexes("document", None) == []
    [index] = manager.fetch_indexes("document", [PUBLIC])
    assert manager.fetch_indexes(None, None) == [index]
    assert len(elastic.created) == 1


def test_unknown_type(manager):
    with pytest.raises(UnknownTypeError):
        manager.fetch_indexes("nothing", [PUBLIC])


def test_invalidate_marks_indexes_for_rebuild(manager, builder):
    [document] = manager.fetch_indexes("document", [PUBLIC])
    [person] = manager.fetch_indexes("person", [PUBLIC])

    invalidated = manager.invalidate_indexes("document", None)

    assert invalidated == [document]
    assert document.status is IndexStatus.INVALID
    assert person.status is IndexStatus.VALID

    manager.fetch_indexes("document", [PUBLIC])
    assert builder.built.count(document.name) == 2


def test_invalidate_unknown_group_set_is_a_no_op(manager):
    manager.fetch_indexes("document", [PUBLIC])
    assert manager.invalidate_indexes(None, [GROUP1]) == []


def test_remove_indexes_is_idempotent(manager, elastic, sparql):
    [index] = manager.fetch_indexes("document", [PUBLIC])

    assert manager.remove_indexes("document", [PUBLIC]) == [index]
    assert index.status is IndexStatus.DELETED
    assert index.name not in elastic.indexes
    assert manager.indexes_for_type("document") == []
    assert any("DELETE" in q and index.name in q for q, _ in sparql.updates)

    assert manager.remove_indexes("document", [PUBLIC]) == []


def test_remove_index_by_groups(manager, elastic):
    [index] = manager.fetch_indexes("document", [PUBLIC, GROUP1])
    manager.remove_index("document", [GROUP1, PUBLIC])
    assert index.status is IndexStatus.DELETED
    assert elastic.indexes == {}
    manager.remove_index("document", [GROUP1, PUBLIC])


def test_load_persisted(elastic, configuration, builder):
    rows = [
        persisted_row("http://example.org/indexes/1", "n1", "hasAllowedGroup", PUBLIC),
        persisted_row("http://example.org/indexes/1", "n1", "hasAllowedGroup", LEGAL),
        persisted_row("http://example.org/indexes/1", "n1", "hasUsedGroup", PUBLIC),
        persisted_row("http://example.org/indexes/2", "n2"),
    ]
    manager = IndexManager(elastic, FakeSparql(admin_responder({"document": rows})), configuration, builder)

    manager.load_persisted()

    indexes = {i.name: i for i in manager.indexes_for_type("document")}
    assert set(indexes) == {"n1", "n2"}
    assert indexes["n1"].allowed_groups == [LEGAL, PUBLIC]
    assert indexes["n1"].used_groups == [PUBLIC]
    assert indexes["n2"].allowed_groups == []
    assert manager.indexes_for_type("person") == []


def test_initialize_destroys_indexes_when_not_persisted(elastic, configuration, builder):
    configuration.persist_indexes = False
    elastic.indexes["stale"] = {}
    sparql = FakeSparql(admin_responder(names=["stale"]))
    manager = IndexManager(elastic, sparql, configuration, builder)

    manager.initialize()

    assert "stale" not in elastic.indexes
    assert any('"""stale"""' in q for q, _ in sparql.updates)


def test_initialize_builds_eager_indexes(elastic, sparql, configuration, builder):
    configuration.eager_indexing_groups = [[PUBLIC]]
    manager = IndexManager(elastic, sparql, configuration, builder)

    manager.initialize()

    assert sorted(builder.built) == sorted([
        index_name("document", [PUBLIC]),
        index_name("person", [PUBLIC]),
    ])


def test_wait_for_indexes(manager):
    [index] = manager.fetch_indexes("document", [PUBLIC])
    assert manager.wait_for_indexes([index], timeout=0)
    index.status = IndexStatus.UPDATING
    assert not manager.wait_for_indexes([index], timeout=0.01)


class BlockingIndexBuilder(FakeIndexBuilder):
    """Builder whose builds can be held open until released."""

    def __init__(self):
        super().__init__()
        self.block = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def build(self, index, type_definition=None):
        if self.block:
            self.entered.set()
            self.release.wait(5)
        return super().build(index, type_definition)


def test_forced_update_during_rebuild_keeps_readers_waiting(elastic, sparql, configuration):
    builder = BlockingIndexBuilder()
    manager = IndexManager(elastic, sparql, configuration, builder)
    [index] = manager.fetch_indexes("document", [PUBLIC])
    builder.block = True

    first = threading.Thread(target=manager.fetch_indexes, args=("document", [PUBLIC]),
                             kwargs={"force_update": True})
    first.start()
    assert builder.entered.wait(5)

    second = threading.Thread(target=manager.fetch_indexes, args=("document", [PUBLIC]),
                              kwargs={"force_update": True})
    second.start()
    second.join(0.05)

    assert index.status is IndexStatus.UPDATING
    assert not manager.wait_for_indexes([index], timeout=0.05)

    builder.release.set()
    first.join(5)
    second.join(5)

    assert builder.built == [index.name] * 3
    assert index.status is IndexStatus.VALID
