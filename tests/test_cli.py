import json

import pytest

from triplesearch import app as app_module
from triplesearch import cli
from triplesearch.app import TripleSearch
from triplesearch.config import RDF_TYPE
from triplesearch.search_index import IndexStatus, index_name
from triplesearch.update_handler import AutomaticUpdateStrategy, InvalidatingUpdateStrategy

from conftest import DOCUMENT, FakeElastic, FakeSparql, uri


class FakeTika:
    def extract_text(self, filename, data):
        return ""

    def close(self):
        pass


class NoopIndexBuilder:
    def build(self, index, type_definition=None):
        return {}


@pytest.fixture
def app(configuration, elastic, tmp_path):
    configuration.update_queue_path = str(tmp_path / "queue.json")
    configuration.extraction_cache_path = str(tmp_path / "cache")
    app = TripleSearch(configuration, elastic=elastic, sparql=FakeSparql(), tika=FakeTika())
    app.index_manager.index_builder = NoopIndexBuilder()
    return app


@pytest.fixture
def run(app, monkeypatch):
    monkeypatch.setattr(cli, "create_app", lambda args: app)

    def invoke(*argv):
        return cli.main(["--log-level", "WARNING"] + list(argv))
    return invoke


def test_update_strategy_follows_configuration(configuration, elastic, tmp_path):
    configuration.update_queue_path = str(tmp_path / "queue.json")
    app = TripleSearch(configuration, elastic=elastic, sparql=FakeSparql(), tika=FakeTika())
    assert isinstance(app.update_handler.strategy, InvalidatingUpdateStrategy)
    assert app.update_handler.wait_interval == 8 * 60

    configuration.automatic_index_updates = True
    app = TripleSearch(configuration, elastic=elastic, sparql=FakeSparql(), tika=FakeTika())
    assert isinstance(app.update_handler.strategy, AutomaticUpdateStrategy)


def test_elasticsearch_client_follows_configuration(configuration, tmp_path, monkeypatch):
    created = {}
    monkeypatch.setattr(app_module, "ElasticClient", lambda **kwargs: created.update(kwargs) or FakeElastic())
    configuration.update_queue_path = str(tmp_path / "queue.json")
    configuration.elasticsearch_username = "elastic"
    configuration.elasticsearch_password = "changeme"
    configuration.elasticsearch_verify_certs = False

    TripleSearch(configuration, sparql=FakeSparql(), tika=FakeTika())

    assert created["hosts"] == ["http://elasticsearch:9200"]
    assert created["basic_auth"] == ("elastic", "changeme")
    assert created["api_key"] is None
    assert created["verify_certs"] is False
    assert created["request_timeout"] == 180


def test_document_builder_uses_configured_attachments(app):
    builder = app.document_builder(None)
    assert str(builder.attachments_path_base) == "/data"
    assert builder.extractor is app.extractor


def test_health(run, capsys):
    assert run("health") == 0
    assert "elasticsearch: up" in capsys.readouterr().out


def test_index_command(run, elastic, capsys):
    assert run("index", "--type", "document", "--groups", '[{"name": "public", "variables": []}]') == 0
    name = index_name("document", [{"name": "public", "variables": []}])
    assert name in elastic.indexes
    assert name in capsys.readouterr().out


def test_search_command(run, elastic, capsys):
    assert run("search", "documents", "--filter", "title=giraffes", "--groups", "[]") == 0
    output = json.loads(capsys.readouterr().out)
    assert output["count"] == 0
    [(_, query)] = elastic.searches
    assert query["query"] == {"multi_match": {"query": "giraffes", "fields": ["title"]}}


def test_invalid_filter_is_reported(run, capsys):
    assert run("search", "documents", "--filter", ":bogus:title=x") == 1
    assert "Unsupported filter flag" in capsys.readouterr().err


def test_remove_asks_for_confirmation(run, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    assert run("remove", "--type", "document") == 1
    assert "Aborted." in capsys.readouterr().out


def test_invalidate_and_remove(run, app, monkeypatch):
    [index] = app.search.update_indexes("document", [{"name": "public", "variables": []}])
    # the fake triplestore doesn't keep the index records
    monkeypatch.setattr(app.index_manager, "load_persisted", lambda: None)
    assert run("invalidate", "--type", "document") == 0
    assert index.status is IndexStatus.INVALID
    assert run("remove", "-f") == 0
    assert index.status is IndexStatus.DELETED


def test_delta_command(run, app, tmp_path, capsys):
    doc = "http://example.org/documents/1"
    path = tmp_path / "deltas.json"
    path.write_text(json.dumps([{
        "inserts": [{"subject": uri(doc), "predicate": uri(RDF_TYPE), "object": uri(DOCUMENT)}],
        "deletes": []
    }]), encoding="utf-8")

    assert run("delta", str(path)) == 0
    assert "Queued 1 updates and 0 deletes" in capsys.readouterr().out
    assert [c.subject for c in app.update_handler.pending()] == [doc]


def test_no_command_prints_help(run, capsys):
    assert run() == 2
    assert "usage" in capsys.readouterr().out
