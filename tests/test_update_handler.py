import json
import threading

from triplesearch.authorization import AuthorizationContext
from triplesearch.search_index import IndexStatus, SearchIndex
from triplesearch.update_handler import (
    AutomaticUpdateStrategy,
    ChangeKind,
    InvalidatingUpdateStrategy,
    PendingChange,
    UpdateHandler,
    UpdateStrategy,
)

from conftest import DOCUMENT, GROUP1, PUBLIC, FakeSparql

SUBJECT = "http://example.org/documents/1"


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingStrategy(UpdateStrategy):
    def __init__(self, fail_on=()):
        self.handled = []
        self.fail_on = set(fail_on)
        self.event = threading.Event()

    def handle(self, subject, index_types, kind):
        self.handled.append((subject, set(index_types), kind))
        self.event.set()
        if subject in self.fail_on:
            raise RuntimeError("elasticsearch unavailable")


class FakeIndexManager:
    def __init__(self, indexes=()):
        self.indexes = list(indexes)
        self.invalidated = []

    def indexes_for_type(self, type_name):
        return [i for i in self.indexes if i.type_name == type_name]

    def invalidate_indexes(self, type_name, allowed_groups, used_groups=None):
        self.invalidated.append((type_name, allowed_groups))
        return []


def test_changes_wait_for_the_interval():
    clock = Clock()
    strategy = RecordingStrategy()
    handler = UpdateHandler(strategy, wait_interval=60, clock=clock)

    handler.add_update(SUBJECT, "document")
    assert handler.process_due() == 0

    clock.now += 60
    assert handler.process_due() == 1
    assert strategy.handled == [(SUBJECT, {"document"}, ChangeKind.UPDATE)]
    assert handler.pending() == []


def test_changes_to_the_same_subject_are_coalesced():
    clock = Clock()
    strategy = RecordingStrategy()
    handler = UpdateHandler(strategy, wait_interval=60, clock=clock)

    handler.add_update(SUBJECT, "document")
    clock.now += 30
    handler.add_delete(SUBJECT, "person")
    handler.add_update("http://example.org/documents/2", "document")

    [first, second] = handler.pending()
    assert first.subject == SUBJECT
    assert first.index_types == {"document", "person"}
    assert first.kind is ChangeKind.UPDATE
    assert first.enqueued_at == 1000.0

    # the window started at the first change
    clock.now += 30
    assert handler.process_due() == 1
    assert strategy.handled == [(SUBJECT, {"document", "person"}, ChangeKind.UPDATE)]


def test_changes_are_handled_in_fifo_order():
    clock = Clock()
    strategy = RecordingStrategy()
    handler = UpdateHandler(strategy, wait_interval=0, clock=clock)
    for i in range(3):
        handler.add_update(f"http://example.org/documents/{i}", "document")

    handler.process_due()

    assert [s for s, _, _ in strategy.handled] == [f"http://example.org/documents/{i}" for i in range(3)]


def test_failing_change_is_logged_and_dropped(caplog):
    strategy = RecordingStrategy(fail_on=[SUBJECT])
    handler = UpdateHandler(strategy, wait_interval=0)
    handler.add_update(SUBJECT, "document")
    handler.add_update("http://example.org/documents/2", "document")

    assert handler.process_due() == 2
    assert "Update of http://example.org/documents/1 failed" in caplog.text
    assert handler.pending() == []


def test_high_water_mark_warning(caplog):
    handler = UpdateHandler(RecordingStrategy(), high_water_mark=2)
    for i in range(3):
        handler.add_update(f"http://example.org/documents/{i}", "document")
    assert "Large number (3) of updates" in caplog.text


def test_queue_survives_restart(tmp_path):
    queue_path = tmp_path / "queue" / "queue.json"
    clock = Clock()
    handler = UpdateHandler(RecordingStrategy(), queue_path=str(queue_path), clock=clock)
    handler.add_update(SUBJECT, "document")
    handler.add_delete("http://example.org/documents/2", "person")
    handler.persist()

    snapshot = json.loads(queue_path.read_text(encoding="utf-8"))
    assert [entry["subject"] for entry in snapshot["queue"]] == [SUBJECT, "http://example.org/documents/2"]

    restored = UpdateHandler(RecordingStrategy(), queue_path=str(queue_path), clock=clock)
    assert [c.to_json() for c in restored.pending()] == [c.to_json() for c in handler.pending()]


def test_corrupt_queue_file_is_ignored(tmp_path, caplog):
    queue_path = tmp_path / "queue.json"
    queue_path.write_text("{not json", encoding="utf-8")
    handler = UpdateHandler(RecordingStrategy(), queue_path=str(queue_path))
    assert handler.pending() == []
    assert "Unable to restore update queue" in caplog.text


def test_pending_change_json():
    change = PendingChange(SUBJECT, 12.5, ChangeKind.DELETE, {"person", "document"})
    assert change.to_json() == {
        "subject": SUBJECT, "enqueued_at": 12.5, "kind": "delete", "index_types": ["document", "person"]
    }
    assert PendingChange.from_json(change.to_json()) == change


def test_worker_threads_drain_the_queue(tmp_path):
    strategy = RecordingStrategy()
    handler = UpdateHandler(strategy, wait_interval=0, queue_path=str(tmp_path / "queue.json"))
    handler.start()
    try:
        handler.add_update(SUBJECT, "document")
        assert strategy.event.wait(5)
    finally:
        handler.stop(timeout=5)
    assert strategy.handled[0][0] == SUBJECT
    assert json.loads((tmp_path / "queue.json").read_text(encoding="utf-8")) == {"queue": []}


def test_invalidating_strategy():
    manager = FakeIndexManager()
    InvalidatingUpdateStrategy(manager).handle(SUBJECT, {"person", "document"}, ChangeKind.UPDATE)
    assert manager.invalidated == [("document", None), ("person", None)]


def make_automatic(configuration, elastic, indexes, visible_to):
    def asker(query, context):
        return context == visible_to

    sparql = FakeSparql(asker=asker)
    contexts = []

    class Builder:
        def __init__(self, context):
            contexts.append(context)

        def fetch_document(self, subject, properties):
            return {"uuid": "1", "title": "Visible"}

    strategy = AutomaticUpdateStrategy(FakeIndexManager(indexes), elastic, sparql, configuration, Builder)
    return strategy, sparql, contexts


def test_automatic_strategy_follows_visibility(configuration, elastic):
    public = SearchIndex("http://example.org/i/1", "public-index", "document", [PUBLIC])
    group1 = SearchIndex("http://example.org/i/2", "group1-index", "document", [GROUP1])
    elastic.indexes = {"public-index": {}, "group1-index": {SUBJECT: {"title": "Stale"}}}
    strategy, sparql, contexts = make_automatic(
        configuration, elastic, [public, group1], AuthorizationContext.for_groups([PUBLIC])
    )

    strategy.handle(SUBJECT, {"document"}, ChangeKind.DELETE)

    assert elastic.indexes["public-index"][SUBJECT] == {"uuid": "1", "title": "Visible"}
    assert SUBJECT not in elastic.indexes["group1-index"]
    assert contexts == [public.context]
    asks = [q for q, _ in sparql.queries]
    assert asks == [f"ASK {{ <{SUBJECT}> a <{DOCUMENT}> . }}"] * 2


def test_automatic_strategy_skips_deleted_indexes(configuration, elastic):
    index = SearchIndex("http://example.org/i/1", "gone", "document", [PUBLIC], status=IndexStatus.DELETED)
    strategy, _, _ = make_automatic(configuration, elastic, [index], AuthorizationContext.for_groups([PUBLIC]))

    strategy.handle(SUBJECT, {"document"}, ChangeKind.UPDATE)

    assert "gone" not in elastic.indexes
