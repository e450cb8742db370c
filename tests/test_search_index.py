import threading

from triplesearch.authorization import AuthorizationContext
from triplesearch.search_index import IndexStatus, SearchIndex, index_name, registry_key

from conftest import GROUP1, LEGAL, PUBLIC


def test_index_name_ignores_group_order():
    assert index_name("document", [PUBLIC, LEGAL]) == index_name("document", [LEGAL, PUBLIC])
    assert len(index_name("document", [PUBLIC])) == 32


def test_index_name_distinguishes_types_and_groups():
    names = {
        index_name("document", [PUBLIC]),
        index_name("person", [PUBLIC]),
        index_name("document", [PUBLIC, GROUP1]),
        index_name("document", [PUBLIC], [PUBLIC]),
    }
    assert len(names) == 4


def test_empty_used_groups_do_not_change_the_name():
    assert index_name("document", [PUBLIC], []) == index_name("document", [PUBLIC])


def test_registry_key():
    assert registry_key("document", [PUBLIC, GROUP1]) == ("document", "group1#public", "")
    index = SearchIndex("http://example.org/i", "abc", "document", [GROUP1, PUBLIC])
    assert index.key == registry_key("document", [PUBLIC, GROUP1])


def test_context_carries_the_index_groups():
    index = SearchIndex("http://example.org/i", "abc", "document", [PUBLIC], [PUBLIC])
    assert index.context == AuthorizationContext.for_groups([PUBLIC], [PUBLIC])
    assert not index.context.sudo


def test_wait_until_settled_returns_immediately_when_not_updating():
    index = SearchIndex("http://example.org/i", "abc", "document", [PUBLIC], status=IndexStatus.INVALID)
    assert index.wait_until_settled(timeout=0)


def test_wait_until_settled_times_out():
    index = SearchIndex("http://example.org/i", "abc", "document", [PUBLIC], status=IndexStatus.UPDATING)
    assert not index.wait_until_settled(timeout=0.05)


def test_wait_until_settled_wakes_on_status_change():
    index = SearchIndex("http://example.org/i", "abc", "document", [PUBLIC], status=IndexStatus.UPDATING)
    timer = threading.Timer(0.05, lambda: setattr(index, "status", IndexStatus.VALID))
    timer.start()
    try:
        assert index.wait_until_settled(timeout=5)
    finally:
        timer.cancel()
    assert index.status is IndexStatus.VALID
