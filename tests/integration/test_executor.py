"""
Integration tests -- compiled plans executed against a real store:
pagination, sort stability, projection, lookups, includes and joins.
"""
from __future__ import annotations

import pytest

from recordhub.db.connection import make_engine
from recordhub.db.executor import QueryExecutor, project, sort_documents
from recordhub.db.store import RecordStore
from recordhub.governance.policy import build_config
from recordhub.query.filter_parser import OrderKey, Projection, parse_filter
from recordhub.query.planner import QueryContext, RelationScopes, compile_count, compile_query

HOST = "tapp://localhost"


@pytest.fixture
def env():
    store = RecordStore(make_engine("sqlite://"))
    context = QueryContext(config=build_config(env={"access_control": "false"}))
    return store, QueryExecutor(store), context


def _run(executor, context, segment, raw=None, **kwargs):
    return executor.run(compile_query(segment, parse_filter(raw), context, **kwargs))


def _entity(store, rid, **fields):
    doc = {"_id": rid, "_kind": "entity", "_visibility": "protected", **fields}
    store.insert("GenericEntity", doc)
    return doc


# ── Pagination / sorting ────────────────────────────────

def test_pages_concatenate_to_full_result(env):
    store, executor, context = env
    for i in range(7):
        _entity(store, f"e{i}", rank=(i * 3) % 7)
    full = _run(executor, context, "entities", {"order": "rank ASC"})
    assert [d["rank"] for d in full] == list(range(7))

    pages = []
    for skip in (0, 3, 6, 9):
        page = _run(executor, context, "entities", {"order": "rank ASC", "limit": 3, "skip": skip})
        assert len(page) == max(0, min(3, 7 - skip))
        pages.extend(page)
    assert [d["_id"] for d in pages] == [d["_id"] for d in full]


def test_sort_is_stable_for_ties(env):
    store, executor, context = env
    for i, group in enumerate(["b", "a", "b", "a", "b"]):
        _entity(store, f"e{i}", group=group)
    first = _run(executor, context, "entities", {"order": ["group ASC"]})
    second = _run(executor, context, "entities", {"order": ["group ASC"]})
    assert [d["_id"] for d in first] == ["e1", "e3", "e0", "e2", "e4"]
    assert [d["_id"] for d in first] == [d["_id"] for d in second]


def test_multi_key_sort_with_descending():
    docs = [{"_id": "1", "a": 1, "b": 2}, {"_id": "2", "a": 2, "b": 1}, {"_id": "3", "a": 1, "b": 3}]
    out = sort_documents(docs, (OrderKey("a", False), OrderKey("b", True)))
    assert [d["_id"] for d in out] == ["3", "1", "2"]


def test_missing_values_sort_first():
    docs = [{"_id": "1", "n": 2}, {"_id": "2"}, {"_id": "3", "n": 1}]
    assert [d["_id"] for d in sort_documents(docs, (OrderKey("n", False),))] == ["2", "3", "1"]


def test_default_order_is_insertion_order(env):
    store, executor, context = env
    for rid in ("z", "a", "m"):
        _entity(store, rid)
    assert [d["_id"] for d in _run(executor, context, "entities")] == ["z", "a", "m"]


# ── Projection ──────────────────────────────────────────

def test_allow_list_projection_keeps_exactly_requested_keys(env):
    store, executor, context = env
    _entity(store, "e1", customField=1, other=2)
    out = _run(executor, context, "entities", {"fields": {"_id": True, "_kind": True}})
    assert out == [{"_id": "e1", "_kind": "entity"}]


def test_deny_list_projection(env):
    store, executor, context = env
    _entity(store, "e1", customField=1, other=2)
    out = _run(executor, context, "entities", {"fields": {"customField": False}})
    assert out == [{"_id": "e1", "_kind": "entity", "_visibility": "protected", "other": 2}]


def test_project_dotted_path():
    doc = {"_id": "1", "a": {"b": 1, "c": 2}}
    assert project(doc, Projection("include", ("a.b",))) == {"_id": "1", "a": {"b": 1}}
    assert project(doc, Projection("exclude", ("a.c",))) == {"_id": "1", "a": {"b": 1}}


# ── Lookups ─────────────────────────────────────────────

def test_dangling_references_are_dropped(env):
    store, executor, context = env
    _entity(store, "a1", _name="Author 1")
    _entity(store, "a2", _name="Author 2")
    _entity(store, "book", authors=[
        f"{HOST}/entities/a2",
        f"{HOST}/entities/missing",
        "not a uri",
        f"{HOST}/entities/a1",
    ])
    out = _run(executor, context, "entities", {
        "where": {"_id": "book"},
        "lookup": [{"prop": "authors"}],
    })
    assert [a["_id"] for a in out[0]["authors"]] == ["a2", "a1"]


def test_scalar_lookup_is_removed_when_scope_excludes_target(env):
    store, executor, context = env
    _entity(store, "p1", _name="Ace", city="NY")
    _entity(store, "book", publisher=f"{HOST}/entities/p1")
    found = _run(executor, context, "entities", {
        "where": {"_id": "book"},
        "lookup": [{"prop": "publisher", "scope": {"where": {"city": "NY"}}}],
    })
    assert found[0]["publisher"]["_name"] == "Ace"
    missed = _run(executor, context, "entities", {
        "where": {"_id": "book"},
        "lookup": [{"prop": "publisher", "scope": {"where": {"city": "LA"}}}],
    })
    assert "publisher" not in missed[0]


def test_nested_lookup_with_projection_at_each_level(env):
    store, executor, context = env
    _entity(store, "pub", _name="Ace Books", city="NY")
    _entity(store, "a1", _name="Frank", born=1920, publisher=f"{HOST}/entities/pub")
    _entity(store, "a2", _name="Ursula", born=1929, publisher=f"{HOST}/entities/pub")
    _entity(store, "book", _name="Anthology", pages=300, relatedAuthors=[
        f"{HOST}/entities/a1", f"{HOST}/entities/a2",
    ])
    out = _run(executor, context, "entities", {
        "where": {"_id": "book"},
        "fields": {"_name": True, "relatedAuthors": True},
        "lookup": [{
            "prop": "relatedAuthors",
            "scope": {
                "fields": {"_name": True, "publisher": True},
                "lookup": [{"prop": "publisher", "scope": {"fields": {"_name": True}}}],
            },
        }],
    })
    assert out == [{
        "_id": "book",
        "_name": "Anthology",
        "relatedAuthors": [
            {"_id": "a1", "_name": "Frank", "publisher": {"_id": "pub", "_name": "Ace Books"}},
            {"_id": "a2", "_name": "Ursula", "publisher": {"_id": "pub", "_name": "Ace Books"}},
        ],
    }]


def test_lookup_scope_order_and_limit(env):
    store, executor, context = env
    _entity(store, "a1", n=1)
    _entity(store, "a2", n=2)
    _entity(store, "a3", n=3)
    _entity(store, "book", refs=[f"{HOST}/entities/{r}" for r in ("a1", "a2", "a3")])
    out = _run(executor, context, "entities", {
        "where": {"_id": "book"},
        "lookup": [{"prop": "refs", "scope": {"order": "n DESC", "limit": 2}}],
    })
    assert [r["_id"] for r in out[0]["refs"]] == ["a3", "a2"]


def test_lookup_through_array_of_objects_keeps_siblings(env):
    store, executor, context = env
    _entity(store, "a", _name="Widget")
    _entity(store, "order", items=[
        {"ref": f"{HOST}/entities/a", "qty": 2},
        {"ref": f"{HOST}/entities/zz", "qty": 5},
        {"qty": 7},
    ])
    out = _run(executor, context, "entities", {
        "where": {"_id": "order"},
        "lookup": [{"prop": "items.ref", "scope": {"fields": {"_name": True}}}],
    })
    assert out[0]["items"] == [
        {"ref": {"_id": "a", "_name": "Widget"}, "qty": 2},
        {"qty": 5},
        {"qty": 7},
    ]


def test_lookup_resolves_a_page_in_one_pass(env, monkeypatch):
    store, executor, context = env
    _entity(store, "pub", _name="Ace")
    for i in range(20):
        _entity(store, f"b{i}", publisher=f"{HOST}/entities/pub")
    calls = []
    fetch_many = store.fetch_many
    monkeypatch.setattr(store, "fetch_many", lambda *a: calls.append(a) or fetch_many(*a))
    out = _run(executor, context, "entities", {
        "where": {"publisher": {"exists": True}},
        "lookup": [{"prop": "publisher"}],
    })
    assert len(out) == 20
    assert all(d["publisher"]["_name"] == "Ace" for d in out)
    assert len(calls) == 1


# ── Includes / relations ────────────────────────────────

def test_include_reactions(env):
    store, executor, context = env
    _entity(store, "e1")
    _entity(store, "e2")
    store.insert("EntityReaction", {"_id": "r1", "_entityId": "e1", "_kind": "like"})
    store.insert("EntityReaction", {"_id": "r2", "_entityId": "e2", "_kind": "like"})
    out = _run(executor, context, "entities", {"include": ["reactions"]})
    assert [[r["_id"] for r in d["reactions"]] for d in out] == [["r1"], ["r2"]]


def test_include_runs_one_query_and_limits_per_parent(env, monkeypatch):
    store, executor, context = env
    for i in range(5):
        _entity(store, f"e{i}")
        for j in range(3):
            store.insert("EntityReaction", {"_id": f"r{i}{j}", "_entityId": f"e{i}", "n": j})
    scans = []
    scan = store.scan
    monkeypatch.setattr(store, "scan", lambda *a: scans.append(a) or scan(*a))
    out = _run(executor, context, "entities", {
        "include": [{"relation": "reactions", "scope": {"order": "n DESC", "limit": 2}}],
    })
    assert [[r["_id"] for r in d["reactions"]] for d in out] == [
        [f"r{i}2", f"r{i}1"] for i in range(5)
    ]
    # one scan for the entities, one for all of their reactions
    assert len(scans) == 2


def test_relation_join_metadata_and_endpoint_filter(env):
    store, executor, context = env
    store.insert("List", {"_id": "l1", "_kind": "wishlist", "_name": "W", "secret": 1})
    store.insert("List", {"_id": "l2", "_kind": "favorites", "_name": "F"})
    _entity(store, "e1", _name="Dune")
    store.insert("ListToEntityRelation", {"_id": "r1", "_kind": "relation", "_listId": "l1", "_entityId": "e1"})
    store.insert("ListToEntityRelation", {"_id": "r2", "_kind": "relation", "_listId": "l2", "_entityId": "e1"})
    store.insert("ListToEntityRelation", {"_id": "r3", "_kind": "relation", "_listId": "l1", "_entityId": "gone"})

    everything = _run(executor, context, "list-entity-relations")
    # r3 points at a missing entity: inner join drops it
    assert [r["_id"] for r in everything] == ["r1", "r2"]
    assert everything[0]["_fromMetadata"] == {"_kind": "wishlist", "_name": "W"}
    assert everything[0]["_toMetadata"]["_name"] == "Dune"

    scopes = RelationScopes(list_filter=parse_filter({"where": {"_kind": "wishlist"}}))
    scoped = _run(executor, context, "list-entity-relations", relation_scopes=scopes)
    assert [r["_id"] for r in scoped] == ["r1"]
    count = executor.count(
        compile_count("list-entity-relations", parse_filter(None), context, relation_scopes=scopes)
    )
    assert count == 1


def test_empty_result_is_empty_list(env):
    _, executor, context = env
    assert _run(executor, context, "entities", {"where": {"_kind": "nothing"}}) == []
