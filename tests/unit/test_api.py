"""
API tests -- FastAPI endpoints via TestClient (no live server needed).

Every client gets its own in-memory database and an AppConfig built from
the keyword arguments, so tests never share state.
"""
from fastapi.testclient import TestClient

from recordhub.api.main import create_app
from recordhub.db.connection import make_engine
from recordhub.db.store import RecordStore
from recordhub.governance.policy import build_config

HOST = "tapp://localhost"


def _client(**env) -> TestClient:
    env.setdefault("access_control", "false")
    app = create_app(build_config(env=env), RecordStore(make_engine("sqlite://")))
    return TestClient(app)


def _create(client, segment, payload, headers=None):
    resp = client.post(f"/{segment}", json=payload, headers=headers or {})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _ids(resp):
    assert resp.status_code == 200, resp.text
    return [d["_id"] for d in resp.json()]


def test_health():
    resp = _client().get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Create ──────────────────────────────────────────────

def test_create_list_with_defaults():
    body = _create(_client(), "lists", {"_name": "Reading List"})
    assert body["_kind"] == "list"
    assert body["_visibility"] == "protected"
    assert body["_validFromDateTime"] is None
    assert body["_version"] == 1
    assert body["_slug"] == "reading-list"
    assert body["_createdDateTime"].endswith("Z")


def test_create_keeps_custom_fields():
    body = _create(_client(), "entities", {"_name": "Dune", "pages": 412, "meta": {"lang": "en"}})
    assert body["pages"] == 412
    assert body["meta"] == {"lang": "en"}


def test_autoapprove_kind_starts_valid():
    client = _client(autoapprove_entity_for_book="true")
    book = _create(client, "entities", {"_name": "Dune", "_kind": "book"})
    other = _create(client, "entities", {"_name": "Alien", "_kind": "movie"})
    assert book["_validFromDateTime"] is not None
    assert other["_validFromDateTime"] is None


def test_invalid_kind_rejected():
    client = _client(entity_kinds="book,movie")
    resp = client.post("/entities", json={"_name": "x", "_kind": "Book"})
    assert resp.status_code == 422
    err = resp.json()["error"]
    assert err["code"] == "INVALID-ENTITY-KIND"
    assert err["name"] == "InvalidKindError"
    assert "Use 'book' instead" in err["message"]

    resp = client.post("/entities", json={"_name": "x", "_kind": "song"})
    assert resp.status_code == 422
    assert "book, movie, entity" in resp.json()["error"]["message"]


def test_missing_name_rejected():
    resp = _client().post("/entities", json={"title": "untitled"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "MISSING-ENTITY-NAME"


def test_malformed_body_is_400():
    resp = _client().post(
        "/entities", content="{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["statusCode"] == 400


def test_non_object_body_is_422():
    resp = _client().post("/entities", json=["a", "b"])
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "VALIDATION-FAILED"


# ── Read ────────────────────────────────────────────────

def test_get_missing_record_error_shape():
    resp = _client().get("/entities/nope")
    assert resp.status_code == 404
    assert resp.json() == {
        "error": {
            "statusCode": 404,
            "name": "NotFoundError",
            "message": "Entity with id 'nope' could not be found.",
            "code": "ENTITY-NOT-FOUND",
            "status": 404,
        }
    }


def test_list_filter_and_count():
    client = _client()
    for i in range(5):
        _create(client, "entities", {"_name": f"e{i}", "_kind": "book" if i % 2 else "movie", "rating": i})
    resp = client.get("/entities", params={"filter[where][_kind]": "book"})
    assert len(resp.json()) == 2
    resp = client.get("/entities", params={
        "filter[where][rating][gte]": "2",
        "filter[where][rating][type]": "number",
        "filter[order]": "rating DESC",
    })
    assert [d["rating"] for d in resp.json()] == [4, 3, 2]
    resp = client.get("/entities/count", params={"filter[where][_kind]": "movie"})
    assert resp.json() == {"count": 3}


def test_filter_as_json_string():
    client = _client()
    _create(client, "entities", {"_name": "a", "_kind": "book"})
    _create(client, "entities", {"_name": "b", "_kind": "movie"})
    resp = client.get("/entities", params={"filter": '{"where": {"_kind": "movie"}}'})
    assert [d["_name"] for d in resp.json()] == ["b"]


def test_pagination_reproduces_full_result():
    client = _client()
    for i in range(7):
        _create(client, "entities", {"_name": f"e{i}", "n": i})
    full = _ids(client.get("/entities", params={"filter[order]": "n ASC"}))
    paged = []
    for skip in (0, 3, 6):
        page = _ids(client.get("/entities", params={
            "filter[order]": "n ASC", "filter[limit]": "3", "filter[skip]": str(skip),
        }))
        assert len(page) == min(3, 7 - skip)
        paged.extend(page)
    assert paged == full


def test_response_limit_caps_results():
    client = _client(response_limit_entity="2")
    for i in range(4):
        _create(client, "entities", {"_name": f"e{i}"})
    assert len(client.get("/entities").json()) == 2
    assert len(client.get("/entities", params={"filter[limit]": "100"}).json()) == 2
    assert client.get("/entities/count").json() == {"count": 4}


def test_invalid_filter_is_400():
    resp = _client().get("/entities", params={"filter[limit]": "-1"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID-FILTER"


def test_projection_allow_and_deny():
    client = _client()
    _create(client, "entities", {"_name": "x", "customField": 1})
    allow = client.get("/entities", params={"filter[fields][_id]": "true", "filter[fields][_kind]": "true"})
    assert set(allow.json()[0]) == {"_id", "_kind"}
    deny = client.get("/entities", params={"filter[fields][customField]": "false"})
    assert "customField" not in deny.json()[0]
    assert "_name" in deny.json()[0]


def test_set_actives_on_listing():
    client = _client()
    _create(client, "entities", {"_name": "live", "_validFromDateTime": "2020-01-01T00:00:00Z"})
    _create(client, "entities", {"_name": "pending"})
    _create(client, "entities", {
        "_name": "over",
        "_validFromDateTime": "2020-01-01T00:00:00Z",
        "_validUntilDateTime": "2021-01-01T00:00:00Z",
    })
    resp = client.get("/entities", params={"set[actives]": "true"})
    assert [d["_name"] for d in resp.json()] == ["live"]
    resp = client.get("/entities", params={"set[or][0][pendings]": "true", "set[or][1][expireds]": "true"})
    assert [d["_name"] for d in resp.json()] == ["pending", "over"]


# ── Update / replace / delete ───────────────────────────

def test_patch_merges_and_bumps_version():
    client = _client()
    rec = _create(client, "entities", {"_name": "Dune", "pages": 412})
    resp = client.patch(f"/entities/{rec['_id']}", json={"rating": 5})
    assert resp.status_code == 204
    stored = client.get(f"/entities/{rec['_id']}").json()
    assert stored["pages"] == 412
    assert stored["rating"] == 5
    assert stored["_version"] == 2


def test_put_replaces_whole_document():
    client = _client()
    rec = _create(client, "entities", {"_name": "Dune", "pages": 412})
    resp = client.put(f"/entities/{rec['_id']}", json={"_name": "Dune", "isbn": "x"})
    assert resp.status_code == 204
    stored = client.get(f"/entities/{rec['_id']}").json()
    assert "pages" not in stored
    assert stored["isbn"] == "x"
    assert stored["_version"] == 2
    assert stored["_createdDateTime"] == rec["_createdDateTime"]


def test_kind_cannot_change():
    client = _client()
    rec = _create(client, "entities", {"_name": "Dune", "_kind": "book"})
    for method in (client.patch, client.put):
        resp = method(f"/entities/{rec['_id']}", json={"_name": "Dune", "_kind": "movie"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "IMMUTABLE-ENTITY-KIND"
    stored = client.get(f"/entities/{rec['_id']}").json()
    assert stored["_kind"] == "book"
    assert stored["_version"] == 1


def test_update_missing_record_is_404():
    client = _client()
    assert client.patch("/entities/nope", json={"a": 1}).status_code == 404
    assert client.put("/entities/nope", json={"_name": "a"}).status_code == 404
    assert client.delete("/entities/nope").status_code == 404


def test_delete_entity_cascades():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    ent = _create(client, "entities", {"_name": "E"})
    rel = _create(client, "list-entity-relations", {"_listId": lst["_id"], "_entityId": ent["_id"]})
    reaction = _create(client, "entity-reactions", {"_entityId": ent["_id"], "_kind": "like"})

    assert client.delete(f"/entities/{ent['_id']}").status_code == 204
    assert client.get(f"/entities/{ent['_id']}").status_code == 404
    assert client.get(f"/entity-reactions/{reaction['_id']}").status_code == 404
    assert client.get(f"/list-entity-relations/{rel['_id']}").status_code == 404
    assert client.get(f"/lists/{lst['_id']}").status_code == 200


# ── Children / parents ──────────────────────────────────

def test_reaction_parents_and_children():
    client = _client()
    entity = _create(client, "entities", {"_name": "Dune", "_kind": "book"})
    r1 = _create(client, "entity-reactions", {"_entityId": entity["_id"], "_kind": "comment"})
    r2 = _create(client, "entity-reactions", {
        "_entityId": entity["_id"],
        "_parents": [f"{HOST}/entity-reactions/{r1['_id']}"],
    })
    assert r2["_parentsCount"] == 1
    assert _ids(client.get(f"/entity-reactions/{r2['_id']}/parents")) == [r1["_id"]]
    assert _ids(client.get(f"/entity-reactions/{r1['_id']}/children")) == [r2["_id"]]
    assert _ids(client.get(f"/entity-reactions/{r1['_id']}/parents")) == []


def test_create_child_endpoint():
    client = _client()
    parent = _create(client, "entities", {"_name": "Series"})
    resp = client.post(f"/entities/{parent['_id']}/children", json={"_name": "Book 1"})
    assert resp.status_code == 200
    child = resp.json()
    assert child["_parents"] == [f"{HOST}/entities/{parent['_id']}"]
    assert _ids(client.get(f"/entities/{parent['_id']}/children")) == [child["_id"]]
    roots = client.get("/entities", params={"set[roots]": "true"})
    assert _ids(roots) == [parent["_id"]]


def test_reaction_needs_existing_entity():
    resp = _client().post("/entity-reactions", json={"_entityId": "ghost"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "ENTITY-NOT-FOUND"


# ── Relations ───────────────────────────────────────────

def test_relation_requires_both_ids():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    resp = client.post("/list-entity-relations", json={"_listId": lst["_id"]})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "RELATION-MISSING-IDS"


def test_relation_endpoints_are_immutable():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    e1 = _create(client, "entities", {"_name": "E1"})
    e2 = _create(client, "entities", {"_name": "E2"})
    rel = _create(client, "list-entity-relations", {"_listId": lst["_id"], "_entityId": e1["_id"]})
    resp = client.patch(f"/list-entity-relations/{rel['_id']}", json={"_entityId": e2["_id"]})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "IMMUTABLE-ENTITY-ID"


def test_relation_listing_with_endpoint_filters():
    client = _client()
    wish = _create(client, "lists", {"_name": "W", "_kind": "wishlist"})
    fav = _create(client, "lists", {"_name": "F", "_kind": "favorites"})
    dune = _create(client, "entities", {"_name": "Dune", "_visibility": "public"})
    alien = _create(client, "entities", {"_name": "Alien"})
    r1 = _create(client, "list-entity-relations", {"_listId": wish["_id"], "_entityId": dune["_id"]})
    r2 = _create(client, "list-entity-relations", {"_listId": fav["_id"], "_entityId": alien["_id"]})
    r3 = _create(client, "list-entity-relations", {"_listId": wish["_id"], "_entityId": alien["_id"]})

    resp = client.get("/list-entity-relations")
    assert _ids(resp) == [r1["_id"], r2["_id"], r3["_id"]]
    assert resp.json()[0]["_fromMetadata"]["_kind"] == "wishlist"
    assert resp.json()[0]["_toMetadata"]["_name"] == "Dune"

    by_list = client.get("/list-entity-relations", params={"listFilter[where][_kind]": "wishlist"})
    assert _ids(by_list) == [r1["_id"], r3["_id"]]
    by_entity = client.get("/list-entity-relations", params={"entitySet[publics]": "true"})
    assert _ids(by_entity) == [r1["_id"]]
    count = client.get("/list-entity-relations/count", params={"listFilter[where][_kind]": "favorites"})
    assert count.json() == {"count": 1}


def test_traversal_through_relations():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    e1 = _create(client, "entities", {"_name": "E1", "_kind": "book"})
    e2 = _create(client, "entities", {"_name": "E2", "_kind": "movie"})
    _create(client, "entities", {"_name": "E3"})
    for e in (e1, e2):
        _create(client, "list-entity-relations", {"_listId": lst["_id"], "_entityId": e["_id"]})

    assert _ids(client.get(f"/lists/{lst['_id']}/entities")) == [e1["_id"], e2["_id"]]
    books = client.get(f"/lists/{lst['_id']}/entities", params={"filter[where][_kind]": "book"})
    assert _ids(books) == [e1["_id"]]
    assert _ids(client.get(f"/entities/{e2['_id']}/lists")) == [lst["_id"]]
    assert client.get("/lists/nope/entities").status_code == 404


# ── Limits / uniqueness ─────────────────────────────────

def test_relation_limit_returns_429():
    client = _client(record_limit_list_entity_rel_count="2")
    lst = _create(client, "lists", {"_name": "L"})
    entities = [_create(client, "entities", {"_name": f"e{i}"}) for i in range(3)]
    for e in entities[:2]:
        _create(client, "list-entity-relations", {"_listId": lst["_id"], "_entityId": e["_id"]})
    resp = client.post(
        "/list-entity-relations", json={"_listId": lst["_id"], "_entityId": entities[2]["_id"]}
    )
    assert resp.status_code == 429
    err = resp.json()["error"]
    assert err["name"] == "LimitExceededError"
    assert err["code"] == "RELATION-LIMIT-EXCEEDED"
    assert err["details"][0]["info"]["limit"] == 2


def test_scoped_limit_matches_listing():
    client = _client(ENTITY_RECORD_LIMITS='[{"scope": "filter[where][_kind]=book", "limit": 2}]')
    _create(client, "entities", {"_name": "a", "_kind": "book"})
    _create(client, "entities", {"_name": "b", "_kind": "book"})
    assert client.post("/entities", json={"_name": "c", "_kind": "book"}).status_code == 429
    assert client.post("/entities", json={"_name": "m", "_kind": "movie"}).status_code == 200
    count = client.get("/entities/count", params={"filter[where][_kind]": "book"})
    assert count.json() == {"count": 2}


def test_list_entity_limit():
    client = _client(record_limit_list_entity_count="1")
    l1 = _create(client, "lists", {"_name": "L1"})
    l2 = _create(client, "lists", {"_name": "L2"})
    e1 = _create(client, "entities", {"_name": "E1"})
    e2 = _create(client, "entities", {"_name": "E2"})
    _create(client, "list-entity-relations", {"_listId": l1["_id"], "_entityId": e1["_id"]})
    resp = client.post("/list-entity-relations", json={"_listId": l1["_id"], "_entityId": e2["_id"]})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "LIST-ENTITY-LIMIT-EXCEEDED"
    _create(client, "list-entity-relations", {"_listId": l2["_id"], "_entityId": e2["_id"]})


def test_uniqueness_conflict_is_409():
    client = _client(uniqueness_entity_fields="_name")
    rec = _create(client, "entities", {"_name": "Dune"})
    resp = client.post("/entities", json={"_name": "Dune"})
    assert resp.status_code == 409
    err = resp.json()["error"]
    assert err["name"] == "DataUniquenessViolationError"
    assert err["code"] == "ENTITY-ALREADY-EXISTS"
    assert err["message"] == "Entity already exists."
    # re-saving the same record is not a conflict with itself
    assert client.patch(f"/entities/{rec['_id']}", json={"_name": "Dune", "n": 1}).status_code == 204


def test_uniqueness_with_different_owner_arrays():
    client = _client(uniqueness_entity_fields="_name,_ownerUsers")
    _create(client, "entities", {"_name": "Dune", "_ownerUsers": ["user-123", "user-456"]})
    _create(client, "entities", {"_name": "Dune", "_ownerUsers": ["user-123"]})
    resp = client.post("/entities", json={"_name": "Dune", "_ownerUsers": ["user-123", "user-456"]})
    assert resp.status_code == 409


# ── Access control ──────────────────────────────────────

def test_access_control_hides_records():
    client = _client(access_control="true")
    u1 = {"X-User-Id": "u1"}
    private = _create(client, "entities", {"_name": "mine", "_visibility": "private"}, u1)
    public = _create(client, "entities", {"_name": "open", "_visibility": "public"}, u1)
    team = _create(client, "entities", {"_name": "team", "_ownerGroups": ["g1"]}, u1)

    assert private["_ownerUsers"] == ["u1"]
    assert _ids(client.get("/entities")) == [public["_id"]]
    assert _ids(client.get("/entities", headers=u1)) == [private["_id"], public["_id"], team["_id"]]
    assert _ids(client.get("/entities", headers={"X-User-Id": "u2", "X-Group-Ids": "g1"})) == [
        public["_id"], team["_id"],
    ]
    assert client.get(f"/entities/{private['_id']}", headers={"X-User-Id": "u2"}).status_code == 404
    assert client.get("/entities/count").json() == {"count": 1}


def test_filter_cannot_widen_access():
    client = _client(access_control="true")
    _create(client, "entities", {"_name": "mine", "_visibility": "private"}, {"X-User-Id": "u1"})
    resp = client.get("/entities", params={"filter[where][_visibility]": "private"})
    assert resp.json() == []


def test_relations_hidden_when_endpoint_hidden():
    client = _client(access_control="true")
    u1 = {"X-User-Id": "u1"}
    lst = _create(client, "lists", {"_name": "L", "_visibility": "public"}, u1)
    hidden = _create(client, "entities", {"_name": "H", "_visibility": "private"}, u1)
    shown = _create(client, "entities", {"_name": "S", "_visibility": "public"}, u1)
    _create(client, "list-entity-relations", {"_listId": lst["_id"], "_entityId": hidden["_id"]}, u1)
    visible = _create(client, "list-entity-relations", {"_listId": lst["_id"], "_entityId": shown["_id"]}, u1)
    assert _ids(client.get("/list-entity-relations")) == [visible["_id"]]
    assert len(client.get("/list-entity-relations", headers=u1).json()) == 2


# ── Lookups ─────────────────────────────────────────────

def test_nested_lookup_with_projection():
    client = _client()
    pub = _create(client, "entities", {"_name": "Ace Books", "city": "NY"})
    authors = [
        _create(client, "entities", {"_name": n, "born": 1920, "publisher": f"{HOST}/entities/{pub['_id']}"})
        for n in ("Frank", "Ursula")
    ]
    book = _create(client, "entities", {
        "_name": "Anthology",
        "relatedAuthors": [f"{HOST}/entities/{a['_id']}" for a in authors] + [f"{HOST}/entities/ghost"],
    })
    resp = client.get(f"/entities/{book['_id']}", params={
        "filter[fields][_name]": "true",
        "filter[fields][relatedAuthors]": "true",
        "filter[lookup][0][prop]": "relatedAuthors",
        "filter[lookup][0][scope][fields][_name]": "true",
        "filter[lookup][0][scope][fields][publisher]": "true",
        "filter[lookup][0][scope][lookup][0][prop]": "publisher",
        "filter[lookup][0][scope][lookup][0][scope][fields][_name]": "true",
    })
    assert resp.status_code == 200
    assert resp.json() == {
        "_id": book["_id"],
        "_name": "Anthology",
        "relatedAuthors": [
            {"_id": a["_id"], "_name": a["_name"], "publisher": {"_id": pub["_id"], "_name": "Ace Books"}}
            for a in authors
        ],
    }


def test_include_reactions():
    client = _client()
    entity = _create(client, "entities", {"_name": "Dune"})
    reaction = _create(client, "entity-reactions", {"_entityId": entity["_id"], "_kind": "like"})
    resp = client.get(f"/entities/{entity['_id']}", params={"filter[include][0]": "reactions"})
    assert [r["_id"] for r in resp.json()["reactions"]] == [reaction["_id"]]


# ── Lookup constraints ──────────────────────────────────

def test_parents_must_reference_existing_records_of_the_same_family():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    for parents in (["not a uri"], [f"{HOST}/lists/{lst['_id']}"], [f"{HOST}/entities/ghost"]):
        resp = client.post("/entities", json={"_name": "E", "_parents": parents})
        assert resp.status_code == 422, parents
        err = resp.json()["error"]
        assert err["name"] == "InvalidLookupReferenceError"
        assert err["code"] == "ENTITY-INVALID-LOOKUP-REFERENCE"
    assert client.get("/entities/count").json() == {"count": 0}


def test_parents_checked_on_update():
    client = _client()
    rec = _create(client, "entities", {"_name": "E"})
    resp = client.patch(f"/entities/{rec['_id']}", json={"_parents": [f"{HOST}/entities/ghost"]})
    assert resp.status_code == 422
    assert client.get(f"/entities/{rec['_id']}").json()["_version"] == 1


def test_configured_target_kind():
    client = _client(
        ENTITY_LOOKUP_CONSTRAINT='[{"propertyPath": "author", "record": "entity",'
        ' "sourceKind": "book", "targetKind": "person"}]',
    )
    person = _create(client, "entities", {"_name": "Frank", "_kind": "person"})
    movie = _create(client, "entities", {"_name": "Dune", "_kind": "movie"})
    _create(client, "entities", {
        "_name": "Dune", "_kind": "book", "author": f"{HOST}/entities/{person['_id']}",
    })
    resp = client.post("/entities", json={
        "_name": "Messiah", "_kind": "book", "author": f"{HOST}/entities/{movie['_id']}",
    })
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "ENTITY-INVALID-LOOKUP-KIND"
    # other kinds are not constrained
    _create(client, "entities", {"_name": "Remake", "_kind": "movie", "author": "anything"})


def test_reaction_parent_must_share_the_entity():
    client = _client()
    e1 = _create(client, "entities", {"_name": "E1"})
    e2 = _create(client, "entities", {"_name": "E2"})
    r1 = _create(client, "entity-reactions", {"_entityId": e1["_id"]})
    resp = client.post("/entity-reactions", json={
        "_entityId": e2["_id"], "_parents": [f"{HOST}/entity-reactions/{r1['_id']}"],
    })
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "ENTITY-REACTION-INVALID-PARENT-ENTITY-ID"


# ── Bulk update ─────────────────────────────────────────

def test_bulk_patch_updates_matching_records():
    client = _client()
    b1 = _create(client, "entities", {"_name": "A", "_kind": "book"})
    b2 = _create(client, "entities", {"_name": "B", "_kind": "book"})
    movie = _create(client, "entities", {"_name": "C", "_kind": "movie"})
    resp = client.patch("/entities", params={"where[_kind]": "book"}, json={"shelf": "top"})
    assert resp.status_code == 200
    assert resp.json() == {"count": 2}
    for rec in (b1, b2):
        stored = client.get(f"/entities/{rec['_id']}").json()
        assert stored["shelf"] == "top"
        assert stored["_version"] == 2
    assert "shelf" not in client.get(f"/entities/{movie['_id']}").json()


def test_bulk_patch_rejects_kind():
    client = _client()
    _create(client, "entities", {"_name": "A", "_kind": "book"})
    resp = client.patch("/entities", json={"_kind": "movie"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "IMMUTABLE-ENTITY-KIND"


def test_bulk_patch_is_all_or_nothing():
    client = _client(uniqueness_entity_fields="_name")
    a = _create(client, "entities", {"_name": "A", "_kind": "book"})
    _create(client, "entities", {"_name": "B", "_kind": "movie"})
    resp = client.patch("/entities", params={"where[_kind]": "book"}, json={"_name": "B"})
    assert resp.status_code == 409
    assert client.get(f"/entities/{a['_id']}").json()["_name"] == "A"


# ── Writes through a list ───────────────────────────────

def test_create_entity_through_list():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    resp = client.post(f"/lists/{lst['_id']}/entities", json={"_name": "Dune"})
    assert resp.status_code == 200
    entity = resp.json()
    assert _ids(client.get(f"/lists/{lst['_id']}/entities")) == [entity["_id"]]
    assert client.post("/lists/nope/entities", json={"_name": "x"}).status_code == 404


def test_create_through_list_rolls_back_on_relation_limit():
    client = _client(record_limit_list_entity_count="1")
    lst = _create(client, "lists", {"_name": "L"})
    _create(client, "entities", {"_name": "Outside"})
    assert client.post(f"/lists/{lst['_id']}/entities", json={"_name": "A"}).status_code == 200
    resp = client.post(f"/lists/{lst['_id']}/entities", json={"_name": "B"})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "LIST-ENTITY-LIMIT-EXCEEDED"
    assert client.get("/entities/count").json() == {"count": 2}


def test_patch_and_delete_entities_through_list():
    client = _client()
    lst = _create(client, "lists", {"_name": "L"})
    e1 = client.post(f"/lists/{lst['_id']}/entities", json={"_name": "E1", "_kind": "book"}).json()
    e2 = client.post(f"/lists/{lst['_id']}/entities", json={"_name": "E2", "_kind": "movie"}).json()
    outside = _create(client, "entities", {"_name": "E3", "_kind": "book"})

    resp = client.patch(f"/lists/{lst['_id']}/entities", json={"seen": True})
    assert resp.json() == {"count": 2}
    assert "seen" not in client.get(f"/entities/{outside['_id']}").json()

    resp = client.delete(f"/lists/{lst['_id']}/entities", params={"where[_kind]": "book"})
    assert resp.json() == {"count": 1}
    assert client.get(f"/entities/{e1['_id']}").status_code == 404
    assert client.get(f"/entities/{outside['_id']}").status_code == 200
    assert _ids(client.get(f"/lists/{lst['_id']}/entities")) == [e2["_id"]]
    assert client.get("/list-entity-relations/count").json() == {"count": 1}
