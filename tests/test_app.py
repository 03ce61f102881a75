"""Tests for the HTTP API."""

from fastapi import Depends

from app import app, get_db, get_study_session
from stores import MasteryStore, PersistenceError, SessionStore, SqlDeckStore
from study_session import StudySession


class FailingSessionStore(SessionStore):
    def upsert(self, record):
        raise PersistenceError("disk full")


class FailingMasteryStore(MasteryStore):
    def upsert(self, record):
        raise PersistenceError("disk full")


def _use_stores(session_store=SessionStore, mastery_store=MasteryStore):
    """Route session requests through the given store classes."""
    def override(db=Depends(get_db)):
        return StudySession(SqlDeckStore(db), mastery_store(db), session_store(db))
    app.dependency_overrides[get_study_session] = override


def _deck(client, name, parent=None):
    response = client.post("/api/decks", json={"name": name, "parent_deck_id": parent})
    assert response.status_code == 200
    return response.json()["id"]


def _card(client, deck_id, front):
    response = client.post(f"/api/decks/{deck_id}/cards", json={"front": front, "back": front.upper()})
    assert response.status_code == 200
    return response.json()["id"]


def _tree(client):
    root = _deck(client, "root")
    child = _deck(client, "child", root)
    cards = [_card(client, root, "a"), _card(client, root, "b"), _card(client, child, "c")]
    return root, child, cards


def test_root(client):
    assert "flashqueue" in client.get("/").json()["message"]


def test_deck_crud(client):
    root = _deck(client, "root")
    child = _deck(client, "child", root)

    assert [d["id"] for d in client.get("/api/decks").json()] == [root, child]
    assert client.get(f"/api/decks/{child}").json()["parent_deck_id"] == root

    response = client.patch(f"/api/decks/{child}", json={"name": "renamed"})
    assert response.json()["name"] == "renamed"
    assert response.json()["parent_deck_id"] == root

    assert client.delete(f"/api/decks/{root}").status_code == 200
    assert client.get(f"/api/decks/{child}").status_code == 404


def test_create_deck_with_unknown_parent(client):
    assert client.post("/api/decks", json={"name": "orphan", "parent_deck_id": 77}).status_code == 404


def test_reparent_rejects_cycles(client):
    root = _deck(client, "root")
    child = _deck(client, "child", root)
    grandchild = _deck(client, "grandchild", child)

    assert client.patch(f"/api/decks/{root}", json={"parent_deck_id": grandchild}).status_code == 400
    assert client.patch(f"/api/decks/{root}", json={"parent_deck_id": root}).status_code == 400

    response = client.patch(f"/api/decks/{grandchild}", json={"parent_deck_id": None})
    assert response.status_code == 200
    assert response.json()["parent_deck_id"] is None


def test_list_cards_by_scope(client):
    root, child, cards = _tree(client)
    main = client.get(f"/api/decks/{root}/cards").json()
    assert [c["id"] for c in main] == cards[:2]
    everything = client.get(f"/api/decks/{root}/cards", params={"scope": "all_recursive"}).json()
    assert [c["id"] for c in everything] == cards


def test_delete_card(client):
    root = _deck(client, "root")
    card_id = _card(client, root, "a")
    assert client.delete(f"/api/cards/{card_id}").status_code == 200
    assert client.delete(f"/api/cards/{card_id}").status_code == 404


def test_sequential_session(client):
    root, child, cards = _tree(client)
    response = client.post(f"/api/decks/{root}/session", json={"scope": "all_recursive"})
    assert response.status_code == 200
    assert response.json()["strategy"] == "sequential"
    assert response.json()["eligible_cards"] == 3

    drawn = []
    while True:
        step = client.post(f"/api/decks/{root}/session/next").json()
        assert step["persisted"]
        if step["finished"]:
            break
        drawn.append(step["card"]["id"])
    assert drawn == cards

    progress = client.get(f"/api/decks/{root}/session").json()
    assert (progress["learned"], progress["total"]) == (3, 3)

    client.post(f"/api/decks/{root}/session/reset")
    assert client.post(f"/api/decks/{root}/session/next").json()["card"]["id"] == cards[0]


def test_scope_change_resets_session(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={"scope": "all_recursive"})
    client.post(f"/api/decks/{root}/session/next")

    progress = client.post(f"/api/decks/{root}/session", json={"scope": "main_only"}).json()
    assert progress["learned"] == 0
    assert progress["eligible_cards"] == 2


def test_adaptive_grading(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={"scope": "all_recursive", "strategy": "adaptive"})

    step = client.post(f"/api/decks/{root}/session/next").json()
    card_id = step["card"]["id"]
    assert card_id in cards

    response = client.post(f"/api/decks/{root}/session/grade", json={"card_id": card_id, "grade": 4})
    assert response.status_code == 200
    body = response.json()
    assert body["persisted"]
    assert body["mastery"]["box_index"] == 1
    assert body["mastery"]["score"] == 200

    progress = client.get(f"/api/decks/{root}/session").json()
    assert progress["label"] == "Adaptive"
    assert progress["learned"] == 6      # 1 of 15 boxes

    stats = client.get("/api/stats").json()
    assert stats["total"] == 3
    assert stats["new"] == 2
    assert stats["boxes"]["0"] == 2
    assert stats["boxes"]["1"] == 1


def test_grade_validation(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={"scope": "main_only"})

    bad_grade = client.post(f"/api/decks/{root}/session/grade", json={"card_id": cards[0], "grade": 5})
    assert bad_grade.status_code == 422

    out_of_scope = client.post(f"/api/decks/{root}/session/grade", json={"card_id": cards[2], "grade": 3})
    assert out_of_scope.status_code == 404


def test_strategy_cycle(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={})

    assert client.post(f"/api/decks/{root}/session/strategy", json={}).json()["strategy"] == "shuffle"
    assert client.post(f"/api/decks/{root}/session/strategy", json={}).json()["strategy"] == "adaptive"
    response = client.post(f"/api/decks/{root}/session/strategy", json={"strategy": "sequential"})
    assert response.json()["strategy"] == "sequential"


def test_session_on_missing_deck(client):
    assert client.post("/api/decks/404/session", json={}).status_code == 404
    assert client.post("/api/decks/404/session/next").status_code == 404


def test_empty_deck_is_finished(client):
    root = _deck(client, "empty")
    step = client.post(f"/api/decks/{root}/session/next").json()
    assert step["finished"]
    assert step["card"] is None


def test_list_cards_of_custom_selection(client):
    root, child, cards = _tree(client)
    url = f"/api/decks/{root}/cards"

    picked = client.get(url, params={"scope": "custom_selection", "selected": [child]}).json()
    assert [c["id"] for c in picked] == cards
    nothing_picked = client.get(url, params={"scope": "custom_selection"}).json()
    assert [c["id"] for c in nothing_picked] == cards[:2]


def test_progress_without_session_is_404(client):
    root, child, cards = _tree(client)
    assert client.get(f"/api/decks/{root}/session").status_code == 404
    # Reading must not have created one
    assert client.get(f"/api/decks/{root}/session").status_code == 404


def test_progress_is_read_only(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={"scope": "all_recursive"})

    _use_stores(session_store=FailingSessionStore)
    response = client.get(f"/api/decks/{root}/session")
    assert response.status_code == 200
    assert response.json()["eligible_cards"] == 3


def test_unsaved_step_still_returns_card(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={})

    _use_stores(session_store=FailingSessionStore)
    body = client.post(f"/api/decks/{root}/session/next").json()
    assert body["card"]["id"] == cards[0]
    assert not body["persisted"]
    assert "disk full" in body["error"]


def test_unsaved_grade_is_reported(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={"strategy": "adaptive"})

    _use_stores(mastery_store=FailingMasteryStore)
    body = client.post(f"/api/decks/{root}/session/grade", json={"card_id": cards[0], "grade": 3}).json()
    assert body["mastery"]["box_index"] == 1
    assert not body["persisted"]
    assert "disk full" in body["error"]

    _use_stores(session_store=FailingSessionStore)
    body = client.post(f"/api/decks/{root}/session/grade", json={"card_id": cards[1], "grade": 3}).json()
    assert not body["persisted"]
    assert "disk full" in body["error"]


def test_unsaved_session_changes_are_503(client):
    root, child, cards = _tree(client)
    client.post(f"/api/decks/{root}/session", json={})

    _use_stores(session_store=FailingSessionStore)
    assert client.post(f"/api/decks/{root}/session", json={"scope": "all_recursive"}).status_code == 503
    assert client.post(f"/api/decks/{root}/session/reset").status_code == 503
    response = client.post(f"/api/decks/{root}/session/strategy", json={})
    assert response.status_code == 503
    assert "disk full" in response.json()["detail"]
