"""Shared test fixtures."""

import random
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from app import app, get_db
from models import CardDB, DeckDB, get_engine, get_session, init_db
from stores import MasteryStore, SessionStore, SqlDeckStore
from study_session import StudySession


class FakeClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start=datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def engine():
    """In-memory SQLite engine with the schema applied."""
    eng = get_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = get_session(engine)
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def deck_tree(db):
    """
    root (r1, r2)
    ├── lang (l1)
    │   └── verbs (v1, v2)
    └── math (m1)

    Returns a dict of deck ids plus a "cards" dict of card ids by front text.
    """
    root = DeckDB(name="root")
    db.add(root)
    db.flush()
    lang = DeckDB(name="lang", parent_deck_id=root.id)
    math = DeckDB(name="math", parent_deck_id=root.id)
    db.add_all([lang, math])
    db.flush()
    verbs = DeckDB(name="verbs", parent_deck_id=lang.id)
    db.add(verbs)
    db.flush()

    cards = {}
    for deck, fronts in ((root, ["r1", "r2"]), (lang, ["l1"]), (verbs, ["v1", "v2"]), (math, ["m1"])):
        for front in fronts:
            card = CardDB(deck_id=deck.id, front=front, back=front.upper())
            db.add(card)
            db.flush()
            cards[front] = card.id
    db.commit()

    return {
        "root": root.id,
        "lang": lang.id,
        "verbs": verbs.id,
        "math": math.id,
        "cards": cards,
    }


@pytest.fixture
def study(db, clock, rng):
    return StudySession(SqlDeckStore(db), MasteryStore(db), SessionStore(db), clock=clock, rng=rng)


@pytest.fixture
def client(engine):
    """API client backed by the in-memory database."""
    def override_get_db():
        session = get_session(engine)
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
