"""
SQLAlchemy-backed stores consumed by the study scheduler.
"""

import logging
import threading
from typing import Iterable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import CardDB, DeckDB, LearningSessionDB, MasteryDB, MasteryRecord, SessionRecord

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """A write to the database did not go through."""


class DeckStore(Protocol):
    def get_deck(self, deck_id: int) -> Optional[DeckDB]: ...

    def get_children(self, deck_id: int) -> list[int]: ...

    def get_cards_of(self, deck_id: int) -> list[int]: ...


class SqlDeckStore:
    """Read-only view of the deck tree."""

    def __init__(self, db: Session):
        self.db = db

    def get_deck(self, deck_id: int) -> Optional[DeckDB]:
        return self.db.get(DeckDB, deck_id)

    def get_children(self, deck_id: int) -> list[int]:
        rows = self.db.query(DeckDB.id).filter(DeckDB.parent_deck_id == deck_id).all()
        return [row.id for row in rows]

    def get_cards_of(self, deck_id: int) -> list[int]:
        rows = self.db.query(CardDB.id).filter(CardDB.deck_id == deck_id).all()
        return [row.id for row in rows]


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Could not save {what}: {e}") from e


class MasteryStore:
    """
    Mastery records keyed by card id.

    Every store instance shares one process-wide lock, so a record is never
    read while another request is updating it. The lock is reentrant:
    callers hold it across a read-modify-write and still use get/upsert.
    """

    lock = threading.RLock()

    def __init__(self, db: Session):
        self.db = db

    def get(self, card_id: int) -> Optional[MasteryRecord]:
        with self.lock:
            row = self.db.get(MasteryDB, card_id)
            return MasteryRecord.model_validate(row) if row is not None else None

    def get_or_new(self, card_id: int) -> MasteryRecord:
        return self.get(card_id) or MasteryRecord.new(card_id)

    def snapshot(self, card_ids: Iterable[int]) -> dict[int, MasteryRecord]:
        """Records of the given cards that have one; absent cards are new."""
        card_ids = list(card_ids)
        if not card_ids:
            return {}
        with self.lock:
            rows = self.db.query(MasteryDB).filter(MasteryDB.card_id.in_(card_ids)).all()
            return {row.card_id: MasteryRecord.model_validate(row) for row in rows}

    def upsert(self, record: MasteryRecord) -> None:
        with self.lock:
            row = self.db.get(MasteryDB, record.card_id)
            if row is None:
                row = MasteryDB(card_id=record.card_id)
                self.db.add(row)
            row.score = record.score
            row.box_index = record.box_index
            row.last_reviewed = record.last_reviewed
            _commit(self.db, f"mastery of card {record.card_id}")

    def reset(self, card_ids: Iterable[int]) -> int:
        """Put the given cards back to new. Returns how many records changed."""
        card_ids = list(card_ids)
        if not card_ids:
            return 0
        with self.lock:
            count = (
                self.db.query(MasteryDB)
                .filter(MasteryDB.card_id.in_(card_ids))
                .update({"score": 0.0, "box_index": 0, "last_reviewed": None}, synchronize_session="fetch")
            )
            _commit(self.db, "mastery reset")
            return count


class SessionStore:
    """One learning session per deck."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, deck_id: int) -> Optional[SessionRecord]:
        row = self.db.get(LearningSessionDB, deck_id)
        return SessionRecord.model_validate(row) if row is not None else None

    def upsert(self, record: SessionRecord) -> None:
        row = self.db.get(LearningSessionDB, record.deck_id)
        if row is None:
            row = LearningSessionDB(deck_id=record.deck_id)
            self.db.add(row)
        row.scope = record.scope
        row.selected_deck_ids = list(record.selected_deck_ids)
        row.strategy = record.strategy
        row.last_learned_index = record.last_learned_index
        row.seen_card_ids = list(record.seen_card_ids)
        row.last_accessed = record.last_accessed
        _commit(self.db, f"session of deck {record.deck_id}")
