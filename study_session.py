"""
Resumable study session over a deck.

A session belongs to one deck and remembers its scope, ordering strategy
and position. Every cursor change is written to the session store before
control returns to the caller, so the process can stop between any two
study steps without losing progress.
"""

import enum
import logging
import random
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from config import Settings
from deck_scope import resolve_scope
from models import LearningScope, MasteryRecord, SessionRecord, StudyStrategy, MAX_BOX, utcnow
from spaced_rep import apply_grade, select_next
from stores import DeckStore, MasteryStore, PersistenceError, SessionStore

logger = logging.getLogger(__name__)

STRATEGY_CYCLE = {
    StudyStrategy.SEQUENTIAL: StudyStrategy.SHUFFLE,
    StudyStrategy.SHUFFLE: StudyStrategy.ADAPTIVE,
    StudyStrategy.ADAPTIVE: StudyStrategy.SEQUENTIAL,
}


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


@dataclass
class StudyStep:
    """Card to show next; `card_id` is None once there is nothing (left) to study."""

    card_id: Optional[int]
    finished: bool = False
    error: Optional[PersistenceError] = None

    @property
    def persisted(self) -> bool:
        return self.error is None


@dataclass
class GradeResult:
    record: MasteryRecord
    error: Optional[PersistenceError] = None

    @property
    def persisted(self) -> bool:
        return self.error is None


@dataclass
class Progress:
    learned: int
    total: int
    label: str


class StudySession:
    """
    Drives study steps for one deck.

    Mutating calls report a failed database write by returning (or
    attaching) the PersistenceError instead of raising it; the in-memory
    result is still valid and the caller decides whether to retry.
    """

    def __init__(
        self,
        deck_store: DeckStore,
        mastery_store: MasteryStore,
        session_store: SessionStore,
        clock: Callable = utcnow,
        rng: Optional[random.Random] = None,
        settings: Optional[Settings] = None,
    ):
        self.deck_store = deck_store
        self.mastery_store = mastery_store
        self.session_store = session_store
        self.clock = clock
        self.rng = rng or random.Random()
        self.settings = settings or Settings()

        self.state = SessionState.SUSPENDED
        self.record: Optional[SessionRecord] = None
        self.card_ids: list[int] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.state == SessionState.ACTIVE:
            self.suspend()
        return False

    @property
    def deck_id(self) -> Optional[int]:
        return self.record.deck_id if self.record else None

    @property
    def strategy(self) -> Optional[StudyStrategy]:
        return self.record.strategy if self.record else None

    # --- Lifecycle ---

    def start(
        self,
        deck_id: int,
        scope: LearningScope,
        strategy: Optional[StudyStrategy] = None,
        selected_deck_ids: Optional[Iterable[int]] = None,
    ) -> Optional[PersistenceError]:
        """
        Open the deck's session for the given scope.

        A stored session studying a different scope or selection loses its
        position. `strategy=None` keeps the stored strategy.

        Returns:
            None, or the PersistenceError if the session could not be saved
        """
        if scope == LearningScope.CUSTOM_SELECTION:
            selected = sorted(set(selected_deck_ids or ()))
        else:
            selected = []

        record = self.session_store.get(deck_id)
        if record is None:
            record = SessionRecord(
                deck_id=deck_id,
                scope=scope,
                selected_deck_ids=selected,
                strategy=strategy or StudyStrategy.SEQUENTIAL,
            )
            logger.info("New session for deck %d (%s)", deck_id, scope.value)
        elif not record.same_selection(scope, selected):
            logger.info("Scope of deck %d changed to %s, resetting progress", deck_id, scope.value)
            record.scope = scope
            record.selected_deck_ids = selected
            record.reset_cursor()

        if strategy is not None:
            record.strategy = strategy

        self._activate(record)
        return self._persist()

    def resume(self, deck_id: int) -> Optional[PersistenceError]:
        """Reopen the stored session of a deck, or start a main-deck one."""
        record = self.session_store.get(deck_id)
        if record is None:
            return self.start(deck_id, LearningScope.MAIN_ONLY)

        logger.info("Resuming session for deck %d (%s)", deck_id, record.strategy.value)
        self._activate(record)
        return self._persist()

    def open(self, deck_id: int) -> bool:
        """Load the stored session of a deck without writing anything. False if there is none."""
        record = self.session_store.get(deck_id)
        if record is None:
            return False
        self._activate(record)
        return True

    def suspend(self) -> Optional[PersistenceError]:
        if self.state != SessionState.ACTIVE:
            return None
        self.record.last_accessed = self.clock()
        error = self._persist()
        self.state = SessionState.SUSPENDED
        return error

    def _activate(self, record: SessionRecord) -> None:
        self.record = record
        self.card_ids = sorted(resolve_scope(
            self.deck_store, record.deck_id, record.scope, record.selected_deck_ids
        ))
        record.last_accessed = self.clock()
        self.state = SessionState.ACTIVE
        if not self.card_ids:
            logger.info("Deck %d has no cards in scope %s", record.deck_id, record.scope.value)

    def _require_active(self) -> None:
        if self.state != SessionState.ACTIVE:
            raise RuntimeError("Session is not active, call start() or resume() first")

    def _persist(self) -> Optional[PersistenceError]:
        try:
            self.session_store.upsert(self.record)
        except PersistenceError as e:
            logger.exception("Progress of deck %d was not saved", self.record.deck_id)
            return e
        return None

    # --- Study steps ---

    def next(self) -> StudyStep:
        """Pick the next card and save the advanced position."""
        self._require_active()
        if not self.card_ids:
            return StudyStep(card_id=None, finished=True)

        record = self.record
        if record.strategy == StudyStrategy.SEQUENTIAL:
            if record.last_learned_index >= len(self.card_ids):
                return StudyStep(card_id=None, finished=True)
            card_id = self.card_ids[record.last_learned_index]
            record.last_learned_index += 1

        elif record.strategy == StudyStrategy.SHUFFLE:
            seen = set(record.seen_card_ids)
            unseen = [c for c in self.card_ids if c not in seen]
            if not unseen:
                return StudyStep(card_id=None, finished=True)
            card_id = self.rng.choice(unseen)
            record.seen_card_ids = record.seen_card_ids + [card_id]

        else:
            mastery = self.mastery_store.snapshot(self.card_ids)
            card_id = select_next(self.card_ids, mastery, self.rng, self.settings.weight_ratio)

        record.last_accessed = self.clock()
        logger.debug("Deck %d: next card %d (%s)", record.deck_id, card_id, record.strategy.value)
        return StudyStep(card_id=card_id, error=self._persist())

    def grade(self, card_id: int, grade: int) -> GradeResult:
        """
        Record the learner's grade for a card of this session.

        Raises:
            KeyError: card is not part of the session's scope
            InvalidGrade: grade is not 1-4
        """
        self._require_active()
        if card_id not in self.card_ids:
            raise KeyError(card_id)

        error = None
        with self.mastery_store.lock:
            updated = apply_grade(self.mastery_store.get_or_new(card_id), grade, self.clock())
            try:
                self.mastery_store.upsert(updated)
            except PersistenceError as e:
                logger.exception("Grade of card %d was not saved", card_id)
                error = e

        self.record.last_accessed = updated.last_reviewed
        session_error = self._persist()
        logger.debug("Card %d graded %d, now in box %d", card_id, grade, updated.box_index)
        return GradeResult(record=updated, error=error or session_error)

    # --- Strategy and progress ---

    def set_strategy(self, strategy: StudyStrategy) -> Optional[PersistenceError]:
        self._require_active()
        logger.info("Deck %d: strategy %s -> %s", self.record.deck_id, self.record.strategy.value, strategy.value)
        self.record.strategy = strategy
        return self._persist()

    def cycle_strategy(self) -> Optional[PersistenceError]:
        """Sequential -> Shuffle -> Adaptive -> Sequential."""
        self._require_active()
        return self.set_strategy(STRATEGY_CYCLE[self.record.strategy])

    def reset_progress(self) -> Optional[PersistenceError]:
        """Start the current strategy over; adaptive mode forgets the mastery of the cards in scope."""
        self._require_active()
        record = self.record
        error = None
        if record.strategy == StudyStrategy.SEQUENTIAL:
            record.last_learned_index = 0
        elif record.strategy == StudyStrategy.SHUFFLE:
            record.seen_card_ids = []
        else:
            try:
                self.mastery_store.reset(self.card_ids)
            except PersistenceError as e:
                logger.exception("Mastery reset of deck %d was not saved", record.deck_id)
                error = e

        logger.info("Deck %d: progress reset (%s)", record.deck_id, record.strategy.value)
        session_error = self._persist()
        return error or session_error

    def progress(self) -> Progress:
        self._require_active()
        record = self.record
        total = len(self.card_ids)
        if record.strategy == StudyStrategy.SEQUENTIAL:
            return Progress(min(record.last_learned_index, total), total, "Sequential")
        if record.strategy == StudyStrategy.SHUFFLE:
            seen = set(record.seen_card_ids) & set(self.card_ids)
            return Progress(len(seen), total, "Shuffle")

        # Adaptive: mean box as a percentage of mastery
        if not total:
            return Progress(0, 100, "Adaptive")
        mastery = self.mastery_store.snapshot(self.card_ids)
        boxes = sum(r.box_index for r in mastery.values())
        return Progress(int(boxes / (total * MAX_BOX) * 100), 100, "Adaptive")
