"""
Leitner-box scoring and weighted card selection

Grades:
1 - Again, forgot the card
2 - Hard, recalled with serious difficulty
3 - Good, recalled after hesitation
4 - Easy, perfect recall

Every card sits in a box from 0 (new / just missed) to 5 (mastered).
Lower boxes are drawn more often; the card graded last is held back
so it is not shown twice in a row.
"""

import bisect
import itertools
import logging
import random
from datetime import datetime
from typing import Mapping, Optional, Sequence, TypeVar

from models import MasteryRecord, MIN_BOX, MAX_BOX

logger = logging.getLogger(__name__)

T = TypeVar("T")

GRADE_AGAIN, GRADE_HARD, GRADE_GOOD, GRADE_EASY = 1, 2, 3, 4

# grade -> (box delta, score delta); "again" is handled as a full reset
GRADE_RULES = {
    GRADE_HARD: (-1, 10.0),
    GRADE_GOOD: (1, 50.0),
    GRADE_EASY: (1, 200.0),
}

DEFAULT_WEIGHT_RATIO = 10.0


class InvalidGrade(ValueError):
    """Grade outside 1-4."""

    def __init__(self, grade):
        super().__init__(f"Invalid grade {grade!r}, expected one of 1, 2, 3, 4")
        self.grade = grade


def clamp_box(box_index: int) -> int:
    return max(MIN_BOX, min(MAX_BOX, box_index))


def apply_grade(record: MasteryRecord, grade: int, now: datetime) -> MasteryRecord:
    """
    Apply a learner grade to a mastery record.

    Args:
        record: Current mastery of the card (left untouched)
        grade: Learner grade (1-4)
        now: Review timestamp from the injected clock

    Returns:
        New record with updated box, score and last_reviewed

    Raises:
        InvalidGrade: grade is not 1, 2, 3 or 4
    """
    if isinstance(grade, bool) or grade not in (GRADE_AGAIN, *GRADE_RULES):
        raise InvalidGrade(grade)

    if grade == GRADE_AGAIN:
        # Forgotten - back to the first box, progress wiped
        box_index, score = MIN_BOX, 0.0
    else:
        box_delta, score_delta = GRADE_RULES[grade]
        box_index = clamp_box(record.box_index + box_delta)
        score = record.score + score_delta

    return record.model_copy(update={
        "box_index": box_index,
        "score": score,
        "last_reviewed": now,
    })


def box_weight(box_index: int, ratio: float = DEFAULT_WEIGHT_RATIO) -> float:
    """
    Draw weight of a box: ratio ** ((5 - box) / 5).

    Box 5 weighs 1, box 0 weighs `ratio`, strictly decreasing in between.
    """
    if ratio <= 1:
        raise ValueError(f"weight ratio must be > 1, got {ratio}")
    box_index = clamp_box(box_index)
    return ratio ** ((MAX_BOX - box_index) / (MAX_BOX - MIN_BOX))


def weighted_choice(items: Sequence[T], weights: Sequence[float], rng: Optional[random.Random] = None) -> T:
    """Pick one item with probability proportional to its weight."""
    if not items:
        raise ValueError("Cannot choose from an empty sequence")
    if len(items) != len(weights):
        raise ValueError(f"Got {len(items)} items but {len(weights)} weights")
    if any(w < 0 for w in weights):
        raise ValueError("Weights must be non-negative")

    cumulative = list(itertools.accumulate(weights))
    total = cumulative[-1]
    if total <= 0:
        raise ValueError("Total weight must be positive")

    rng = rng or random
    draw = rng.random() * total
    # bisect_right skips zero-weight items sitting on the same cumulative value
    index = bisect.bisect_right(cumulative, draw)
    return items[min(index, len(items) - 1)]


def most_recent_card(card_ids: Sequence[int], mastery: Mapping[int, MasteryRecord]) -> Optional[int]:
    """The single card graded last, or None if none of them was ever graded."""
    latest_id, latest_at = None, datetime.min
    for card_id in card_ids:
        record = mastery.get(card_id)
        # Never-reviewed cards sit at datetime.min and are never picked
        if record is not None and record.reviewed_at > latest_at:
            latest_id, latest_at = card_id, record.reviewed_at
    return latest_id


def select_next(
    card_ids,
    mastery: Mapping[int, MasteryRecord],
    rng: Optional[random.Random] = None,
    weight_ratio: float = DEFAULT_WEIGHT_RATIO,
) -> Optional[int]:
    """
    Choose the next card to study.

    Args:
        card_ids: Eligible card ids
        mastery: Known mastery records by card id; missing cards count as new
        rng: Random source, the module generator by default
        weight_ratio: Weight of box 0 relative to box 5

    Returns:
        A card id, or None if there is nothing to study
    """
    candidates = sorted(card_ids)
    if not candidates:
        return None

    if len(candidates) > 1:
        recent = most_recent_card(candidates, mastery)
        if recent is not None:
            candidates.remove(recent)

    weights = [
        box_weight(mastery[c].box_index if c in mastery else MIN_BOX, weight_ratio)
        for c in candidates
    ]
    chosen = weighted_choice(candidates, weights, rng)
    logger.debug("Selected card %d out of %d candidates", chosen, len(candidates))
    return chosen
