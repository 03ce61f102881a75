"""
Resolve which cards a study session covers.
"""

import logging
from typing import Iterable

from models import LearningScope
from stores import DeckStore

logger = logging.getLogger(__name__)


def descendant_deck_ids(store: DeckStore, deck_id: int) -> set[int]:
    """Ids of `deck_id` and every deck below it, at any depth."""
    found = {deck_id}
    stack = [deck_id]
    while stack:
        current = stack.pop()
        for child_id in store.get_children(current):
            if child_id not in found:
                found.add(child_id)
                stack.append(child_id)
    return found


def resolve_scope(
    store: DeckStore,
    deck_id: int,
    scope: LearningScope,
    selected_deck_ids: Iterable[int] = (),
) -> set[int]:
    """
    Collect the eligible card ids for a deck and scope.

    Args:
        store: Deck tree to read from
        deck_id: Deck the session studies
        scope: MAIN_ONLY, ALL_RECURSIVE or CUSTOM_SELECTION
        selected_deck_ids: Sub-decks to add for CUSTOM_SELECTION

    Returns:
        Set of card ids; empty if the deck does not exist
    """
    if store.get_deck(deck_id) is None:
        logger.warning("Deck %s not found, nothing to study", deck_id)
        return set()

    if scope == LearningScope.MAIN_ONLY:
        deck_ids = {deck_id}
    elif scope == LearningScope.ALL_RECURSIVE:
        deck_ids = descendant_deck_ids(store, deck_id)
    elif scope == LearningScope.CUSTOM_SELECTION:
        selected = set(selected_deck_ids)
        reachable = descendant_deck_ids(store, deck_id)
        ignored = selected - reachable
        if ignored:
            logger.warning("Ignoring decks %s, not below deck %s", sorted(ignored), deck_id)
        deck_ids = {deck_id} | (selected & reachable)
    else:
        raise ValueError(f"Unknown scope: {scope!r}")

    card_ids = set()
    for current in deck_ids:
        card_ids.update(store.get_cards_of(current))
    return card_ids
