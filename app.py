"""
FastAPI backend for the flashqueue study scheduler.
Exposes the deck tree, cards and the resumable study session.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from config import Settings, configure_logging
from deck_scope import descendant_deck_ids, resolve_scope
from models import (
    CardDB, DeckDB, MasteryDB, CardCreate, CardResponse, DeckCreate, DeckUpdate, DeckResponse,
    GradeRequest, GradeResponse, LearningScope, ProgressResponse, StartSessionRequest,
    StepResponse, StrategyRequest, MAX_BOX,
    get_engine, init_db, get_session
)
from spaced_rep import InvalidGrade
from stores import MasteryStore, PersistenceError, SessionStore, SqlDeckStore
from study_session import StudySession, StudyStep

logger = logging.getLogger(__name__)

# Database setup
settings = Settings.from_env()
engine = get_engine(settings.database_url)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: Initialize logging and database
    configure_logging(settings.log_level)
    init_db(engine)
    logger.info("Database initialized at %s", settings.database_url)
    yield


app = FastAPI(
    title="flashqueue API",
    description="Flashcard decks with adaptive Leitner-box study sessions",
    version="1.0.0",
    lifespan=lifespan,
)


# Dependency to get DB session
def get_db():
    session = get_session(engine)
    try:
        yield session
    finally:
        session.close()


def get_settings() -> Settings:
    return settings


def get_study_session(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> StudySession:
    return StudySession(SqlDeckStore(db), MasteryStore(db), SessionStore(db), settings=settings)


def get_deck_or_404(db: Session, deck_id: int) -> DeckDB:
    deck = db.get(DeckDB, deck_id)
    if not deck:
        raise HTTPException(status_code=404, detail="Deck not found")
    return deck


def open_session(study: StudySession, db: Session, deck_id: int) -> Optional[PersistenceError]:
    get_deck_or_404(db, deck_id)
    return study.resume(deck_id)


def step_response(db: Session, step: StudyStep, error: Optional[PersistenceError] = None) -> StepResponse:
    error = step.error or error
    card = db.get(CardDB, step.card_id) if step.card_id is not None else None
    return StepResponse(
        card=CardResponse.model_validate(card) if card else None,
        finished=step.finished,
        persisted=error is None,
        error=str(error) if error else None,
    )


def progress_response(study: StudySession) -> ProgressResponse:
    progress = study.progress()
    return ProgressResponse(
        deck_id=study.deck_id,
        scope=study.record.scope,
        strategy=study.record.strategy,
        learned=progress.learned,
        total=progress.total,
        label=progress.label,
        eligible_cards=len(study.card_ids),
    )


# --- Routes ---

@app.get("/")
async def root():
    return {"message": "flashqueue API - visit /docs for the endpoints."}


@app.get("/api/decks", response_model=list[DeckResponse])
async def list_decks(db: Session = Depends(get_db)):
    """List all decks, parents before children by id."""
    return db.query(DeckDB).order_by(DeckDB.id).all()


@app.post("/api/decks", response_model=DeckResponse)
async def create_deck(deck: DeckCreate, db: Session = Depends(get_db)):
    """Create a deck, optionally below a parent deck."""
    if deck.parent_deck_id is not None:
        get_deck_or_404(db, deck.parent_deck_id)
    db_deck = DeckDB(name=deck.name, parent_deck_id=deck.parent_deck_id)
    db.add(db_deck)
    db.commit()
    db.refresh(db_deck)
    return db_deck


@app.get("/api/decks/{deck_id}", response_model=DeckResponse)
async def get_deck(deck_id: int, db: Session = Depends(get_db)):
    return get_deck_or_404(db, deck_id)


@app.patch("/api/decks/{deck_id}", response_model=DeckResponse)
async def update_deck(deck_id: int, update: DeckUpdate, db: Session = Depends(get_db)):
    """Rename a deck or move it below another deck."""
    deck = get_deck_or_404(db, deck_id)
    if update.name is not None:
        deck.name = update.name
    if "parent_deck_id" in update.model_fields_set:
        parent_id = update.parent_deck_id
        if parent_id is not None:
            get_deck_or_404(db, parent_id)
            # Parent links must never form a cycle
            if parent_id in descendant_deck_ids(SqlDeckStore(db), deck_id):
                raise HTTPException(status_code=400, detail="A deck cannot be moved below itself")
        deck.parent_deck_id = parent_id
    db.commit()
    db.refresh(deck)
    return deck


@app.delete("/api/decks/{deck_id}")
async def delete_deck(deck_id: int, db: Session = Depends(get_db)):
    """Delete a deck with its sub-decks, cards, mastery and session."""
    deck = get_deck_or_404(db, deck_id)
    db.delete(deck)
    db.commit()
    return {"message": "Deck deleted"}


@app.get("/api/decks/{deck_id}/cards", response_model=list[CardResponse])
async def list_deck_cards(
    deck_id: int,
    scope: LearningScope = LearningScope.MAIN_ONLY,
    selected: list[int] = Query([]),
    db: Session = Depends(get_db),
):
    """List the cards a deck covers in the given scope; `selected` repeats per chosen sub-deck."""
    get_deck_or_404(db, deck_id)
    card_ids = resolve_scope(SqlDeckStore(db), deck_id, scope, selected)
    if not card_ids:
        return []
    return db.query(CardDB).filter(CardDB.id.in_(card_ids)).order_by(CardDB.id).all()


@app.post("/api/decks/{deck_id}/cards", response_model=CardResponse)
async def create_card(deck_id: int, card: CardCreate, db: Session = Depends(get_db)):
    """Create a new flashcard in a deck."""
    get_deck_or_404(db, deck_id)
    db_card = CardDB(deck_id=deck_id, front=card.front, back=card.back)
    db.add(db_card)
    db.commit()
    db.refresh(db_card)
    return db_card


@app.delete("/api/cards/{card_id}")
async def delete_card(card_id: int, db: Session = Depends(get_db)):
    """Delete a card."""
    card = db.get(CardDB, card_id)
    if not card:
        raise HTTPException(status_code=404, detail="Card not found")
    db.delete(card)
    db.commit()
    return {"message": "Card deleted"}


@app.post("/api/decks/{deck_id}/session", response_model=ProgressResponse)
async def start_session(
    deck_id: int,
    request: StartSessionRequest,
    db: Session = Depends(get_db),
    study: StudySession = Depends(get_study_session),
):
    """Start (or re-open) the study session of a deck with a scope and strategy."""
    get_deck_or_404(db, deck_id)
    error = study.start(deck_id, request.scope, request.strategy, request.selected_deck_ids)
    if error:
        raise HTTPException(status_code=503, detail=f"Session not saved: {error}")
    return progress_response(study)


@app.get("/api/decks/{deck_id}/session", response_model=ProgressResponse)
async def get_session_progress(
    deck_id: int,
    db: Session = Depends(get_db),
    study: StudySession = Depends(get_study_session),
):
    """Progress of the deck's stored session in its current strategy."""
    get_deck_or_404(db, deck_id)
    if not study.open(deck_id):
        raise HTTPException(status_code=404, detail="No study session for this deck")
    return progress_response(study)


@app.post("/api/decks/{deck_id}/session/next", response_model=StepResponse)
async def next_card(
    deck_id: int,
    db: Session = Depends(get_db),
    study: StudySession = Depends(get_study_session),
):
    """Draw the next card; `finished` is set when nothing is left to study."""
    error = open_session(study, db, deck_id)
    return step_response(db, study.next(), error)


@app.post("/api/decks/{deck_id}/session/grade", response_model=GradeResponse)
async def grade_card(
    deck_id: int,
    review: GradeRequest,
    db: Session = Depends(get_db),
    study: StudySession = Depends(get_study_session),
):
    """Submit the learner's grade for a card of the session."""
    open_error = open_session(study, db, deck_id)
    try:
        result = study.grade(review.card_id, review.grade)
    except KeyError:
        raise HTTPException(status_code=404, detail="Card is not part of this session")
    except InvalidGrade as e:
        raise HTTPException(status_code=422, detail=str(e))
    error = result.error or open_error
    return GradeResponse(
        mastery=result.record,
        persisted=error is None,
        error=str(error) if error else None,
    )


@app.post("/api/decks/{deck_id}/session/reset", response_model=ProgressResponse)
async def reset_session(
    deck_id: int,
    db: Session = Depends(get_db),
    study: StudySession = Depends(get_study_session),
):
    """Start the current strategy over."""
    open_error = open_session(study, db, deck_id)
    error = study.reset_progress() or open_error
    if error:
        raise HTTPException(status_code=503, detail=f"Reset not saved: {error}")
    return progress_response(study)


@app.post("/api/decks/{deck_id}/session/strategy", response_model=ProgressResponse)
async def change_strategy(
    deck_id: int,
    request: StrategyRequest,
    db: Session = Depends(get_db),
    study: StudySession = Depends(get_study_session),
):
    """Switch to the given strategy, or cycle to the next one."""
    open_error = open_session(study, db, deck_id)
    if request.strategy is None:
        error = study.cycle_strategy()
    else:
        error = study.set_strategy(request.strategy)
    error = error or open_error
    if error:
        raise HTTPException(status_code=503, detail=f"Strategy not saved: {error}")
    return progress_response(study)


@app.get("/api/stats")
async def get_stats(db: Session = Depends(get_db)):
    """Get learning statistics."""
    total = db.query(CardDB).count()
    reviewed = db.query(MasteryDB).filter(MasteryDB.last_reviewed.isnot(None)).count()
    counts = dict(
        db.query(MasteryDB.box_index, func.count(MasteryDB.card_id))
        .group_by(MasteryDB.box_index)
        .all()
    )
    boxes = {str(box): counts.get(box, 0) for box in range(MAX_BOX + 1)}
    # Cards never graded have no mastery row and sit in the first box
    boxes["0"] += total - sum(counts.values())

    return {
        "total": total,
        "new": total - reviewed,
        "mastered": boxes[str(MAX_BOX)],
        "boxes": boxes,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
