"""
Pydantic & SQLAlchemy models for the study scheduler.
Implements the Leitner-box mastery fields and the persisted learning session.
"""

import enum
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, Field
from sqlalchemy import Column, Integer, String, Float, DateTime, Text, JSON, Enum, create_engine, ForeignKey
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool

Base = declarative_base()

MIN_BOX = 0
MAX_BOX = 5


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LearningScope(str, enum.Enum):
    MAIN_ONLY = "main_only"
    ALL_RECURSIVE = "all_recursive"
    CUSTOM_SELECTION = "custom_selection"


class StudyStrategy(str, enum.Enum):
    SEQUENTIAL = "sequential"
    SHUFFLE = "shuffle"      # random order, no repeats until every card was seen
    ADAPTIVE = "adaptive"


# SQLAlchemy ORM Models
class DeckDB(Base):
    __tablename__ = "decks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    parent_deck_id = Column(Integer, ForeignKey("decks.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)

    parent = relationship("DeckDB", remote_side=[id], back_populates="sub_decks")
    sub_decks = relationship("DeckDB", back_populates="parent", cascade="all, delete-orphan")
    cards = relationship("CardDB", back_populates="deck", cascade="all, delete-orphan")
    session = relationship("LearningSessionDB", back_populates="deck", cascade="all, delete-orphan", uselist=False)


class CardDB(Base):
    __tablename__ = "cards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    deck_id = Column(Integer, ForeignKey("decks.id", ondelete="CASCADE"), nullable=False, index=True)
    front = Column(Text, nullable=False)
    back = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    deck = relationship("DeckDB", back_populates="cards")
    mastery = relationship("MasteryDB", back_populates="card", cascade="all, delete-orphan", uselist=False)


class MasteryDB(Base):
    __tablename__ = "card_mastery"

    card_id = Column(Integer, ForeignKey("cards.id", ondelete="CASCADE"), primary_key=True)
    score = Column(Float, default=0.0, nullable=False)       # secondary signal, only reset by "again"
    box_index = Column(Integer, default=MIN_BOX, nullable=False)
    last_reviewed = Column(DateTime, nullable=True)          # NULL = never reviewed

    card = relationship("CardDB", back_populates="mastery")


class LearningSessionDB(Base):
    __tablename__ = "learning_sessions"

    # One session per deck, upserted
    deck_id = Column(Integer, ForeignKey("decks.id", ondelete="CASCADE"), primary_key=True)
    scope = Column(Enum(LearningScope), nullable=False, default=LearningScope.MAIN_ONLY)
    selected_deck_ids = Column(JSON, nullable=False, default=list)
    strategy = Column(Enum(StudyStrategy), nullable=False, default=StudyStrategy.SEQUENTIAL)

    # Progress
    last_learned_index = Column(Integer, nullable=False, default=0)
    seen_card_ids = Column(JSON, nullable=False, default=list)
    last_accessed = Column(DateTime, default=utcnow)

    deck = relationship("DeckDB", back_populates="session")


# Domain records handed between the scheduler and its stores
class MasteryRecord(BaseModel):
    card_id: int
    score: float = 0.0
    box_index: int = Field(MIN_BOX, ge=MIN_BOX, le=MAX_BOX)
    last_reviewed: Optional[datetime] = None

    class Config:
        from_attributes = True

    @classmethod
    def new(cls, card_id: int) -> "MasteryRecord":
        """Default record for a card that has never been graded."""
        return cls(card_id=card_id)

    @property
    def reviewed_at(self) -> datetime:
        """`last_reviewed` with never-reviewed cards sorting first."""
        return self.last_reviewed or datetime.min


class SessionRecord(BaseModel):
    deck_id: int
    scope: LearningScope = LearningScope.MAIN_ONLY
    selected_deck_ids: list[int] = []
    strategy: StudyStrategy = StudyStrategy.SEQUENTIAL
    last_learned_index: int = 0
    seen_card_ids: list[int] = []
    last_accessed: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    def same_selection(self, scope: LearningScope, selected_deck_ids: list[int]) -> bool:
        return self.scope == scope and self.selected_deck_ids == selected_deck_ids

    def reset_cursor(self) -> None:
        self.last_learned_index = 0
        self.seen_card_ids = []


# Pydantic models for API
class DeckCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    parent_deck_id: Optional[int] = None


class DeckUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    parent_deck_id: Optional[int] = None


class DeckResponse(BaseModel):
    id: int
    name: str
    parent_deck_id: Optional[int] = None

    class Config:
        from_attributes = True


class CardCreate(BaseModel):
    front: str
    back: str


class CardResponse(BaseModel):
    id: int
    deck_id: int
    front: str
    back: str

    class Config:
        from_attributes = True


class StartSessionRequest(BaseModel):
    scope: LearningScope = LearningScope.MAIN_ONLY
    strategy: Optional[StudyStrategy] = None
    selected_deck_ids: list[int] = []


class StrategyRequest(BaseModel):
    strategy: Optional[StudyStrategy] = None   # None cycles to the next strategy


class GradeRequest(BaseModel):
    card_id: int
    grade: int = Field(..., ge=1, le=4, description="1=again, 2=hard, 3=good, 4=easy")


class ProgressResponse(BaseModel):
    deck_id: int
    scope: LearningScope
    strategy: StudyStrategy
    learned: int
    total: int
    label: str
    eligible_cards: int


class StepResponse(BaseModel):
    card: Optional[CardResponse] = None
    finished: bool
    persisted: bool = True
    error: Optional[str] = None


class GradeResponse(BaseModel):
    mastery: MasteryRecord
    persisted: bool = True
    error: Optional[str] = None


# Database setup
def get_engine(url: str = "sqlite:///flashcards.db"):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # Single shared connection so every session sees the same in-memory database
        return create_engine(url, echo=False, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, echo=False, connect_args={"check_same_thread": False})


def init_db(engine):
    Base.metadata.create_all(engine)


def get_session(engine):
    Session = sessionmaker(bind=engine)
    return Session()
