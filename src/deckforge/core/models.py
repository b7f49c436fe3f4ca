"""Persisted entities. Every row carries the owning user_id."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

ContentType = Literal["pdf", "html", "markdown", "txt", "url"]
ProcessingStatus = Literal["pending", "processing", "completed", "failed"]
CardDifficulty = Literal["easy", "medium", "hard"]
EdgeType = Literal["related", "follows", "contradicts", "elaborates"]

CONTENT_TYPES = ("pdf", "html", "markdown", "txt", "url")
PROCESSING_STATUSES = ("pending", "processing", "completed", "failed")
CARD_DIFFICULTIES = ("easy", "medium", "hard")
EDGE_TYPES = ("related", "follows", "contradicts", "elaborates")
TERMINAL_STATUSES = ("completed", "failed")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Source(BaseModel):
    """User-submitted raw input (file or URL) awaiting processing."""
    id: str = Field(default_factory=new_id)
    user_id: str
    content_type: ContentType
    title: str
    url: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    status: ProcessingStatus = "pending"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Document(BaseModel):
    """Extracted, normalized text of a source (one per source)."""
    id: str = Field(default_factory=new_id)
    user_id: str
    source_id: str
    title: str
    extracted_text: str = ""
    content: Optional[str] = None
    token_count: int = 0
    status: ProcessingStatus = "pending"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Chunk(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    document_id: str
    chunk_index: int
    content: str
    start_char: Optional[int] = None
    end_char: Optional[int] = None
    token_count: int = 0


class Embedding(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    chunk_id: str
    embedding: List[float]
    model_used: Optional[str] = None


class Card(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    chunk_id: str
    front_text: str
    back_text: str
    difficulty: CardDifficulty = "medium"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Deck(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    description: Optional[str] = None
    status: ProcessingStatus = "pending"
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class DeckDocument(BaseModel):
    deck_id: str
    document_id: str
    user_id: str


class DeckCard(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    deck_id: str
    card_id: str
    position: int


class UserProgress(BaseModel):
    """Spaced-repetition state for one (user, card)."""
    id: str = Field(default_factory=new_id)
    user_id: str
    card_id: str
    reviews: int = 0
    correct_count: int = 0
    ease_factor: float = 2.5
    interval_days: int = 0
    last_reviewed: Optional[datetime] = None
    next_review: Optional[datetime] = None


class Branch(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    from_card_id: str
    to_card_id: str
    edge_type: EdgeType = "related"
    strength: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CardDraft(BaseModel):
    """A card that has not been persisted yet."""
    chunk_id: str
    front_text: str
    back_text: str
    difficulty: CardDifficulty = "medium"


class ChunkDraft(BaseModel):
    chunk_index: int
    content: str
    start_char: Optional[int] = None
    end_char: Optional[int] = None
    token_count: int = 0
