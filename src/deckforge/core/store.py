"""Persistence contract for the pipeline and an in-process implementation."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import InvalidTransitionError, NotFoundError, PersistenceError
from .events import StatusBus, StatusChange
from .models import (
    PROCESSING_STATUSES,
    Branch,
    Card,
    CardDraft,
    Chunk,
    ChunkDraft,
    Deck,
    DeckCard,
    DeckDocument,
    Document,
    Embedding,
    Source,
    UserProgress,
    new_id,
)

logger = logging.getLogger(__name__)

STATUS_ENTITIES = ("source", "document", "deck")


def check_chunk_sequence(drafts: Sequence[ChunkDraft]) -> None:
    """chunk_index must run 0..n-1 without gaps."""
    for expected, draft in enumerate(drafts):
        if draft.chunk_index != expected:
            raise PersistenceError(
                f"Chunk index {draft.chunk_index} at position {expected}; indexes must be gapless from 0"
            )


class BaseStore(ABC):
    """
    Storage used by every pipeline step.

    All reads and writes are scoped by ``user_id``; a row owned by another
    user is reported as missing (``NotFoundError``). Status changes go through
    ``transition_status`` only, which is a compare-and-set and publishes the
    change on the attached ``StatusBus``.
    """

    def __init__(self, bus: Optional[StatusBus] = None):
        self.bus = bus or StatusBus()

    def _publish(self, entity: str, entity_id: str, user_id: str, status: str) -> None:
        self.bus.publish(StatusChange(entity=entity, entity_id=entity_id, user_id=user_id, status=status))

    # Sources / documents
    @abstractmethod
    def add_source(self, source: Source) -> Source: ...

    @abstractmethod
    def get_source(self, source_id: str, user_id: str) -> Source: ...

    @abstractmethod
    def find_sources_by_file(self, user_id: str, file_path: str) -> List[Source]:
        """The user's sources stored under object name ``file_path``, oldest first."""

    @abstractmethod
    def add_document(self, document: Document) -> Document: ...

    @abstractmethod
    def get_document(self, document_id: str, user_id: str) -> Document: ...

    @abstractmethod
    def get_document_for_source(self, source_id: str, user_id: str) -> Optional[Document]: ...

    @abstractmethod
    def transition_status(
        self,
        entity: str,
        entity_id: str,
        user_id: str,
        from_statuses: Iterable[str],
        to_status: str
    ) -> bool:
        """Set status to ``to_status`` only if it is currently one of ``from_statuses``."""

    @abstractmethod
    def update_metadata(self, entity: str, entity_id: str, user_id: str, patch: Dict[str, Any]) -> None:
        """Merge ``patch`` into a source's or document's metadata."""

    # Chunks / embeddings
    @abstractmethod
    def add_chunks(self, user_id: str, document_id: str, drafts: Sequence[ChunkDraft]) -> List[Chunk]: ...

    @abstractmethod
    def list_chunks(self, user_id: str, document_ids: Sequence[str], limit: Optional[int] = None) -> List[Chunk]:
        """Chunks of the given documents, in document order then chunk_index."""

    @abstractmethod
    def get_chunks(self, user_id: str, chunk_ids: Sequence[str]) -> List[Chunk]: ...

    @abstractmethod
    def upsert_embedding(self, user_id: str, chunk_id: str, vector: List[float], model: str) -> Embedding: ...

    @abstractmethod
    def list_embeddings(self, user_id: str) -> List[Embedding]: ...

    # Decks / cards
    @abstractmethod
    def add_deck(self, deck: Deck) -> Deck: ...

    @abstractmethod
    def get_deck(self, deck_id: str, user_id: str) -> Deck: ...

    @abstractmethod
    def link_deck_document(self, deck_id: str, document_id: str, user_id: str) -> DeckDocument: ...

    @abstractmethod
    def list_deck_document_ids(self, deck_id: str, user_id: str) -> List[str]: ...

    @abstractmethod
    def find_deck_for_document(self, document_id: str, user_id: str) -> Optional[Deck]: ...

    @abstractmethod
    def reset_deck(self, deck_id: str, user_id: str) -> Deck:
        """Remove the deck's deck_cards and put it back to ``pending``."""

    @abstractmethod
    def attach_cards(self, deck_id: str, user_id: str, drafts: Sequence[CardDraft]) -> List[DeckCard]:
        """Insert cards and their deck_cards rows together; positions continue densely from the current count."""

    @abstractmethod
    def list_deck_cards(self, deck_id: str, user_id: str) -> List[DeckCard]: ...

    @abstractmethod
    def get_card(self, card_id: str, user_id: str) -> Card: ...

    @abstractmethod
    def list_cards_for_chunks(self, user_id: str, chunk_ids: Sequence[str]) -> List[Card]: ...

    # Study state
    @abstractmethod
    def get_progress(self, user_id: str, card_id: str) -> Optional[UserProgress]: ...

    @abstractmethod
    def save_progress(self, progress: UserProgress) -> UserProgress:
        """Upsert keyed by (user_id, card_id)."""

    @abstractmethod
    def add_branch(self, branch: Branch) -> Branch: ...

    def count_deck_cards(self, deck_id: str, user_id: str) -> int:
        return len(self.list_deck_cards(deck_id, user_id))

    def count_chunks(self, user_id: str, document_id: str) -> int:
        return len(self.list_chunks(user_id, [document_id]))


class MemoryStore(BaseStore):
    """Thread-safe in-process store, used for tests and local runs."""

    def __init__(self, bus: Optional[StatusBus] = None):
        super().__init__(bus)
        self._lock = threading.RLock()
        self.sources: Dict[str, Source] = {}
        self.documents: Dict[str, Document] = {}
        self.chunks: Dict[str, Chunk] = {}
        self.embeddings: Dict[str, Embedding] = {}  # keyed by chunk_id
        self.decks: Dict[str, Deck] = {}
        self.deck_documents: List[DeckDocument] = []
        self.cards: Dict[str, Card] = {}
        self.deck_cards: List[DeckCard] = []
        self.progress: Dict[tuple, UserProgress] = {}
        self.branches: Dict[str, Branch] = {}

    def _owned(self, table: Dict[str, Any], entity: str, entity_id: str, user_id: str):
        row = table.get(entity_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError(entity, entity_id)
        return row

    def _status_table(self, entity: str) -> Dict[str, Any]:
        if entity not in STATUS_ENTITIES:
            raise ValueError(f"Entity has no status: {entity}")
        return {"source": self.sources, "document": self.documents, "deck": self.decks}[entity]

    def add_source(self, source: Source) -> Source:
        with self._lock:
            self.sources[source.id] = source.model_copy(deep=True)
            return source

    def get_source(self, source_id: str, user_id: str) -> Source:
        with self._lock:
            return self._owned(self.sources, "source", source_id, user_id).model_copy(deep=True)

    def find_sources_by_file(self, user_id, file_path) -> List[Source]:
        with self._lock:
            matches = [s for s in self.sources.values() if s.user_id == user_id and s.file_path == file_path]
            return [s.model_copy(deep=True) for s in sorted(matches, key=lambda s: s.created_at)]

    def add_document(self, document: Document) -> Document:
        with self._lock:
            self._owned(self.sources, "source", document.source_id, document.user_id)
            if any(d.source_id == document.source_id for d in self.documents.values()):
                raise PersistenceError(f"Source {document.source_id} already has a document")
            self.documents[document.id] = document.model_copy(deep=True)
            return document

    def get_document(self, document_id: str, user_id: str) -> Document:
        with self._lock:
            return self._owned(self.documents, "document", document_id, user_id).model_copy(deep=True)

    def get_document_for_source(self, source_id: str, user_id: str) -> Optional[Document]:
        with self._lock:
            for document in self.documents.values():
                if document.source_id == source_id and document.user_id == user_id:
                    return document.model_copy(deep=True)
            return None

    def transition_status(self, entity, entity_id, user_id, from_statuses, to_status) -> bool:
        if to_status not in PROCESSING_STATUSES:
            raise ValueError(f"Unknown status: {to_status}")
        with self._lock:
            row = self._owned(self._status_table(entity), entity, entity_id, user_id)
            if row.status not in tuple(from_statuses):
                return False
            row.status = to_status
        self._publish(entity, entity_id, user_id, to_status)
        return True

    def update_metadata(self, entity, entity_id, user_id, patch) -> None:
        if entity not in ("source", "document"):
            raise ValueError(f"Entity has no metadata: {entity}")
        with self._lock:
            row = self._owned(self._status_table(entity), entity, entity_id, user_id)
            row.metadata = {**row.metadata, **patch}

    def add_chunks(self, user_id, document_id, drafts) -> List[Chunk]:
        check_chunk_sequence(drafts)
        with self._lock:
            self._owned(self.documents, "document", document_id, user_id)
            if any(c.document_id == document_id for c in self.chunks.values()):
                raise PersistenceError(f"Document {document_id} already has chunks")
            created = [
                Chunk(user_id=user_id, document_id=document_id, **draft.model_dump())
                for draft in drafts
            ]
            for chunk in created:
                self.chunks[chunk.id] = chunk
            return [c.model_copy() for c in created]

    def list_chunks(self, user_id, document_ids, limit=None) -> List[Chunk]:
        order = {doc_id: i for i, doc_id in enumerate(document_ids)}
        with self._lock:
            rows = [
                c for c in self.chunks.values()
                if c.user_id == user_id and c.document_id in order
            ]
        rows.sort(key=lambda c: (order[c.document_id], c.chunk_index))
        if limit is not None:
            rows = rows[:limit]
        return [c.model_copy() for c in rows]

    def get_chunks(self, user_id, chunk_ids) -> List[Chunk]:
        with self._lock:
            return [
                self.chunks[cid].model_copy() for cid in chunk_ids
                if cid in self.chunks and self.chunks[cid].user_id == user_id
            ]

    def upsert_embedding(self, user_id, chunk_id, vector, model) -> Embedding:
        with self._lock:
            self._owned(self.chunks, "chunk", chunk_id, user_id)
            existing = self.embeddings.get(chunk_id)
            embedding = Embedding(
                id=existing.id if existing else new_id(),
                user_id=user_id,
                chunk_id=chunk_id,
                embedding=list(vector),
                model_used=model,
            )
            self.embeddings[chunk_id] = embedding
            return embedding

    def list_embeddings(self, user_id) -> List[Embedding]:
        with self._lock:
            return [e for e in self.embeddings.values() if e.user_id == user_id]

    def add_deck(self, deck: Deck) -> Deck:
        with self._lock:
            self.decks[deck.id] = deck.model_copy(deep=True)
            return deck

    def get_deck(self, deck_id, user_id) -> Deck:
        with self._lock:
            return self._owned(self.decks, "deck", deck_id, user_id).model_copy(deep=True)

    def link_deck_document(self, deck_id, document_id, user_id) -> DeckDocument:
        with self._lock:
            self._owned(self.decks, "deck", deck_id, user_id)
            self._owned(self.documents, "document", document_id, user_id)
            link = DeckDocument(deck_id=deck_id, document_id=document_id, user_id=user_id)
            if link not in self.deck_documents:
                self.deck_documents.append(link)
            return link

    def list_deck_document_ids(self, deck_id, user_id) -> List[str]:
        with self._lock:
            self._owned(self.decks, "deck", deck_id, user_id)
            return [l.document_id for l in self.deck_documents if l.deck_id == deck_id]

    def find_deck_for_document(self, document_id, user_id) -> Optional[Deck]:
        with self._lock:
            for link in self.deck_documents:
                if link.document_id == document_id and link.user_id == user_id:
                    return self.decks[link.deck_id].model_copy(deep=True)
            return None

    def reset_deck(self, deck_id, user_id) -> Deck:
        with self._lock:
            deck = self._owned(self.decks, "deck", deck_id, user_id)
            if deck.status == "processing":
                raise InvalidTransitionError(f"Deck {deck_id} is generating; it cannot be reset now")
            self.deck_cards = [dc for dc in self.deck_cards if dc.deck_id != deck_id]
            deck.status = "pending"
        self._publish("deck", deck_id, user_id, "pending")
        return self.get_deck(deck_id, user_id)

    def attach_cards(self, deck_id, user_id, drafts) -> List[DeckCard]:
        with self._lock:
            self._owned(self.decks, "deck", deck_id, user_id)
            for draft in drafts:
                self._owned(self.chunks, "chunk", draft.chunk_id, user_id)

            start = sum(1 for dc in self.deck_cards if dc.deck_id == deck_id)
            links = []
            for offset, draft in enumerate(drafts):
                card = Card(user_id=user_id, **draft.model_dump())
                self.cards[card.id] = card
                link = DeckCard(user_id=user_id, deck_id=deck_id, card_id=card.id, position=start + offset)
                self.deck_cards.append(link)
                links.append(link)
            return links

    def list_deck_cards(self, deck_id, user_id) -> List[DeckCard]:
        with self._lock:
            self._owned(self.decks, "deck", deck_id, user_id)
            rows = [dc for dc in self.deck_cards if dc.deck_id == deck_id]
        return sorted(rows, key=lambda dc: dc.position)

    def get_card(self, card_id, user_id) -> Card:
        with self._lock:
            return self._owned(self.cards, "card", card_id, user_id).model_copy(deep=True)

    def list_cards_for_chunks(self, user_id, chunk_ids) -> List[Card]:
        wanted = set(chunk_ids)
        with self._lock:
            return [c for c in self.cards.values() if c.user_id == user_id and c.chunk_id in wanted]

    def get_progress(self, user_id, card_id) -> Optional[UserProgress]:
        with self._lock:
            row = self.progress.get((user_id, card_id))
            return row.model_copy() if row else None

    def save_progress(self, progress: UserProgress) -> UserProgress:
        with self._lock:
            self._owned(self.cards, "card", progress.card_id, progress.user_id)
            key = (progress.user_id, progress.card_id)
            existing = self.progress.get(key)
            if existing:
                progress = progress.model_copy(update={"id": existing.id})
            self.progress[key] = progress
            return progress

    def add_branch(self, branch: Branch) -> Branch:
        with self._lock:
            self._owned(self.cards, "card", branch.from_card_id, branch.user_id)
            self._owned(self.cards, "card", branch.to_card_id, branch.user_id)
            self.branches[branch.id] = branch
            return branch
