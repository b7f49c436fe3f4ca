"""PostgreSQL implementation of the pipeline store."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import InvalidTransitionError, NotFoundError, PersistenceError
from .events import StatusBus
from .models import (
    PROCESSING_STATUSES,
    Branch,
    Card,
    Chunk,
    Deck,
    DeckCard,
    DeckDocument,
    Document,
    Embedding,
    Source,
    UserProgress,
    new_id,
)
from .store import STATUS_ENTITIES, BaseStore, check_chunk_sequence

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content_type TEXT NOT NULL CHECK (content_type IN ('pdf', 'html', 'markdown', 'txt', 'url')),
    title TEXT NOT NULL,
    url TEXT,
    file_path TEXT,
    file_size BIGINT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_id TEXT NOT NULL UNIQUE REFERENCES sources(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    extracted_text TEXT NOT NULL DEFAULT '',
    content TEXT,
    token_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL,
    start_char INTEGER,
    end_char INTEGER,
    token_count INTEGER NOT NULL DEFAULT 0,
    UNIQUE (document_id, chunk_index)
);

CREATE TABLE IF NOT EXISTS embeddings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    chunk_id TEXT NOT NULL UNIQUE REFERENCES chunks(id) ON DELETE CASCADE,
    embedding FLOAT8[] NOT NULL,
    model_used TEXT
);

CREATE TABLE IF NOT EXISTS cards (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    chunk_id TEXT NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    front_text TEXT NOT NULL,
    back_text TEXT NOT NULL,
    difficulty TEXT NOT NULL DEFAULT 'medium' CHECK (difficulty IN ('easy', 'medium', 'hard')),
    metadata JSONB NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS decks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    settings JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS deck_documents (
    deck_id TEXT NOT NULL REFERENCES decks(id) ON DELETE CASCADE,
    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    PRIMARY KEY (deck_id, document_id)
);

CREATE TABLE IF NOT EXISTS deck_cards (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    deck_id TEXT NOT NULL REFERENCES decks(id) ON DELETE CASCADE,
    card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    UNIQUE (deck_id, position)
);

CREATE TABLE IF NOT EXISTS user_progress (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    reviews INTEGER NOT NULL DEFAULT 0,
    correct_count INTEGER NOT NULL DEFAULT 0,
    ease_factor DOUBLE PRECISION NOT NULL DEFAULT 2.5,
    interval_days INTEGER NOT NULL DEFAULT 0,
    last_reviewed TIMESTAMPTZ,
    next_review TIMESTAMPTZ,
    UNIQUE (user_id, card_id)
);

CREATE TABLE IF NOT EXISTS branches (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    from_card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    to_card_id TEXT NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    edge_type TEXT NOT NULL DEFAULT 'related'
        CHECK (edge_type IN ('related', 'follows', 'contradicts', 'elaborates')),
    strength DOUBLE PRECISION,
    metadata JSONB NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_sources_user ON sources (user_id);
CREATE INDEX IF NOT EXISTS idx_sources_user_file ON sources (user_id, file_path);
CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks (document_id, chunk_index);
CREATE INDEX IF NOT EXISTS idx_embeddings_user ON embeddings (user_id);
CREATE INDEX IF NOT EXISTS idx_cards_chunk ON cards (chunk_id);
CREATE INDEX IF NOT EXISTS idx_deck_cards_deck ON deck_cards (deck_id, position);
"""

STATUS_TABLES = {"source": "sources", "document": "documents", "deck": "decks"}


class PostgresStore(BaseStore):
    """
    Store backed by PostgreSQL through psycopg.

    Every call opens its own connection and commits on success. Driver
    errors surface as ``PersistenceError``; only connection failures are
    retried.
    """

    def __init__(self, db_url: str, bus: Optional[StatusBus] = None):
        super().__init__(bus)
        self.db_url = db_url

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=4),
        retry=retry_if_exception_type(psycopg.OperationalError),
        reraise=True
    )
    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.db_url, row_factory=dict_row)

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    yield cur
        except psycopg.Error as e:
            logger.error(f"Database error: {e}")
            raise PersistenceError(str(e)) from e

    def create_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(SCHEMA)
        logger.info("Database schema is up to date")

    def _fetch_owned(self, cur, table: str, entity: str, entity_id: str, user_id: str) -> Dict[str, Any]:
        cur.execute(f"SELECT * FROM {table} WHERE id = %s AND user_id = %s", (entity_id, user_id))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(entity, entity_id)
        return row

    # Sources / documents
    def add_source(self, source: Source) -> Source:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO sources (id, user_id, content_type, title, url, file_path, file_size, status, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                source.id,
                source.user_id,
                source.content_type,
                source.title,
                source.url,
                source.file_path,
                source.file_size,
                source.status,
                Jsonb(source.metadata),
                source.created_at
            ))
        return source

    def get_source(self, source_id: str, user_id: str) -> Source:
        with self._cursor() as cur:
            return Source(**self._fetch_owned(cur, "sources", "source", source_id, user_id))

    def find_sources_by_file(self, user_id, file_path) -> List[Source]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM sources WHERE user_id = %s AND file_path = %s ORDER BY created_at",
                (user_id, file_path)
            )
            return [Source(**row) for row in cur.fetchall()]

    def add_document(self, document: Document) -> Document:
        with self._cursor() as cur:
            self._fetch_owned(cur, "sources", "source", document.source_id, document.user_id)
            cur.execute("""
                INSERT INTO documents (
                    id, user_id, source_id, title, extracted_text, content, token_count, status, metadata, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                document.id,
                document.user_id,
                document.source_id,
                document.title,
                document.extracted_text,
                document.content,
                document.token_count,
                document.status,
                Jsonb(document.metadata),
                document.created_at
            ))
        return document

    def get_document(self, document_id: str, user_id: str) -> Document:
        with self._cursor() as cur:
            return Document(**self._fetch_owned(cur, "documents", "document", document_id, user_id))

    def get_document_for_source(self, source_id: str, user_id: str) -> Optional[Document]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM documents WHERE source_id = %s AND user_id = %s", (source_id, user_id))
            row = cur.fetchone()
        return Document(**row) if row else None

    def transition_status(self, entity, entity_id, user_id, from_statuses, to_status) -> bool:
        if entity not in STATUS_ENTITIES:
            raise ValueError(f"Entity has no status: {entity}")
        if to_status not in PROCESSING_STATUSES:
            raise ValueError(f"Unknown status: {to_status}")
        table = STATUS_TABLES[entity]

        with self._cursor() as cur:
            cur.execute(
                f"UPDATE {table} SET status = %s WHERE id = %s AND user_id = %s AND status = ANY(%s) RETURNING id",
                (to_status, entity_id, user_id, list(from_statuses))
            )
            changed = cur.fetchone() is not None
            if not changed:
                self._fetch_owned(cur, table, entity, entity_id, user_id)

        if changed:
            self._publish(entity, entity_id, user_id, to_status)
        return changed

    def update_metadata(self, entity, entity_id, user_id, patch) -> None:
        if entity not in ("source", "document"):
            raise ValueError(f"Entity has no metadata: {entity}")
        table = STATUS_TABLES[entity]
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE {table} SET metadata = metadata || %s WHERE id = %s AND user_id = %s RETURNING id",
                (Jsonb(patch), entity_id, user_id)
            )
            if cur.fetchone() is None:
                raise NotFoundError(entity, entity_id)

    # Chunks / embeddings
    def add_chunks(self, user_id, document_id, drafts) -> List[Chunk]:
        check_chunk_sequence(drafts)
        created = [Chunk(user_id=user_id, document_id=document_id, **d.model_dump()) for d in drafts]

        with self._cursor() as cur:
            self._fetch_owned(cur, "documents", "document", document_id, user_id)
            cur.execute("SELECT 1 FROM chunks WHERE document_id = %s LIMIT 1", (document_id,))
            if cur.fetchone() is not None:
                raise PersistenceError(f"Document {document_id} already has chunks")
            cur.executemany("""
                INSERT INTO chunks (id, user_id, document_id, chunk_index, content, start_char, end_char, token_count)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, [
                (c.id, c.user_id, c.document_id, c.chunk_index, c.content, c.start_char, c.end_char, c.token_count)
                for c in created
            ])

        logger.info(f"Saved {len(created)} chunks for document {document_id}")
        return created

    def list_chunks(self, user_id, document_ids, limit=None) -> List[Chunk]:
        if not document_ids:
            return []
        query = """
            SELECT c.* FROM chunks c
            JOIN unnest(%s::text[]) WITH ORDINALITY AS d(id, ord) ON d.id = c.document_id
            WHERE c.user_id = %s
            ORDER BY d.ord, c.chunk_index
        """
        params: list = [list(document_ids), user_id]
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._cursor() as cur:
            cur.execute(query, params)
            return [Chunk(**row) for row in cur.fetchall()]

    def get_chunks(self, user_id, chunk_ids) -> List[Chunk]:
        if not chunk_ids:
            return []
        with self._cursor() as cur:
            cur.execute("SELECT * FROM chunks WHERE user_id = %s AND id = ANY(%s)", (user_id, list(chunk_ids)))
            rows = {row["id"]: Chunk(**row) for row in cur.fetchall()}
        return [rows[cid] for cid in chunk_ids if cid in rows]

    def upsert_embedding(self, user_id, chunk_id, vector, model) -> Embedding:
        with self._cursor() as cur:
            self._fetch_owned(cur, "chunks", "chunk", chunk_id, user_id)
            cur.execute("""
                INSERT INTO embeddings (id, user_id, chunk_id, embedding, model_used)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (chunk_id) DO UPDATE SET
                    embedding = EXCLUDED.embedding,
                    model_used = EXCLUDED.model_used
                RETURNING *
            """, (new_id(), user_id, chunk_id, [float(v) for v in vector], model))
            return Embedding(**cur.fetchone())

    def list_embeddings(self, user_id) -> List[Embedding]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM embeddings WHERE user_id = %s", (user_id,))
            return [Embedding(**row) for row in cur.fetchall()]

    # Decks / cards
    def add_deck(self, deck: Deck) -> Deck:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO decks (id, user_id, title, description, status, settings, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, (
                deck.id,
                deck.user_id,
                deck.title,
                deck.description,
                deck.status,
                Jsonb(deck.settings),
                deck.created_at
            ))
        return deck

    def get_deck(self, deck_id, user_id) -> Deck:
        with self._cursor() as cur:
            return Deck(**self._fetch_owned(cur, "decks", "deck", deck_id, user_id))

    def link_deck_document(self, deck_id, document_id, user_id) -> DeckDocument:
        with self._cursor() as cur:
            self._fetch_owned(cur, "decks", "deck", deck_id, user_id)
            self._fetch_owned(cur, "documents", "document", document_id, user_id)
            cur.execute("""
                INSERT INTO deck_documents (deck_id, document_id, user_id)
                VALUES (%s, %s, %s)
                ON CONFLICT DO NOTHING
            """, (deck_id, document_id, user_id))
        return DeckDocument(deck_id=deck_id, document_id=document_id, user_id=user_id)

    def list_deck_document_ids(self, deck_id, user_id) -> List[str]:
        with self._cursor() as cur:
            self._fetch_owned(cur, "decks", "deck", deck_id, user_id)
            cur.execute("SELECT document_id FROM deck_documents WHERE deck_id = %s", (deck_id,))
            return [row["document_id"] for row in cur.fetchall()]

    def find_deck_for_document(self, document_id, user_id) -> Optional[Deck]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT d.* FROM decks d
                JOIN deck_documents dd ON dd.deck_id = d.id
                WHERE dd.document_id = %s AND d.user_id = %s
                ORDER BY d.created_at
                LIMIT 1
            """, (document_id, user_id))
            row = cur.fetchone()
        return Deck(**row) if row else None

    def reset_deck(self, deck_id, user_id) -> Deck:
        with self._cursor() as cur:
            cur.execute("SELECT status FROM decks WHERE id = %s AND user_id = %s FOR UPDATE", (deck_id, user_id))
            row = cur.fetchone()
            if row is None:
                raise NotFoundError("deck", deck_id)
            if row["status"] == "processing":
                raise InvalidTransitionError(f"Deck {deck_id} is generating; it cannot be reset now")
            cur.execute("DELETE FROM deck_cards WHERE deck_id = %s", (deck_id,))
            cur.execute("UPDATE decks SET status = 'pending' WHERE id = %s RETURNING *", (deck_id,))
            deck = Deck(**cur.fetchone())
        self._publish("deck", deck_id, user_id, "pending")
        return deck

    def attach_cards(self, deck_id, user_id, drafts) -> List[DeckCard]:
        cards = [Card(user_id=user_id, **d.model_dump()) for d in drafts]

        # One transaction: either every card and its position lands, or none do.
        with self._cursor() as cur:
            cur.execute("SELECT id FROM decks WHERE id = %s AND user_id = %s FOR UPDATE", (deck_id, user_id))
            if cur.fetchone() is None:
                raise NotFoundError("deck", deck_id)

            chunk_ids = sorted({c.chunk_id for c in cards})
            if chunk_ids:
                cur.execute("SELECT id FROM chunks WHERE user_id = %s AND id = ANY(%s)", (user_id, chunk_ids))
                found = {row["id"] for row in cur.fetchall()}
                missing = [cid for cid in chunk_ids if cid not in found]
                if missing:
                    raise NotFoundError("chunk", missing[0])

            cur.execute("SELECT count(*) AS n FROM deck_cards WHERE deck_id = %s", (deck_id,))
            start = cur.fetchone()["n"]

            links = []
            for offset, card in enumerate(cards):
                cur.execute("""
                    INSERT INTO cards (id, user_id, chunk_id, front_text, back_text, difficulty, metadata)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                """, (
                    card.id,
                    card.user_id,
                    card.chunk_id,
                    card.front_text,
                    card.back_text,
                    card.difficulty,
                    Jsonb(card.metadata)
                ))
                link = DeckCard(user_id=user_id, deck_id=deck_id, card_id=card.id, position=start + offset)
                cur.execute("""
                    INSERT INTO deck_cards (id, user_id, deck_id, card_id, position)
                    VALUES (%s, %s, %s, %s, %s)
                """, (link.id, link.user_id, link.deck_id, link.card_id, link.position))
                links.append(link)

        logger.info(f"Attached {len(links)} cards to deck {deck_id}")
        return links

    def list_deck_cards(self, deck_id, user_id) -> List[DeckCard]:
        with self._cursor() as cur:
            self._fetch_owned(cur, "decks", "deck", deck_id, user_id)
            cur.execute("SELECT * FROM deck_cards WHERE deck_id = %s ORDER BY position", (deck_id,))
            return [DeckCard(**row) for row in cur.fetchall()]

    def count_deck_cards(self, deck_id, user_id) -> int:
        with self._cursor() as cur:
            self._fetch_owned(cur, "decks", "deck", deck_id, user_id)
            cur.execute("SELECT count(*) AS n FROM deck_cards WHERE deck_id = %s", (deck_id,))
            return cur.fetchone()["n"]

    def count_chunks(self, user_id, document_id) -> int:
        with self._cursor() as cur:
            cur.execute(
                "SELECT count(*) AS n FROM chunks WHERE document_id = %s AND user_id = %s",
                (document_id, user_id)
            )
            return cur.fetchone()["n"]

    def get_card(self, card_id, user_id) -> Card:
        with self._cursor() as cur:
            return Card(**self._fetch_owned(cur, "cards", "card", card_id, user_id))

    def list_cards_for_chunks(self, user_id, chunk_ids) -> List[Card]:
        if not chunk_ids:
            return []
        with self._cursor() as cur:
            cur.execute("SELECT * FROM cards WHERE user_id = %s AND chunk_id = ANY(%s)", (user_id, list(chunk_ids)))
            return [Card(**row) for row in cur.fetchall()]

    # Study state
    def get_progress(self, user_id, card_id) -> Optional[UserProgress]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM user_progress WHERE user_id = %s AND card_id = %s", (user_id, card_id))
            row = cur.fetchone()
        return UserProgress(**row) if row else None

    def save_progress(self, progress: UserProgress) -> UserProgress:
        with self._cursor() as cur:
            self._fetch_owned(cur, "cards", "card", progress.card_id, progress.user_id)
            cur.execute("""
                INSERT INTO user_progress (
                    id, user_id, card_id, reviews, correct_count, ease_factor, interval_days, last_reviewed, next_review
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, card_id) DO UPDATE SET
                    reviews = EXCLUDED.reviews,
                    correct_count = EXCLUDED.correct_count,
                    ease_factor = EXCLUDED.ease_factor,
                    interval_days = EXCLUDED.interval_days,
                    last_reviewed = EXCLUDED.last_reviewed,
                    next_review = EXCLUDED.next_review
                RETURNING *
            """, (
                progress.id,
                progress.user_id,
                progress.card_id,
                progress.reviews,
                progress.correct_count,
                progress.ease_factor,
                progress.interval_days,
                progress.last_reviewed,
                progress.next_review
            ))
            return UserProgress(**cur.fetchone())

    def add_branch(self, branch: Branch) -> Branch:
        with self._cursor() as cur:
            self._fetch_owned(cur, "cards", "card", branch.from_card_id, branch.user_id)
            self._fetch_owned(cur, "cards", "card", branch.to_card_id, branch.user_id)
            cur.execute("""
                INSERT INTO branches (id, user_id, from_card_id, to_card_id, edge_type, strength, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
            """, (
                branch.id,
                branch.user_id,
                branch.from_card_id,
                branch.to_card_id,
                branch.edge_type,
                branch.strength,
                Jsonb(branch.metadata)
            ))
        return branch
