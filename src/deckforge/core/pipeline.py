"""Source -> document -> chunks -> embeddings -> deck -> category -> cards, with per-source status tracking."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel

from .cards import CardGenerator, GenerationResult
from .categorize import CategorizationResult, categorize_document
from .chunk import chunk_text, estimate_tokens
from .config import PipelineConfig
from .embed import embed_chunks, get_embedding_config
from .errors import (
    DeckforgeError,
    DuplicateRunError,
    FetchError,
    NotFoundError,
    PersistenceError,
)
from .events import StatusChange
from .extract import extract_html_text, extract_pdf_text, extract_plain_text, fetch_url_text
from .llm import get_openai_client
from .logging_config import get_audit_logger, log_ingestion_event
from .models import Deck, Document, Source, UserProgress
from .object_store import load_object, save_to_object_store
from .search import SearchHit, semantic_search
from .store import BaseStore
from .study import record_review

logger = logging.getLogger(__name__)

SUFFIX_CONTENT_TYPES = {
    ".pdf": "pdf",
    ".html": "html",
    ".htm": "html",
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "txt",
}


class PipelineResult(BaseModel):
    """Outcome of one source run. Source/document status and deck status are reported separately."""
    source_id: str
    document_id: Optional[str] = None
    chunk_count: int = 0
    embedded_count: int = 0
    deck_id: Optional[str] = None
    deck_status: Optional[str] = None
    card_count: int = 0
    category: Optional[str] = None

    def to_envelope(self) -> dict:
        return {
            "document_id": self.document_id,
            "chunk_count": self.chunk_count,
            "deck_id": self.deck_id,
            "deck_status": self.deck_status,
            "card_count": self.card_count,
            "category": self.category,
        }


def content_type_for(path: Path) -> str:
    content_type = SUFFIX_CONTENT_TYPES.get(path.suffix.lower())
    if content_type is None:
        raise ValueError(f"Unsupported file type: {path.suffix or path.name}")
    return content_type


class DeckPipeline:
    """
    Entry points used by the CLI, the HTTP layer and the watch folder.

    One ``process_source`` call is one sequential run. Independent sources
    may be processed in parallel (``process_many``); runs share nothing but
    the store.
    """

    def __init__(
        self,
        store: BaseStore,
        config: PipelineConfig,
        client=None,
        http_client: Optional[httpx.Client] = None
    ):
        self.store = store
        self.config = config
        self._client = client
        self.http_client = http_client
        self.audit_logger = get_audit_logger("pipeline")

    @property
    def client(self):
        if self._client is None:
            self._client = get_openai_client(self.config)
        return self._client

    def subscribe(self, listener: Callable[[StatusChange], None], **filters) -> Callable[[], None]:
        """Receive status changes instead of polling (see ``StatusBus.subscribe``)."""
        return self.store.bus.subscribe(listener, **filters)

    # Upload
    def add_file_source(self, user_id: str, path: Path, title: Optional[str] = None) -> Source:
        """Store a local file in the object store and register it as a pending source."""
        content_type = content_type_for(path)
        name = save_to_object_store(path, self.config.object_store_dir)
        source = Source(
            user_id=user_id,
            content_type=content_type,
            title=title or path.stem,
            file_path=name,
            file_size=path.stat().st_size,
            metadata={"original_filename": path.name},
        )
        return self.store.add_source(source)

    def add_url_source(self, user_id: str, url: str, title: Optional[str] = None) -> Source:
        return self.store.add_source(Source(user_id=user_id, content_type="url", title=title or url, url=url))

    # Pipeline
    def process_source(self, source_id: str, user_id: str) -> PipelineResult:
        """
        Run the whole pipeline for one pending source.

        Raises:
            ConfigurationError: no API key; nothing has been written
            NotFoundError: unknown source, or one owned by another user
            DuplicateRunError: the source is not pending (already running or finished)
            FetchError, PersistenceError, ChunkingConfigError: extraction or
                storage failed. Any error after the source is claimed marks the
                source (and document) failed before it propagates.
        """
        self.config.require_api_key()
        source = self.store.get_source(source_id, user_id)

        if not self.store.transition_status("source", source_id, user_id, ["pending"], "processing"):
            current = self.store.get_source(source_id, user_id).status
            raise DuplicateRunError(f"Source {source_id} is {current}; a run has already been started")

        start_time = time.time()
        document: Optional[Document] = None
        result = PipelineResult(source_id=source_id)
        logger.info(f"Processing {source.content_type} source {source_id}")

        try:
            text = self._extract(source)
            document = self.store.add_document(Document(
                user_id=user_id,
                source_id=source_id,
                title=source.title,
                extracted_text=text,
                token_count=estimate_tokens(text),
                status="processing",
                metadata={"content_type": source.content_type},
            ))
            result.document_id = document.id

            drafts = chunk_text(text, self.config.chunk_token_size, self.config.overlap_tokens)
            chunks = self.store.add_chunks(user_id, document.id, drafts) if drafts else []
            result.chunk_count = len(chunks)

            if chunks:
                report = embed_chunks(self.store, self.client, chunks, get_embedding_config(self.config))
                result.embedded_count = report.embedded

                deck = self.store.add_deck(Deck(
                    user_id=user_id,
                    title=source.title,
                    description=f"Cards generated from {source.title}",
                    settings={"auto_generated": True, "source_id": source_id, "document_id": document.id},
                ))
                self.store.link_deck_document(deck.id, document.id, user_id)
                result.deck_id = deck.id
            else:
                logger.warning(f"Source {source_id} produced no chunks; skipping embeddings and cards")

            if result.deck_id:
                categorization = self.categorize(document.id, user_id, source_id=source_id)
                result.category = categorization.category if categorization.success else None

                generation = CardGenerator(self.store, self.client, self.config).generate_for_deck(
                    result.deck_id, user_id,
                    max_cards=self.config.default_max_cards,
                    category=result.category,
                )
                result.card_count = generation.count
                result.deck_status = self.store.get_deck(result.deck_id, user_id).status
                if not generation.ok:
                    logger.error(f"Card generation failed for source {source_id}: {generation.error}")

            self.store.transition_status("document", document.id, user_id, ["processing"], "completed")
            self.store.transition_status("source", source_id, user_id, ["processing"], "completed")
        except Exception as e:
            # Any failure after the claim leaves the source failed, never processing
            self._fail_run(source, document, result, start_time, e)
            raise

        log_ingestion_event(
            self.audit_logger,
            source_id=source_id,
            document_id=result.document_id,
            content_type=source.content_type,
            chunks_created=result.chunk_count,
            embeddings_created=result.embedded_count,
            status="completed",
            processing_time_ms=(time.time() - start_time) * 1000
        )
        logger.info(
            f"Source {source_id} completed: {result.chunk_count} chunks, "
            f"{result.card_count} cards (deck {result.deck_status})"
        )
        return result

    def process_many(self, source_ids: Sequence[str], user_id: str, max_workers: int = 4) -> Dict[str, dict]:
        """Process independent sources in parallel; returns an envelope per source id."""
        def run(source_id: str) -> dict:
            try:
                return self.process_source(source_id, user_id).to_envelope()
            except DeckforgeError as e:
                return {"error": str(e)}

        if not source_ids:
            return {}
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(source_ids)))) as pool:
            return dict(zip(source_ids, pool.map(run, source_ids)))

    def _extract(self, source: Source) -> str:
        if source.content_type == "url" or (source.content_type == "html" and source.url and not source.file_path):
            if not source.url:
                raise FetchError(f"Source {source.id} has no URL")
            return fetch_url_text(
                source.url,
                source.title,
                client=self.http_client,
                timeout=self.config.request_timeout
            )

        if not source.file_path:
            raise NotFoundError("file", f"for source {source.id}")
        data = load_object(self.config.object_store_dir, source.file_path)

        if source.content_type == "pdf":
            return extract_pdf_text(data, source.title)
        if source.content_type == "html":
            return extract_html_text(data.decode("utf-8", errors="replace"), source.title)
        return extract_plain_text(data, source.title)

    def _fail_run(
        self,
        source: Source,
        document: Optional[Document],
        result: PipelineResult,
        start_time: float,
        error: Exception
    ) -> None:
        logger.error(f"Processing failed for source {source.id}: {error}")
        try:
            if document is not None:
                self.store.transition_status("document", document.id, source.user_id, ["processing"], "failed")
            self.store.transition_status("source", source.id, source.user_id, ["processing"], "failed")
        except PersistenceError as e:
            logger.error(f"Could not record failure for source {source.id}: {e}")

        log_ingestion_event(
            self.audit_logger,
            source_id=source.id,
            document_id=result.document_id,
            content_type=source.content_type,
            chunks_created=result.chunk_count,
            embeddings_created=result.embedded_count,
            status="failed",
            processing_time_ms=(time.time() - start_time) * 1000,
            error=str(error)
        )

    # Single-step triggers
    def generate_cards(
        self,
        user_id: str,
        deck_id: Optional[str] = None,
        document_id: Optional[str] = None,
        max_cards: Optional[int] = None,
        category: Optional[str] = None
    ) -> GenerationResult:
        self.config.require_api_key()
        generator = CardGenerator(self.store, self.client, self.config)
        if deck_id:
            return generator.generate_for_deck(deck_id, user_id, max_cards=max_cards, category=category)
        if document_id:
            return generator.generate_for_document(document_id, user_id, max_cards=max_cards, category=category)
        return GenerationResult(ok=False, error="Deck ID or document ID is required")

    def categorize(self, document_id: str, user_id: str, source_id: Optional[str] = None) -> CategorizationResult:
        self.config.require_api_key()
        return categorize_document(self.store, self.client, self.config, document_id, user_id, source_id=source_id)

    def reset_deck(self, deck_id: str, user_id: str) -> Deck:
        return self.store.reset_deck(deck_id, user_id)

    def search(self, user_id: str, query: str, limit: int = 10) -> List[SearchHit]:
        self.config.require_api_key()
        return semantic_search(
            self.store, self.client, user_id, query,
            limit=limit,
            config=get_embedding_config(self.config)
        )

    def record_answer(self, user_id: str, card_id: str, correct: bool) -> UserProgress:
        return record_review(self.store, user_id, card_id, correct)

    # Observation
    def status_snapshot(self, source_id: str, user_id: str) -> Dict[str, Any]:
        """Current statuses and counts for a source, as a polling client would read them."""
        source = self.store.get_source(source_id, user_id)
        snapshot: Dict[str, Any] = {
            "source_id": source.id,
            "source_status": source.status,
            "document_id": None,
            "document_status": None,
            "chunk_count": 0,
            "deck_id": None,
            "deck_status": None,
            "deck_card_count": 0,
            "category": source.metadata.get("category"),
        }

        document = self.store.get_document_for_source(source_id, user_id)
        if document is None:
            return snapshot
        snapshot.update(
            document_id=document.id,
            document_status=document.status,
            chunk_count=self.store.count_chunks(user_id, document.id),
            category=document.metadata.get("category") or snapshot["category"],
        )

        deck = self.store.find_deck_for_document(document.id, user_id)
        if deck is not None:
            snapshot.update(
                deck_id=deck.id,
                deck_status=deck.status,
                deck_card_count=self.store.count_deck_cards(deck.id, user_id),
            )
        return snapshot
