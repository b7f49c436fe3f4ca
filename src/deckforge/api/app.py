"""HTTP triggers for the pipeline steps."""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from deckforge.core.errors import (
    ConfigurationError,
    DeckforgeError,
    DuplicateRunError,
    FetchError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from deckforge.core.pipeline import DeckPipeline

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (NotFoundError, 404),
    (DuplicateRunError, 409),
    (InvalidTransitionError, 409),
    (FetchError, 502),
    (ConfigurationError, 500),
    (PersistenceError, 500),
)


class RequestModel(BaseModel):
    # Clients send camelCase; snake_case is accepted too.
    model_config = ConfigDict(populate_by_name=True)


class ProcessSourceRequest(RequestModel):
    user_id: str = Field(alias="userId")
    source_id: str = Field(alias="sourceId")


class GenerateCardsRequest(RequestModel):
    user_id: str = Field(alias="userId")
    deck_id: Optional[str] = Field(default=None, alias="deckId")
    document_id: Optional[str] = Field(default=None, alias="documentId")
    max_cards: Optional[int] = Field(default=None, alias="maxCards", ge=1)


class CategorizeRequest(RequestModel):
    user_id: str = Field(alias="userId")
    document_id: str = Field(alias="documentId")
    source_id: Optional[str] = Field(default=None, alias="sourceId")


class SearchRequest(RequestModel):
    user_id: str = Field(alias="userId")
    query: str
    limit: int = Field(default=10, ge=1, le=50)


class AnswerRequest(RequestModel):
    user_id: str = Field(alias="userId")
    card_id: str = Field(alias="cardId")
    correct: bool


def status_for(error: DeckforgeError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(pipeline: DeckPipeline) -> FastAPI:
    app = FastAPI(title="Deckforge")

    @app.exception_handler(DeckforgeError)
    async def _deckforge_error_handler(request: Request, exc: DeckforgeError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    @app.exception_handler(ValueError)
    async def _value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.post("/process-source")
    def process_source(body: ProcessSourceRequest):
        return pipeline.process_source(body.source_id, body.user_id).to_envelope()

    @app.post("/generate-cards")
    def generate_cards(body: GenerateCardsRequest):
        if not body.deck_id and not body.document_id:
            return JSONResponse(status_code=400, content={"ok": False, "error": "Deck ID or document ID is required"})
        result = pipeline.generate_cards(
            body.user_id,
            deck_id=body.deck_id,
            document_id=body.document_id,
            max_cards=body.max_cards
        )
        return result.to_envelope()

    @app.post("/categorize-document")
    def categorize_document(body: CategorizeRequest):
        return pipeline.categorize(body.document_id, body.user_id, source_id=body.source_id).to_envelope()

    @app.post("/semantic-search")
    def semantic_search(body: SearchRequest):
        hits = pipeline.search(body.user_id, body.query, limit=body.limit)
        return {
            "results": [
                {
                    "chunkId": hit.chunk.id,
                    "documentId": hit.chunk.document_id,
                    "documentTitle": hit.document_title,
                    "content": hit.chunk.content,
                    "similarity": hit.similarity,
                    "cards": [
                        {"id": c.id, "front": c.front_text, "back": c.back_text, "difficulty": c.difficulty}
                        for c in hit.cards
                    ],
                }
                for hit in hits
            ]
        }

    @app.post("/study/answer")
    def study_answer(body: AnswerRequest):
        progress = pipeline.record_answer(body.user_id, body.card_id, body.correct)
        return progress.model_dump(mode="json")

    @app.post("/decks/{deck_id}/reset")
    def reset_deck(deck_id: str, user_id: str):
        deck = pipeline.reset_deck(deck_id, user_id)
        return {"deckId": deck.id, "status": deck.status}

    @app.get("/sources/{source_id}/status")
    def source_status(source_id: str, user_id: str):
        return pipeline.status_snapshot(source_id, user_id)

    return app
