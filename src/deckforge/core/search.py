"""Semantic search over a user's chunk embeddings."""

import logging
from typing import List, Optional

import numpy as np
from pydantic import BaseModel

from .embed import EmbeddingConfig, generate_embedding
from .errors import NotFoundError
from .models import Card, Chunk
from .store import BaseStore

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.5


class SearchHit(BaseModel):
    similarity: float
    chunk: Chunk
    document_title: Optional[str] = None
    cards: List[Card] = []


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``; zero vectors score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


def semantic_search(
    store: BaseStore,
    client,
    user_id: str,
    query: str,
    limit: int = 10,
    threshold: float = SIMILARITY_THRESHOLD,
    config: Optional[EmbeddingConfig] = None
) -> List[SearchHit]:
    """
    Rank the user's embedded chunks against ``query``.

    Chunks without an embedding (or embedded with a model of a different
    dimension) are not candidates.
    """
    if not query.strip():
        return []

    config = config or EmbeddingConfig()
    query_vector = np.asarray(generate_embedding(query, config, client), dtype=np.float32)

    embeddings = [e for e in store.list_embeddings(user_id) if len(e.embedding) == len(query_vector)]
    if not embeddings:
        logger.info(f"No embeddings available for user {user_id}")
        return []

    matrix = np.asarray([e.embedding for e in embeddings], dtype=np.float32)
    scores = cosine_scores(query_vector, matrix)

    ranked = [i for i in np.argsort(-scores) if scores[i] >= threshold][:limit]
    if not ranked:
        return []

    chunk_ids = [embeddings[i].chunk_id for i in ranked]
    chunks = {c.id: c for c in store.get_chunks(user_id, chunk_ids)}
    cards = store.list_cards_for_chunks(user_id, chunk_ids)

    titles = {}
    hits = []
    for i in ranked:
        chunk = chunks.get(embeddings[i].chunk_id)
        if chunk is None:
            continue
        if chunk.document_id not in titles:
            try:
                titles[chunk.document_id] = store.get_document(chunk.document_id, user_id).title
            except NotFoundError:
                titles[chunk.document_id] = None
        hits.append(SearchHit(
            similarity=float(scores[i]),
            chunk=chunk,
            document_title=titles[chunk.document_id],
            cards=[c for c in cards if c.chunk_id == chunk.id],
        ))

    logger.info(f"Semantic search returned {len(hits)} results for user {user_id}")
    return hits
