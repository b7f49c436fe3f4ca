"""OpenAI embeddings per chunk, persisted one row per chunk; failures skip the chunk."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

from pydantic import BaseModel

from .config import PipelineConfig
from .models import Chunk
from .store import BaseStore

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""
    model: str = "text-embedding-3-small"
    concurrency: int = 5
    max_tokens: int = 8191  # Max tokens for text-embedding-3-small


class EmbeddingReport(BaseModel):
    """Outcome of one embedding pass."""
    embedded: int = 0
    failed_chunk_ids: List[str] = []


def get_embedding_config(config: PipelineConfig) -> EmbeddingConfig:
    return EmbeddingConfig(model=config.embed_model, concurrency=config.embed_concurrency)


def generate_embedding(text: str, config: EmbeddingConfig, client) -> List[float]:
    """Embed one text; input longer than the model window (~4 chars per token) is truncated."""
    limit = config.max_tokens * 4
    if len(text) > limit:
        logger.warning(f"Truncated text from {len(text)} to {limit} characters")
        text = text[:limit]

    response = client.embeddings.create(model=config.model, input=text)
    return list(response.data[0].embedding)


def _embed_one(store: BaseStore, client, chunk: Chunk, config: EmbeddingConfig) -> bool:
    try:
        vector = generate_embedding(chunk.content, config, client)
        store.upsert_embedding(chunk.user_id, chunk.id, vector, config.model)
        return True
    except Exception as e:
        logger.error(f"Failed to generate embedding for chunk {chunk.id}: {e}")
        return False


def embed_chunks(
    store: BaseStore,
    client,
    chunks: Sequence[Chunk],
    config: Optional[EmbeddingConfig] = None
) -> EmbeddingReport:
    """
    Generate and store an embedding for each chunk.

    Calls run on at most ``config.concurrency`` threads; rows are keyed by
    chunk_id so completion order is irrelevant. A failing chunk is logged and
    left without an embedding; the batch continues.
    """
    report = EmbeddingReport()
    if not chunks:
        return report

    config = config or EmbeddingConfig()
    workers = max(1, min(config.concurrency, len(chunks)))

    if workers == 1:
        outcomes = [_embed_one(store, client, chunk, config) for chunk in chunks]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda c: _embed_one(store, client, c, config), chunks))

    for chunk, ok in zip(chunks, outcomes):
        if ok:
            report.embedded += 1
        else:
            report.failed_chunk_ids.append(chunk.id)

    logger.info(f"Embedded {report.embedded}/{len(chunks)} chunks using {config.model}")
    return report
