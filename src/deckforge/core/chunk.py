"""Split document text into overlapping, token-bounded word windows."""

import logging
import math
import re
from typing import List

from .errors import ChunkingConfigError
from .models import ChunkDraft

logger = logging.getLogger(__name__)

# Rough heuristic: 0.75 words per token
WORDS_PER_TOKEN = 0.75
CHARS_PER_TOKEN = 4

_WORD = re.compile(r"\S+")


def estimate_tokens(text: str) -> int:
    """Approximate token count (~4 chars per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def window_sizes(chunk_token_size: int, overlap_tokens: int) -> tuple:
    """Return (words_per_chunk, overlap_words, stride); raise if the window cannot advance."""
    if chunk_token_size <= 0 or overlap_tokens < 0:
        raise ChunkingConfigError(
            f"chunk_token_size must be positive and overlap_tokens non-negative "
            f"(got {chunk_token_size}, {overlap_tokens})"
        )

    words_per_chunk = math.floor(chunk_token_size * WORDS_PER_TOKEN)
    overlap_words = math.floor(overlap_tokens * WORDS_PER_TOKEN)
    stride = words_per_chunk - overlap_words

    if stride <= 0:
        raise ChunkingConfigError(
            f"Overlap of {overlap_tokens} tokens leaves no stride for chunks of {chunk_token_size} tokens"
        )
    return words_per_chunk, overlap_words, stride


def chunk_text(text: str, chunk_token_size: int = 350, overlap_tokens: int = 60) -> List[ChunkDraft]:
    """
    Slide a word window over ``text``.

    Args:
        text: Sanitized document text
        chunk_token_size: Target tokens per chunk
        overlap_tokens: Tokens shared by consecutive chunks

    Returns:
        Chunks with gapless chunk_index from 0; start_char/end_char are the
        character offsets of the first and last word of the window in ``text``.
    """
    words_per_chunk, _, stride = window_sizes(chunk_token_size, overlap_tokens)

    spans = [(m.start(), m.end()) for m in _WORD.finditer(text or "")]
    words = [text[start:end] for start, end in spans]

    chunks: List[ChunkDraft] = []
    for i in range(0, len(words), stride):
        window = words[i:i + words_per_chunk]
        content = " ".join(window)
        if not content.strip():
            continue

        last = i + len(window) - 1
        chunks.append(ChunkDraft(
            chunk_index=len(chunks),
            content=content,
            start_char=spans[i][0],
            end_char=spans[last][1],
            token_count=estimate_tokens(content),
        ))

    logger.debug(f"Chunked {len(words)} words into {len(chunks)} chunks (stride {stride})")
    return chunks
