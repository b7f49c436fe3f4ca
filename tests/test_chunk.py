import pytest

from deckforge.core.chunk import chunk_text, estimate_tokens, window_sizes
from deckforge.core.errors import ChunkingConfigError

from conftest import words


def test_ten_thousand_words_make_47_chunks():
    chunks = chunk_text(words(10_000), chunk_token_size=350, overlap_tokens=60)

    assert len(chunks) == 47
    assert [c.chunk_index for c in chunks] == list(range(47))
    assert all(c.content for c in chunks)


def test_default_window_sizes():
    assert window_sizes(350, 60) == (262, 45, 217)


def test_consecutive_chunks_overlap():
    chunks = chunk_text(words(600), chunk_token_size=100, overlap_tokens=20)
    first, second = chunks[0].content.split(), chunks[1].content.split()

    # 75 words per chunk, 15 shared
    assert len(first) == 75
    assert first[-15:] == second[:15]


def test_offsets_point_into_source_text():
    text = "  The quick   brown fox\njumps over the lazy dog  "
    chunks = chunk_text(text, chunk_token_size=4, overlap_tokens=0)

    for chunk in chunks:
        first_word = chunk.content.split()[0]
        last_word = chunk.content.split()[-1]
        assert text[chunk.start_char:].startswith(first_word)
        assert text[:chunk.end_char].endswith(last_word)


def test_empty_text_has_no_chunks():
    assert chunk_text("") == []
    assert chunk_text("   \n\t ") == []


@pytest.mark.parametrize("size,overlap", [(100, 100), (100, 150), (0, 0), (10, -1)])
def test_window_that_cannot_advance_is_rejected(size, overlap):
    with pytest.raises(ChunkingConfigError):
        chunk_text("some words here", chunk_token_size=size, overlap_tokens=overlap)


def test_chunking_error_is_a_value_error():
    with pytest.raises(ValueError):
        window_sizes(10, 10)


def test_token_estimate():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
