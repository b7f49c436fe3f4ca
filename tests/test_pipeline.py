import httpx
import pytest

from deckforge.core import pipeline as pipeline_module
from deckforge.core.errors import (
    ChunkingConfigError,
    ConfigurationError,
    DuplicateRunError,
    FetchError,
    NotFoundError,
    PersistenceError,
)

from conftest import FakeOpenAI, OTHER_USER, USER, static_transport, words

HTML_PAGE = "<html><script>bad()</script><p>Hello&nbsp;World</p></html>"


def test_text_file_runs_end_to_end(store, make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())

    result = pipeline.process_source(source.id, USER)

    # 800 words with a 217-word stride
    assert result.chunk_count == 4
    assert result.embedded_count == 4
    assert result.card_count == 3
    assert result.category == "technical_document"
    assert result.deck_status == "completed"
    envelope = result.to_envelope()
    assert envelope["document_id"] == result.document_id
    assert envelope["chunk_count"] == 4

    assert store.get_source(source.id, USER).status == "completed"
    document = store.get_document(result.document_id, USER)
    assert document.status == "completed"
    assert document.token_count > 0
    assert store.get_source(source.id, USER).metadata["category"] == "technical_document"
    assert [dc.position for dc in store.list_deck_cards(result.deck_id, USER)] == [0, 1, 2]


def test_html_file_is_stripped(store, make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file("page.html", HTML_PAGE))

    result = pipeline.process_source(source.id, USER)

    assert source.content_type == "html"
    assert store.get_document(result.document_id, USER).extracted_text == "Hello World"
    assert result.chunk_count == 1


def test_markdown_file(make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file("notes.md", "# Heading\n\nSome *markdown* body."))

    assert source.content_type == "markdown"
    assert pipeline.process_source(source.id, USER).chunk_count == 1


def test_url_source(store, make_pipeline):
    pipeline = make_pipeline(transport=static_transport(body=HTML_PAGE))
    source = pipeline.add_url_source(USER, "https://example.com/article", title="Article")

    result = pipeline.process_source(source.id, USER)

    assert store.get_document(result.document_id, USER).extracted_text == "Hello World"
    assert store.get_source(source.id, USER).status == "completed"


def test_url_non_success_fails_source(store, make_pipeline):
    pipeline = make_pipeline(transport=static_transport(status_code=404, body="gone"))
    source = pipeline.add_url_source(USER, "https://example.com/missing")

    with pytest.raises(FetchError):
        pipeline.process_source(source.id, USER)

    assert store.get_source(source.id, USER).status == "failed"
    assert store.get_document_for_source(source.id, USER) is None


def refusing_resolver(request):
    # What the system resolver raises for a host label over 63 characters
    raise UnicodeError("encoding with 'idna' codec failed (UnicodeError: label too long)")


@pytest.mark.parametrize("url, transport", [
    ("https://" + "a" * 70 + ".com/page", httpx.MockTransport(refusing_resolver)),
    ("https://exa\x00mple.com/page", static_transport(body=HTML_PAGE)),
])
def test_malformed_url_fails_source(store, make_pipeline, url, transport):
    pipeline = make_pipeline(transport=transport)
    source = pipeline.add_url_source(USER, url)

    with pytest.raises(FetchError):
        pipeline.process_source(source.id, USER)

    assert store.get_source(source.id, USER).status == "failed"
    with pytest.raises(DuplicateRunError):
        pipeline.process_source(source.id, USER)


def test_store_failure_after_extraction_fails_source_and_document(store, make_pipeline, text_file, monkeypatch):
    def broken_get_deck(deck_id, user_id):
        raise PersistenceError("connection lost")

    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())
    monkeypatch.setattr(store, "get_deck", broken_get_deck)

    with pytest.raises(PersistenceError, match="connection lost"):
        pipeline.process_source(source.id, USER)

    assert store.get_source(source.id, USER).status == "failed"
    assert store.get_document_for_source(source.id, USER).status == "failed"


def test_missing_api_key_aborts_before_any_write(store, make_pipeline, text_file):
    pipeline = make_pipeline(openai_api_key=None)
    source = pipeline.add_file_source(USER, text_file())
    changes = []
    pipeline.subscribe(changes.append)

    with pytest.raises(ConfigurationError):
        pipeline.process_source(source.id, USER)

    assert changes == []
    assert store.get_source(source.id, USER).status == "pending"
    assert store.documents == {}


def test_duplicate_run_is_rejected(store, make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())
    pipeline.process_source(source.id, USER)

    with pytest.raises(DuplicateRunError):
        pipeline.process_source(source.id, USER)

    assert len(store.documents) == 1


def test_run_in_flight_is_rejected(store, make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())
    store.transition_status("source", source.id, USER, ["pending"], "processing")

    with pytest.raises(DuplicateRunError, match="processing"):
        pipeline.process_source(source.id, USER)


def test_other_users_source_is_not_found(make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(OTHER_USER, text_file())

    with pytest.raises(NotFoundError):
        pipeline.process_source(source.id, USER)


def test_bad_chunk_settings_fail_source_and_document(store, make_pipeline, text_file):
    pipeline = make_pipeline(chunk_token_size=10, overlap_tokens=10)
    source = pipeline.add_file_source(USER, text_file())

    with pytest.raises(ChunkingConfigError):
        pipeline.process_source(source.id, USER)

    assert store.get_source(source.id, USER).status == "failed"
    assert store.get_document_for_source(source.id, USER).status == "failed"


def test_no_chunks_completes_without_deck(store, make_pipeline, text_file, monkeypatch):
    monkeypatch.setattr(pipeline_module, "chunk_text", lambda *args, **kwargs: [])
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())

    result = pipeline.process_source(source.id, USER)

    assert result.chunk_count == 0
    assert result.deck_id is None
    assert store.decks == {}
    assert store.get_source(source.id, USER).status == "completed"


def test_model_outage_still_produces_fallback_deck(store, make_pipeline, text_file):
    client = FakeOpenAI(chat_reply=RuntimeError("503"), embed_fails_when=lambda text: True)
    pipeline = make_pipeline(client=client)
    source = pipeline.add_file_source(USER, text_file(content=words(300)))

    result = pipeline.process_source(source.id, USER)

    assert result.embedded_count == 0
    assert result.category == "educational_content"
    assert result.card_count == 5
    assert result.deck_status == "completed"
    assert store.get_source(source.id, USER).status == "completed"


def test_status_changes_are_published(make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())
    source_statuses, deck_statuses = [], []
    pipeline.subscribe(lambda c: source_statuses.append(c.status), entity="source", entity_id=source.id)
    pipeline.subscribe(lambda c: deck_statuses.append(c.status), entity="deck")

    pipeline.process_source(source.id, USER)

    assert source_statuses == ["processing", "completed"]
    assert deck_statuses == ["processing", "completed"]


def test_status_snapshot(make_pipeline, text_file):
    pipeline = make_pipeline()
    source = pipeline.add_file_source(USER, text_file())
    before = pipeline.status_snapshot(source.id, USER)
    result = pipeline.process_source(source.id, USER)

    after = pipeline.status_snapshot(source.id, USER)

    assert before["source_status"] == "pending"
    assert before["document_id"] is None
    assert after == {
        "source_id": source.id,
        "source_status": "completed",
        "document_id": result.document_id,
        "document_status": "completed",
        "chunk_count": 4,
        "deck_id": result.deck_id,
        "deck_status": "completed",
        "deck_card_count": 3,
        "category": "technical_document",
    }


def test_process_many(make_pipeline, text_file):
    pipeline = make_pipeline()
    first = pipeline.add_file_source(USER, text_file("a.txt", words(300)))
    second = pipeline.add_file_source(USER, text_file("b.txt", words(500, ("red", "green", "blue"))))

    outcomes = pipeline.process_many([first.id, second.id, "missing"], USER, max_workers=3)

    assert outcomes[first.id]["chunk_count"] == 2
    assert outcomes[second.id]["chunk_count"] == 3
    assert outcomes["missing"] == {"error": "Source not found: missing"}


def test_identical_uploads_share_one_stored_object(make_pipeline, text_file, config):
    pipeline = make_pipeline()
    first = pipeline.add_file_source(USER, text_file("a.txt", "same bytes"))
    second = pipeline.add_file_source(USER, text_file("b.txt", "same bytes"))

    assert first.file_path == second.file_path
    assert first.id != second.id
    assert len(list(config.object_store_dir.iterdir())) == 1


def test_unsupported_upload_is_rejected(make_pipeline, text_file):
    with pytest.raises(ValueError, match="Unsupported"):
        make_pipeline().add_file_source(USER, text_file("image.png", "binary"))


def test_generate_cards_requires_a_target(make_pipeline):
    result = make_pipeline().generate_cards(USER)
    assert result.to_envelope() == {"ok": False, "error": "Deck ID or document ID is required"}
