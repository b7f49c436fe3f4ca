import pytest

from deckforge.core.categorize import (
    DEFAULT_CATEGORY,
    SAMPLE_CHARS,
    build_sample,
    categorize_document,
    coerce_category,
)

from conftest import FakeOpenAI, OTHER_USER, USER

REST_TUTORIAL = (
    "This tutorial walks through building a REST API: define resources, map HTTP verbs "
    "to handlers, return JSON and pick the right status codes."
)


@pytest.mark.parametrize("raw,expected", [
    ("technical_document", "technical_document"),
    ("  Technical Document.\n", "technical_document"),
    ("`research_paper`", "research_paper"),
    ("The best fit is blog_article because it is a post.", "blog_article"),
    ("reference-material", "reference_material"),
    ("", DEFAULT_CATEGORY),
    (None, DEFAULT_CATEGORY),
    ("{not: json}", DEFAULT_CATEGORY),
    ("poetry", DEFAULT_CATEGORY),
])
def test_coerce_category(raw, expected):
    assert coerce_category(raw) == expected


def test_sample_is_bounded_and_falls_back_to_title():
    assert len(build_sample("T", "x" * 5000)) == SAMPLE_CHARS
    assert build_sample("Just a title", "") == "Just a title"
    assert build_sample("Just a title", None) == "Just a title"


def test_rest_tutorial_is_technical(store, config, seed):
    source, document, _ = seed([REST_TUTORIAL])
    client = FakeOpenAI(chat_reply="technical_document")

    result = categorize_document(store, client, config, document.id, USER, source_id=source.id)

    assert result.success
    assert result.category == "technical_document"
    assert result.to_envelope() == {"success": True, "category": "technical_document", "documentId": document.id}
    assert store.get_document(document.id, USER).metadata["category"] == "technical_document"
    assert store.get_source(source.id, USER).metadata["category"] == "technical_document"

    request = client.chat_calls[0]
    assert request["temperature"] == 0.1
    assert request["max_tokens"] == 50
    assert REST_TUTORIAL in request["messages"][1]["content"]


@pytest.mark.parametrize("reply", ["", "I cannot tell", RuntimeError("model unavailable")])
def test_unusable_answer_defaults_to_educational(store, config, seed, reply):
    _, document, _ = seed(["some text"])

    result = categorize_document(store, FakeOpenAI(chat_reply=reply), config, document.id, USER)

    assert result.success
    assert result.category == "educational_content"
    assert store.get_document(document.id, USER).metadata["category"] == "educational_content"


def test_only_the_given_source_is_tagged(store, config, seed):
    first_source, first_doc, _ = seed(["first upload"], title="First")
    second_source, _, _ = seed(["second upload"], title="Second")

    categorize_document(store, FakeOpenAI(chat_reply="book_chapter"), config, first_doc.id, USER,
                        source_id=first_source.id)

    assert store.get_source(first_source.id, USER).metadata["category"] == "book_chapter"
    assert "category" not in store.get_source(second_source.id, USER).metadata


def test_without_source_id_no_source_is_touched(store, config, seed):
    source, document, _ = seed(["text"])

    categorize_document(store, FakeOpenAI(chat_reply="blog_article"), config, document.id, USER)

    assert "category" not in store.get_source(source.id, USER).metadata


def test_missing_document(store, config):
    result = categorize_document(store, FakeOpenAI(chat_reply="blog_article"), config, "nope", USER)

    assert not result.success
    assert result.to_envelope() == {"success": False, "error": "Document not found: nope"}


def test_other_users_document_is_not_found(store, config, seed):
    _, document, _ = seed(["private"], user_id=OTHER_USER)

    result = categorize_document(store, FakeOpenAI(chat_reply="blog_article"), config, document.id, USER)

    assert not result.success
    assert "not found" in result.error
