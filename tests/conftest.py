import hashlib
import json
import math
import re
from types import SimpleNamespace

import httpx
import pytest

from deckforge.core.chunk import estimate_tokens
from deckforge.core.config import PipelineConfig
from deckforge.core.models import ChunkDraft, Deck, Document, Source
from deckforge.core.pipeline import DeckPipeline
from deckforge.core.store import MemoryStore

USER = "user-1"
OTHER_USER = "user-2"
EMBED_DIM = 64


def bag_of_words_vector(text, dim=EMBED_DIM):
    """Deterministic stand-in for an embedding model: hashed word counts, L2-normalized."""
    vector = [0.0] * dim
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        index = int(hashlib.md5(word.encode()).hexdigest(), 16) % dim
        vector[index] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector] if norm else vector


def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeChatCompletions:
    """``reply`` is a string, an exception to raise, or a callable taking the request kwargs."""

    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.reply
        if callable(reply) and not isinstance(reply, Exception):
            reply = reply(kwargs)
        if isinstance(reply, Exception):
            raise reply
        return chat_response(reply)


class FakeEmbeddings:
    def __init__(self, vectors=None, fail_when=None):
        self.vectors = vectors or {}
        self.fail_when = fail_when
        self.calls = []

    def create(self, model, input):
        self.calls.append(input)
        if self.fail_when and self.fail_when(input):
            raise RuntimeError("embedding service unavailable")
        vector = self.vectors.get(input) or bag_of_words_vector(input)
        return SimpleNamespace(data=[SimpleNamespace(embedding=vector)])


class FakeOpenAI:
    def __init__(self, chat_reply="", vectors=None, embed_fails_when=None):
        self.chat = SimpleNamespace(completions=FakeChatCompletions(chat_reply))
        self.embeddings = FakeEmbeddings(vectors, embed_fails_when)

    @property
    def chat_calls(self):
        return self.chat.completions.calls


def cards_json(pairs, difficulty="medium"):
    return json.dumps([{"text": f"{front}\n{back}", "difficulty": difficulty} for front, back in pairs])


def routed_reply(category="technical_document", cards=None):
    """Answer categorization prompts with ``category`` and card prompts with ``cards``."""
    cards = cards if cards is not None else cards_json([
        ("What does a REST endpoint expose?", "A resource addressed by a URL."),
        ("Which HTTP verb creates a resource?", "POST."),
        ("What status code means not found?", "404."),
    ])

    def reply(kwargs):
        system = kwargs["messages"][0]["content"]
        if system.startswith("Categorize"):
            return category
        return cards

    return reply


def words(n, vocabulary=("alpha", "beta", "gamma", "delta", "epsilon")):
    return " ".join(f"{vocabulary[i % len(vocabulary)]}{i}" for i in range(n))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def config(tmp_path):
    return PipelineConfig(
        openai_api_key="sk-test",
        database_url="postgresql://unused",
        object_store_dir=tmp_path / "object_store",
    )


@pytest.fixture
def fake_client():
    return FakeOpenAI(chat_reply=routed_reply())


def static_transport(status_code=200, body="", content_type="text/html"):
    def handler(request):
        return httpx.Response(status_code, content=body.encode() if isinstance(body, str) else body,
                              headers={"content-type": content_type})
    return httpx.MockTransport(handler)


@pytest.fixture
def make_pipeline(store, config, fake_client):
    def factory(client=None, transport=None, **overrides):
        for key, value in overrides.items():
            setattr(config, key, value)
        http_client = httpx.Client(transport=transport) if transport else None
        return DeckPipeline(store, config, client=client or fake_client, http_client=http_client)
    return factory


@pytest.fixture
def text_file(tmp_path):
    def factory(name="notes.txt", content=None):
        path = tmp_path / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content if content is not None else words(800), encoding="utf-8")
        return path
    return factory


@pytest.fixture
def seed(store):
    """Create a completed source and document with the given chunk contents."""
    def factory(contents, user_id=USER, title="Intro to REST", category=None):
        source = store.add_source(Source(
            user_id=user_id, content_type="txt", title=title, file_path="seed.txt", status="completed"
        ))
        document = store.add_document(Document(
            user_id=user_id,
            source_id=source.id,
            title=title,
            extracted_text=" ".join(contents),
            status="completed",
            metadata={"category": category} if category else {},
        ))
        chunks = store.add_chunks(user_id, document.id, [
            ChunkDraft(chunk_index=i, content=c, token_count=estimate_tokens(c)) for i, c in enumerate(contents)
        ])
        return source, document, chunks
    return factory


@pytest.fixture
def make_deck(store):
    def factory(document, title=None):
        deck = store.add_deck(Deck(user_id=document.user_id, title=title or document.title))
        store.link_deck_document(deck.id, document.id, document.user_id)
        return deck
    return factory
