import psycopg
import pytest

from deckforge.core.errors import PersistenceError
from deckforge.core.pg_store import SCHEMA, PostgresStore

from conftest import USER


def test_schema_covers_every_table():
    for table in ("sources", "documents", "chunks", "embeddings", "cards", "decks",
                  "deck_documents", "deck_cards", "user_progress", "branches"):
        assert f"CREATE TABLE IF NOT EXISTS {table} (" in SCHEMA
    assert "UNIQUE (deck_id, position)" in SCHEMA
    assert "UNIQUE (user_id, card_id)" in SCHEMA


def test_driver_errors_become_persistence_errors(monkeypatch):
    def refuse(*args, **kwargs):
        raise psycopg.ProgrammingError("invalid dsn")

    monkeypatch.setattr(psycopg, "connect", refuse)

    with pytest.raises(PersistenceError, match="invalid dsn"):
        PostgresStore("postgresql://nowhere").get_source("s1", USER)


def test_status_arguments_are_checked_before_connecting(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("should not connect")

    monkeypatch.setattr(psycopg, "connect", fail)
    store = PostgresStore("postgresql://nowhere")

    with pytest.raises(ValueError):
        store.transition_status("chunk", "c1", USER, ["pending"], "completed")
    with pytest.raises(ValueError):
        store.transition_status("deck", "d1", USER, ["pending"], "finished")
