from datetime import datetime, timedelta, timezone

import pytest

from deckforge.core.errors import NotFoundError
from deckforge.core.models import CardDraft, UserProgress
from deckforge.core.study import MIN_EASE, link_cards, next_progress, record_review

from conftest import OTHER_USER, USER

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def cards(store, seed, make_deck):
    _, document, chunks = seed(["chunk one", "chunk two"])
    deck = make_deck(document)
    links = store.attach_cards(deck.id, USER, [
        CardDraft(chunk_id=chunks[0].id, front_text="Front A", back_text="Back A"),
        CardDraft(chunk_id=chunks[1].id, front_text="Front B", back_text="Back B"),
    ])
    return [link.card_id for link in links]


def test_correct_answers_grow_the_interval():
    progress = UserProgress(user_id=USER, card_id="c1")

    intervals = []
    for _ in range(3):
        progress = next_progress(progress, True, NOW)
        intervals.append(progress.interval_days)

    assert intervals == [1, 6, 16]
    assert progress.ease_factor == pytest.approx(2.8)
    assert progress.reviews == 3
    assert progress.correct_count == 3
    assert progress.next_review == NOW + timedelta(days=16)


def test_wrong_answer_resets_and_retries_soon():
    progress = UserProgress(user_id=USER, card_id="c1", interval_days=6, ease_factor=2.6, reviews=2, correct_count=2)

    progress = next_progress(progress, False, NOW)

    assert progress.interval_days == 0
    assert progress.ease_factor == pytest.approx(2.4)
    assert progress.correct_count == 2
    assert progress.reviews == 3
    assert progress.next_review == NOW + timedelta(hours=1)


def test_ease_has_a_floor():
    progress = UserProgress(user_id=USER, card_id="c1", ease_factor=1.35)
    assert next_progress(progress, False, NOW).ease_factor == MIN_EASE


def test_record_review_upserts_one_row(store, cards):
    first = record_review(store, USER, cards[0], True, now=NOW)
    second = record_review(store, USER, cards[0], False, now=NOW)

    assert first.id == second.id
    stored = store.get_progress(USER, cards[0])
    assert stored.reviews == 2
    assert stored.correct_count == 1
    assert store.get_progress(USER, cards[1]) is None


def test_review_of_foreign_card_is_not_found(store, cards):
    with pytest.raises(NotFoundError):
        record_review(store, OTHER_USER, cards[0], True)


def test_link_cards(store, cards):
    branch = link_cards(store, USER, cards[0], cards[1], edge_type="follows", strength=0.7)

    assert store.branches[branch.id].edge_type == "follows"
    assert branch.strength == 0.7


@pytest.mark.parametrize("kwargs", [
    {"edge_type": "causes"},
    {"strength": 1.5},
    {"strength": -0.1},
])
def test_link_cards_validation(store, cards, kwargs):
    with pytest.raises(ValueError):
        link_cards(store, USER, cards[0], cards[1], **kwargs)


def test_card_cannot_link_to_itself(store, cards):
    with pytest.raises(ValueError):
        link_cards(store, USER, cards[0], cards[0])


def test_link_requires_shared_ownership(store, cards):
    with pytest.raises(NotFoundError):
        link_cards(store, OTHER_USER, cards[0], cards[1])
