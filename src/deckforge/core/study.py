"""Study-side writes: spaced-repetition progress and card graph edges."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .models import EDGE_TYPES, Branch, UserProgress, utcnow
from .store import BaseStore

logger = logging.getLogger(__name__)

MIN_EASE = 1.3
RETRY_DELAY = timedelta(hours=1)


def next_progress(progress: UserProgress, correct: bool, now: datetime) -> UserProgress:
    """
    SM-2 style update.

    A correct answer grows the interval (1 day, then 6, then interval * ease)
    and nudges ease up; a wrong answer resets the interval, lowers ease (not
    below 1.3) and schedules a retry in one hour.
    """
    reviews = progress.reviews + 1
    if correct:
        if progress.interval_days == 0:
            interval = 1
        elif progress.interval_days == 1:
            interval = 6
        else:
            interval = round(progress.interval_days * progress.ease_factor)
        ease = progress.ease_factor + 0.1
        next_review = now + timedelta(days=interval)
    else:
        interval = 0
        ease = max(MIN_EASE, progress.ease_factor - 0.2)
        next_review = now + RETRY_DELAY

    return progress.model_copy(update={
        "reviews": reviews,
        "correct_count": progress.correct_count + (1 if correct else 0),
        "ease_factor": round(ease, 2),
        "interval_days": interval,
        "last_reviewed": now,
        "next_review": next_review,
    })


def record_review(
    store: BaseStore,
    user_id: str,
    card_id: str,
    correct: bool,
    now: Optional[datetime] = None
) -> UserProgress:
    """Apply one study answer and upsert the (user, card) progress row."""
    store.get_card(card_id, user_id)
    current = store.get_progress(user_id, card_id) or UserProgress(user_id=user_id, card_id=card_id)
    updated = next_progress(current, correct, now or utcnow())
    saved = store.save_progress(updated)
    logger.info(
        f"Recorded {'correct' if correct else 'incorrect'} answer for card {card_id}; "
        f"next review {saved.next_review.isoformat()}"
    )
    return saved


def link_cards(
    store: BaseStore,
    user_id: str,
    from_card_id: str,
    to_card_id: str,
    edge_type: str = "related",
    strength: Optional[float] = None
) -> Branch:
    """Add a graph edge between two cards of the same user."""
    if edge_type not in EDGE_TYPES:
        raise ValueError(f"Unknown edge type: {edge_type} (expected one of {', '.join(EDGE_TYPES)})")
    if from_card_id == to_card_id:
        raise ValueError("A card cannot branch to itself")
    if strength is not None and not 0.0 <= strength <= 1.0:
        raise ValueError("strength must be between 0 and 1")

    return store.add_branch(Branch(
        user_id=user_id,
        from_card_id=from_card_id,
        to_card_id=to_card_id,
        edge_type=edge_type,
        strength=strength,
    ))
