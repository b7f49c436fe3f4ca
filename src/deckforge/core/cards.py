"""Card generation for a deck: one LLM call over the deck's chunks, with validation and fallback cards."""

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .config import PipelineConfig
from .errors import NotFoundError, PersistenceError
from .llm import chat_completion
from .logging_config import get_audit_logger, log_card_generation
from .models import CARD_DIFFICULTIES, CardDraft, Chunk, Deck
from .sanitize import sanitize_text
from .store import BaseStore

logger = logging.getLogger(__name__)

LINE_LIMIT = 110
TEXT_LIMIT = 220
MAX_CARDS_PER_DECK = 50
FIELD_LIMIT = 500  # front_text/back_text column size

SYSTEM_PROMPT = (
    "You write concise study flashcards. Respond with a JSON array only. "
    "Do not use markdown, code fences, bullet characters or quotation marks around lines."
)


@dataclass(frozen=True)
class CardStrategy:
    """Pedagogical framing and card budget for one kind of document."""
    name: str
    target_cards: int
    instructions: str


STRATEGIES = {
    "technical": CardStrategy(
        "technical", 12,
        "Focus on what each component, command or API does, how the pieces fit together, "
        "and the mistakes a practitioner should avoid. Prefer 'What does X do?' and 'How do you...?' fronts."
    ),
    "research": CardStrategy(
        "research", 10,
        "Focus on the research question, the method, the key findings (keep numbers exact) and the stated limitations."
    ),
    "book": CardStrategy(
        "book", 10,
        "Focus on the central ideas, arguments, people and themes of the chapter, and how they connect."
    ),
    "blog": CardStrategy(
        "blog", 8,
        "Focus on the article's main claims, the examples that support them and the practical takeaways."
    ),
    "motivational": CardStrategy(
        "motivational", 6,
        "Focus on actionable principles. Phrase the front as a situation and the back as the principle to apply."
    ),
    "business": CardStrategy(
        "business", 8,
        "Focus on goals, metrics, decisions, risks and recommendations, and who is responsible for what."
    ),
    "default": CardStrategy(
        "default", 10,
        "Focus on the core concepts, definitions, causes and effects, and examples a learner should be able to recall."
    ),
}

CATEGORY_STRATEGIES = {
    "technical_document": "technical",
    "reference_material": "technical",
    "research_paper": "research",
    "book_chapter": "book",
    "blog_article": "blog",
    "motivational_content": "motivational",
    "business_document": "business",
}

FALLBACK_TEMPLATES = (
    ('What is "{title}" mainly about?', 'Review the opening of "{title}" and state its central topic.'),
    ('Which key terms does "{title}" introduce?', 'List and define the main terms used in "{title}".'),
    ('What question or problem does "{title}" address?', 'Summarize the problem "{title}" sets out to explain.'),
    ('What are the main takeaways of "{title}"?', 'Recall two or three conclusions drawn in "{title}".'),
    ('How could you apply an idea from "{title}"?', 'Describe one practical use of a concept from "{title}".'),
)

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.I)
_LINE_LABEL = re.compile(r"^(?:front|back|question|answer|q|a)\s*[:.)-]\s*", re.I)
_MARKUP = re.compile(r"^[\s*#>`\-•]+|[*`]+$")


@dataclass
class CardText:
    front: str
    back: str
    difficulty: str = "medium"


class GenerationResult(BaseModel):
    ok: bool
    deck_id: Optional[str] = None
    count: int = 0
    used_fallback: bool = False
    strategy: Optional[str] = None
    error: Optional[str] = None

    def to_envelope(self) -> dict:
        if not self.ok:
            return {"ok": False, "error": self.error}
        return {"ok": True, "deckId": self.deck_id, "count": self.count}


def select_strategy(category: Optional[str], max_cards: Optional[int]) -> Tuple[CardStrategy, int]:
    """Strategy for a category and its card count, capped by the caller's maximum."""
    strategy = STRATEGIES[CATEGORY_STRATEGIES.get(category or "", "default")]
    count = strategy.target_cards
    if max_cards is not None:
        count = min(count, max_cards)
    return strategy, max(1, min(count, MAX_CARDS_PER_DECK))


def build_context(chunks: Sequence[Chunk], max_chunks: int, max_chars: int) -> str:
    """Sanitized chunk contents separated by blank lines, hard-capped at ``max_chars``."""
    parts = [sanitize_text(chunk.content) for chunk in chunks[:max_chunks]]
    return "\n\n".join(p for p in parts if p)[:max_chars]


def build_prompt(title: str, strategy: CardStrategy, count: int, context: str) -> str:
    return f"""{strategy.instructions}

Create exactly {count} flashcards from the content below.
Return a JSON array of objects like [{{"text": "front line\\nback line", "difficulty": "easy|medium|hard"}}].
Rules:
- "text" has exactly two lines: the front (a question or prompt), then the back (the answer).
- Each line is at most {LINE_LIMIT} characters; the whole text at most {TEXT_LIMIT} characters.
- No markdown, no bullets, no quotes around the lines.

Title: {title}

Content:
{context}"""


def _clean_line(line: str) -> str:
    line = _LINE_LABEL.sub("", line.strip())
    line = _MARKUP.sub("", line).strip()
    if len(line) >= 2 and line[0] == line[-1] and line[0] in "\"'":
        line = line[1:-1].strip()
    return sanitize_text(line)[:LINE_LIMIT].rstrip()


def card_from_entry(entry: Any) -> Optional[CardText]:
    """Accept an object with a two-line "text" field (or a bare two-line string); anything else is dropped."""
    difficulty = "medium"
    if isinstance(entry, dict):
        text = entry.get("text")
        if entry.get("difficulty") in CARD_DIFFICULTIES:
            difficulty = entry["difficulty"]
    else:
        text = entry
    if not isinstance(text, str):
        return None
    if "\n" not in text and "\\n" in text:
        text = text.replace("\\n", "\n")

    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) != 2:
        return None

    front, back = _clean_line(lines[0]), _clean_line(lines[1])
    if not front or not back:
        return None
    return CardText(front=front, back=back, difficulty=difficulty)


def parse_card_response(raw: Optional[str], limit: int) -> List[CardText]:
    """
    Parse model output into at most ``limit`` cards.

    Code fences are unwrapped and text around the outermost array is
    ignored. Payloads that are not a JSON array yield no cards.
    """
    payload = (raw or "").strip()
    fenced = _FENCE.search(payload)
    if fenced:
        payload = fenced.group(1).strip()

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        start, end = payload.find("["), payload.rfind("]")
        if start == -1 or end <= start:
            return []
        try:
            data = json.loads(payload[start:end + 1])
        except json.JSONDecodeError:
            return []

    if not isinstance(data, list):
        return []

    cards = []
    for entry in data:
        card = card_from_entry(entry)
        if card:
            cards.append(card)
        if len(cards) >= limit:
            break
    return cards


def fallback_cards(title: str, count: int) -> List[CardText]:
    """Deterministic cards naming the deck title, at most ``len(FALLBACK_TEMPLATES)``."""
    short_title = sanitize_text(title)[:60].rstrip() or "this document"
    n = max(1, min(count, len(FALLBACK_TEMPLATES)))
    return [
        CardText(front=front.format(title=short_title), back=back.format(title=short_title))
        for front, back in FALLBACK_TEMPLATES[:n]
    ]


def assign_chunks(card_count: int, chunks: Sequence[Chunk]) -> List[Chunk]:
    """Spread cards evenly over the chunks, in order."""
    return [chunks[i * len(chunks) // card_count] for i in range(card_count)]


class CardGenerator:
    """
    Turns a deck's linked documents into cards.

    Deck status moves pending -> processing -> completed only after the
    cards and deck_cards rows are stored; any store failure moves it to
    failed instead. Model failures never fail the deck: they fall back to
    ``fallback_cards``.
    """

    def __init__(self, store: BaseStore, client, config: PipelineConfig):
        self.store = store
        self.client = client
        self.config = config
        self.audit_logger = get_audit_logger("card_generator")

    def generate_for_document(
        self,
        document_id: str,
        user_id: str,
        max_cards: Optional[int] = None,
        category: Optional[str] = None
    ) -> GenerationResult:
        """Generate into the deck linked to ``document_id``, creating and linking one if needed."""
        try:
            document = self.store.get_document(document_id, user_id)
            deck = self.store.find_deck_for_document(document_id, user_id)
            if deck is None:
                deck = self.store.add_deck(Deck(
                    user_id=user_id,
                    title=document.title,
                    description=f"Cards generated from {document.title}",
                    settings={"auto_generated": True, "document_id": document_id},
                ))
                self.store.link_deck_document(deck.id, document_id, user_id)
        except (NotFoundError, PersistenceError) as e:
            return GenerationResult(ok=False, error=str(e))

        return self.generate_for_deck(deck.id, user_id, max_cards=max_cards, category=category)

    def generate_for_deck(
        self,
        deck_id: str,
        user_id: str,
        max_cards: Optional[int] = None,
        category: Optional[str] = None
    ) -> GenerationResult:
        start_time = time.time()

        try:
            deck = self.store.get_deck(deck_id, user_id)
            claimed = self.store.transition_status("deck", deck_id, user_id, ["pending"], "processing")
        except (NotFoundError, PersistenceError) as e:
            return GenerationResult(ok=False, deck_id=deck_id, error=str(e))

        if not claimed:
            return GenerationResult(
                ok=False,
                deck_id=deck_id,
                error=f"Deck {deck_id} is {deck.status}; reset it before generating again"
            )

        try:
            return self._generate(deck, user_id, max_cards, category, start_time)
        except Exception as e:
            # The deck was claimed; it must end failed rather than stay processing
            logger.error(f"Card generation failed for deck {deck_id}: {e}")
            self._mark_failed(deck_id, user_id)
            return GenerationResult(ok=False, deck_id=deck_id, error=str(e))

    def _generate(
        self,
        deck: Deck,
        user_id: str,
        max_cards: Optional[int],
        category: Optional[str],
        start_time: float
    ) -> GenerationResult:
        document_ids = self.store.list_deck_document_ids(deck.id, user_id)
        chunks = self.store.list_chunks(user_id, document_ids, limit=self.config.max_card_chunks)

        if not chunks:
            logger.warning(f"No chunks found for deck {deck.id}; nothing to generate")
            self.store.transition_status("deck", deck.id, user_id, ["processing"], "failed")
            return GenerationResult(ok=True, deck_id=deck.id, count=0)

        category = category or self._stored_category(document_ids, user_id)
        strategy, count = select_strategy(category, max_cards or self.config.default_max_cards)
        context = build_context(chunks, self.config.max_card_chunks, self.config.max_context_chars)

        texts = self._ask_model(deck, strategy, count, context)
        used_fallback = not texts
        if used_fallback:
            logger.warning(f"No usable cards from model for deck {deck.id}, using fallback cards")
            texts = fallback_cards(deck.title, count)

        drafts = [
            CardDraft(
                chunk_id=chunk.id,
                front_text=text.front[:FIELD_LIMIT],
                back_text=text.back[:FIELD_LIMIT],
                difficulty=text.difficulty,
            )
            for text, chunk in zip(texts, assign_chunks(len(texts), chunks))
        ]

        links = self.store.attach_cards(deck.id, user_id, drafts)
        self.store.transition_status("deck", deck.id, user_id, ["processing"], "completed")

        log_card_generation(
            self.audit_logger,
            deck_id=deck.id,
            strategy=strategy.name,
            chunks_used=len(chunks),
            cards_created=len(links),
            used_fallback=used_fallback,
            deck_status="completed",
            generation_time_ms=(time.time() - start_time) * 1000
        )
        return GenerationResult(
            ok=True,
            deck_id=deck.id,
            count=len(links),
            used_fallback=used_fallback,
            strategy=strategy.name
        )

    def _ask_model(self, deck: Deck, strategy: CardStrategy, count: int, context: str) -> List[CardText]:
        try:
            raw = chat_completion(
                self.client,
                self.config.chat_model,
                SYSTEM_PROMPT,
                build_prompt(deck.title, strategy, count, context),
                temperature=0.3,
                max_tokens=min(4000, 200 + count * 150)
            )
        except Exception as e:
            logger.error(f"Card generation call failed for deck {deck.id}: {e}")
            return []

        cards = parse_card_response(raw, count)
        logger.info(f"Model returned {len(cards)} usable cards for deck {deck.id} (wanted {count})")
        return cards

    def _stored_category(self, document_ids: Sequence[str], user_id: str) -> Optional[str]:
        for document_id in document_ids:
            category = self.store.get_document(document_id, user_id).metadata.get("category")
            if category:
                return category
        return None

    def _mark_failed(self, deck_id: str, user_id: str) -> None:
        try:
            self.store.transition_status("deck", deck_id, user_id, ["pending", "processing"], "failed")
        except PersistenceError as e:
            logger.error(f"Could not mark deck {deck_id} failed: {e}")
