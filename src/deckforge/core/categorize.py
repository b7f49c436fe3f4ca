"""Classify a document into a fixed category set with one LLM call."""

import logging
import re
from typing import Optional

from pydantic import BaseModel

from .config import PipelineConfig
from .errors import NotFoundError, PersistenceError
from .llm import chat_completion
from .logging_config import get_audit_logger, log_categorization
from .models import utcnow
from .store import BaseStore

logger = logging.getLogger(__name__)

CATEGORIES = (
    "technical_document",
    "research_paper",
    "book_chapter",
    "blog_article",
    "educational_content",
    "motivational_content",
    "business_document",
    "reference_material",
)
DEFAULT_CATEGORY = "educational_content"
SAMPLE_CHARS = 2000

SYSTEM_PROMPT = """Categorize this document content into one of these categories and return ONLY the category name:
- technical_document (programming, engineering, technical guides)
- research_paper (academic papers, scientific studies)
- book_chapter (book content, literature)
- blog_article (articles, posts, news)
- educational_content (tutorials, courses, learning materials)
- motivational_content (self-help, inspirational content)
- business_document (reports, proposals, business content)
- reference_material (manuals, documentation)

Analyze the writing style, content structure, and subject matter to determine the most appropriate category."""

_LABEL = re.compile("|".join(CATEGORIES))


class CategorizationResult(BaseModel):
    success: bool
    document_id: str
    category: Optional[str] = None
    error: Optional[str] = None

    def to_envelope(self) -> dict:
        if not self.success:
            return {"success": False, "error": self.error}
        return {"success": True, "category": self.category, "documentId": self.document_id}


def build_sample(title: str, extracted_text: Optional[str]) -> str:
    """First ~2000 characters of the text, or the title when there is none."""
    sample = (extracted_text or "")[:SAMPLE_CHARS]
    return sample if sample.strip() else title


def coerce_category(raw: Optional[str]) -> str:
    """Lowercase and trim model output; unknown or empty answers become the default category."""
    answer = (raw or "").strip().lower()
    answer = answer.strip("`'\".:* ").replace(" ", "_").replace("-", "_")
    if answer in CATEGORIES:
        return answer
    match = _LABEL.search(answer)
    return match.group(0) if match else DEFAULT_CATEGORY


def classify(client, model: str, title: str, extracted_text: Optional[str]) -> str:
    """One chat call; transport and API errors propagate."""
    sample = build_sample(title, extracted_text)
    return chat_completion(
        client,
        model,
        SYSTEM_PROMPT,
        f"Title: {title}\n\nContent:\n{sample}",
        temperature=0.1,
        max_tokens=50
    )


def categorize_document(
    store: BaseStore,
    client,
    config: PipelineConfig,
    document_id: str,
    user_id: str,
    source_id: Optional[str] = None
) -> CategorizationResult:
    """
    Categorize a document and record the category on it and on ``source_id``.

    A failed or unusable model answer degrades to the default category. Only
    a missing document or a failed write makes the result unsuccessful.
    """
    audit_logger = get_audit_logger("categorizer")

    try:
        document = store.get_document(document_id, user_id)
    except NotFoundError as e:
        return CategorizationResult(success=False, document_id=document_id, error=str(e))

    raw = None
    try:
        raw = classify(client, config.chat_model, document.title, document.extracted_text)
    except Exception as e:
        logger.warning(f"Categorization call failed for document {document_id}, using default: {e}")

    category = coerce_category(raw)
    now = utcnow().isoformat()

    try:
        store.update_metadata("document", document_id, user_id, {"category": category, "analyzed_at": now})
        if source_id:
            store.update_metadata("source", source_id, user_id, {"category": category, "categorized_at": now})
    except (NotFoundError, PersistenceError) as e:
        logger.error(f"Failed to store category for document {document_id}: {e}")
        return CategorizationResult(success=False, document_id=document_id, error=str(e))

    log_categorization(audit_logger, document_id, source_id, category, raw)
    logger.info(f"Document {document_id} categorized as {category}")
    return CategorizationResult(success=True, document_id=document_id, category=category)
