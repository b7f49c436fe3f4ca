"""Text extraction: PDF bytes (PyMuPDF -> text operators -> placeholder), HTML pages, plain files."""

import html
import logging
import re
from typing import Optional

import fitz  # PyMuPDF
import httpx

from .errors import FetchError
from .sanitize import sanitize_text

logger = logging.getLogger(__name__)

# Text objects in a PDF content stream: BT ... ET
_TEXT_OBJECT = re.compile(r"\bBT\b(.*?)\bET\b", re.S)
_PDF_NAMES = re.compile(r"/[A-Za-z0-9_.+-]+")
_PDF_OPERATORS = re.compile(r"\b(?:Tf|Td|TD|Tm|TJ|Tj|Tc|Tw|Tz|TL|Tr|Ts|T\*)(?=\s|$|[\[(<])")
_PDF_NUMBERS = re.compile(r"(?<![A-Za-z])-?\d+(?:\.\d*)?")
_PDF_DELIMITERS = re.compile(r"[()<>\[\]{}/']")

_HIDDEN_BLOCKS = re.compile(r"<(script|style|noscript)\b[^>]*>.*?</\1\s*>", re.I | re.S)
_COMMENTS = re.compile(r"<!--.*?-->", re.S)
_TAGS = re.compile(r"<[^>]*>")


def placeholder_text(title: str) -> str:
    """Stand-in content for a source nothing readable could be pulled from."""
    return sanitize_text(f"Document: {title} - Content could not be extracted")


def extract_text_with_pymupdf(data: bytes) -> str:
    """Decode the text layer of every page; empty string if the buffer is not a readable PDF."""
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            pages = [page.get_text() for page in doc]
    except Exception as e:
        logger.warning(f"PyMuPDF could not read PDF buffer: {e}")
        return ""
    return sanitize_text("\n".join(pages))


def extract_text_operators(data: bytes) -> str:
    """
    Scan raw PDF bytes for text objects (BT ... ET) and keep what remains once
    font names, positioning operators and their numeric arguments are removed.
    Only useful for uncompressed content streams.
    """
    raw = data.decode("latin-1")
    pieces = []
    for match in _TEXT_OBJECT.finditer(raw):
        block = _PDF_NAMES.sub(" ", match.group(1))
        block = _PDF_OPERATORS.sub(" ", block)
        block = _PDF_NUMBERS.sub(" ", block)
        block = _PDF_DELIMITERS.sub(" ", block)
        pieces.append(block)
    return sanitize_text(" ".join(pieces))


def extract_pdf_text(data: bytes, title: str) -> str:
    """Never fails: falls back to a placeholder naming the document."""
    text = extract_text_with_pymupdf(data)
    if not text:
        logger.info("No text layer found, scanning PDF text operators")
        text = extract_text_operators(data)
    if not text:
        logger.warning(f"No text could be extracted from PDF '{title}', using placeholder")
        text = placeholder_text(title)
    return text


def html_to_text(markup: str) -> str:
    """Drop script/style/noscript blocks and comments, strip tags, decode entities, sanitize."""
    text = _HIDDEN_BLOCKS.sub(" ", markup or "")
    text = _COMMENTS.sub(" ", text)
    text = _TAGS.sub(" ", text)
    text = html.unescape(text)
    text = re.sub(r"\s+", " ", text).strip()
    return sanitize_text(text)


def extract_html_text(markup: str, title: str) -> str:
    return html_to_text(markup) or placeholder_text(title)


def extract_plain_text(data: bytes, title: str) -> str:
    """txt/markdown files: UTF-8 with replacement, then sanitize."""
    return sanitize_text(data.decode("utf-8", errors="replace")) or placeholder_text(title)


def fetch_url_text(url: str, title: str, client: Optional[httpx.Client] = None, timeout: float = 30.0) -> str:
    """
    Fetch a URL and extract its text.

    Raises:
        FetchError: on transport failure, an unusable URL or a non-2xx response
    """
    owns_client = client is None
    client = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        response = client.get(url)
    except httpx.HTTPError as e:
        raise FetchError(f"Failed to fetch URL {url}: {e}") from e
    except (httpx.InvalidURL, ValueError) as e:
        # Malformed hosts surface as InvalidURL or, from the resolver, UnicodeError
        raise FetchError(f"Invalid URL {url}: {e}") from e
    finally:
        if owns_client:
            client.close()

    if not response.is_success:
        raise FetchError(f"Failed to fetch URL {url}: {response.status_code} {response.reason_phrase}")

    content_type = response.headers.get("content-type", "").lower()
    logger.info(f"Fetched {url} ({len(response.content)} bytes, {content_type or 'unknown type'})")

    if "application/pdf" in content_type:
        return extract_pdf_text(response.content, title)
    if content_type.startswith("text/plain"):
        return extract_plain_text(response.content, title)
    return extract_html_text(response.text, title)
