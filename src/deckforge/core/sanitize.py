"""Text sanitization for extracted content before it is stored or sent to a model."""

import re
import unicodedata
from typing import Any

MAX_TEXT_LENGTH = 100_000

_NONCHARACTERS = re.compile("[\ufffe\uffff]")
_UNICODE_ESCAPES = re.compile(r"\\u[0-9a-fA-F]{4}")
_BACKSLASH_ESCAPES = re.compile(r"\\[nrtbfav\\\"']")
_CONTROL_CHARS = re.compile("[\x00-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")
_JSON_UNSAFE = re.compile(r"[\\\"]")


def sanitize_text(text: Any) -> str:
    """
    Normalize raw extracted text into a bounded single-line string.

    Literal escape sequences such as ``\\u00e9`` or ``\\n`` left behind by an
    upstream encoder are dropped, control characters and noncharacters are
    removed, Unicode is canonically recomposed and whitespace collapsed.

    Never raises; anything that is not a string becomes ``""``.
    The function is idempotent.
    """
    if not text or not isinstance(text, str):
        return ""

    text = _NONCHARACTERS.sub("", text)

    # Removing one escape can expose another ("\\\\u0041u0041"), so repeat
    previous = None
    while previous != text:
        previous = text
        text = _UNICODE_ESCAPES.sub("", text)

    text = _BACKSLASH_ESCAPES.sub(" ", text)
    text = _CONTROL_CHARS.sub(" ", text)
    text = unicodedata.normalize("NFC", unicodedata.normalize("NFD", text))
    text = _WHITESPACE.sub(" ", text).strip()

    return text[:MAX_TEXT_LENGTH].rstrip()


def sanitize_for_json(text: Any) -> str:
    """Stricter variant for text embedded in JSON payloads: no quotes, backslashes or line breaks."""
    text = sanitize_text(text)
    text = _JSON_UNSAFE.sub("", text)
    text = re.sub(r"[\r\n\t]", " ", text)
    return text.replace("\x00", "")
