"""OpenAI client construction and the single chat-completion call shape used by the pipeline."""

import logging
from typing import Optional

import openai

from .config import PipelineConfig

logger = logging.getLogger(__name__)


def get_openai_client(config: PipelineConfig) -> openai.OpenAI:
    """
    Build a client bounded by the configured per-call timeout.

    Retries are disabled: a failed call falls through to the caller's
    fallback path instead of being repeated.
    """
    return openai.OpenAI(
        api_key=config.require_api_key(),
        timeout=config.request_timeout,
        max_retries=0,
    )


def chat_completion(
    client,
    model: str,
    system_prompt: str,
    user_prompt: str,
    temperature: float = 0.3,
    max_tokens: int = 500
) -> str:
    """Return the first choice's message text ("" when the model sent none)."""
    response = client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt}
        ],
        temperature=temperature,
        max_tokens=max_tokens
    )
    if not response.choices:
        return ""
    content: Optional[str] = response.choices[0].message.content
    return content or ""
