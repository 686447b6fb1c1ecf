"""Completion engine: reply generation and intent extraction via Claude.

Both operations are independent calls so one failing never blocks the
other, and neither ever raises:

* ``generate_reply`` falls back to a fixed apology string.
* ``extract_intent`` falls back to ``ExtractedIntent(is_service_request=False)``,
  which suppresses the booking flow instead of crashing it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage

from src.config import (
    ANTHROPIC_API_KEY,
    EXTRACTION_MODEL_NAME,
    MODEL_NAME,
    REQUEST_TIMEOUT_SECONDS,
)
from src.models import ExtractedIntent
from src.prompts import get_extraction_prompt, get_system_prompt
from src.services.metrics import metrics
from src.services.record_store import AirtableClient

logger = logging.getLogger(__name__)

EMPTY_REPLY_MESSAGE = "I apologize, but I couldn't process your request at the moment."
REPLY_FALLBACK_MESSAGE = (
    "I apologize, but I'm having trouble connecting to the AI service at the moment."
)

# (role, content) pairs, oldest first
History = Sequence[tuple[str, str]]


class MissingCredentialError(RuntimeError):
    """The completion provider's API key is not configured."""


# ── LLM builders ────────────────────────────────────────────────────


def _build_chat_llm(api_key: str) -> ChatAnthropic:
    """Build the LLM used for free-form replies."""
    if not api_key:
        raise MissingCredentialError("Missing ANTHROPIC_API_KEY environment variable")
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=api_key,
        temperature=0.3,
        max_tokens=1024,
        timeout=REQUEST_TIMEOUT_SECONDS,
        max_retries=0,
    )


def _build_extraction_llm(api_key: str):
    """Build the LLM constrained to the ExtractedIntent schema."""
    if not api_key:
        raise MissingCredentialError("Missing ANTHROPIC_API_KEY environment variable")
    llm = ChatAnthropic(
        model=EXTRACTION_MODEL_NAME,
        api_key=api_key,
        temperature=0.0,  # Deterministic extraction
        max_tokens=512,
        timeout=REQUEST_TIMEOUT_SECONDS,
        max_retries=0,
    )
    return llm.with_structured_output(ExtractedIntent)


# ── Message helpers ─────────────────────────────────────────────────


def _to_messages(history: History, message: str) -> list[AnyMessage]:
    """Map (role, content) history plus the current turn to chat messages.

    Leading assistant turns (the widget greeting) are dropped because the
    conversation sent to the model must open with a user turn.
    """
    messages: list[AnyMessage] = []
    for role, content in history:
        if role == "user":
            messages.append(HumanMessage(content=content))
        elif messages:
            messages.append(AIMessage(content=content))
    messages.append(HumanMessage(content=message))
    return messages


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


class CompletionEngine:
    """Talks to the hosted model for replies and intent extraction.

    LLM clients are built lazily so that a missing API key surfaces as a
    per-call failure rather than at start-up.  Tests inject mocks through
    ``chat_llm`` / ``extraction_llm``.
    """

    def __init__(
        self,
        record_store: AirtableClient | None = None,
        *,
        api_key: str | None = None,
        chat_llm: Any | None = None,
        extraction_llm: Any | None = None,
    ):
        self._record_store = record_store
        self._api_key = ANTHROPIC_API_KEY if api_key is None else api_key
        self._chat_llm = chat_llm
        self._extraction_llm = extraction_llm

    def _get_chat_llm(self):
        if self._chat_llm is None:
            self._chat_llm = _build_chat_llm(self._api_key)
        return self._chat_llm

    def _get_extraction_llm(self):
        if self._extraction_llm is None:
            self._extraction_llm = _build_extraction_llm(self._api_key)
        return self._extraction_llm

    def _load_faqs(self) -> list[dict[str, str]]:
        if self._record_store is None:
            return []
        faqs = self._record_store.list_faqs()
        if not faqs.ok:
            logger.warning("Replying without FAQ supplement: %s", faqs.reason)
        return faqs.unwrap_or([])

    # ── Public API ────────────────────────────────────────────────────

    def generate_reply(self, message: str, history: History = ()) -> str:
        """Return the assistant's reply, or an apology if anything fails."""
        try:
            with metrics.track("anthropic", "generate_reply"):
                llm = self._get_chat_llm()
                system = SystemMessage(content=get_system_prompt(self._load_faqs()))
                response = llm.invoke([system, *_to_messages(history, message)])
        except Exception as exc:
            logger.error("Error getting chat completion: %s", exc)
            return REPLY_FALLBACK_MESSAGE

        text = _response_text(response)
        logger.debug("Reply generated (%d chars)", len(text))
        return text or EMPTY_REPLY_MESSAGE

    def extract_intent(self, message: str, history: History = ()) -> ExtractedIntent:
        """Classify *message* and pull out booking fields.

        Any failure (missing key, request error, schema mismatch) yields
        ``is_service_request=False``.
        """
        try:
            with metrics.track("anthropic", "extract_intent"):
                llm = self._get_extraction_llm()
                system = SystemMessage(content=get_extraction_prompt())
                result = llm.invoke([system, *_to_messages(history, message)])
        except Exception as exc:
            logger.warning("Error detecting service request: %s", exc)
            return ExtractedIntent()

        if isinstance(result, ExtractedIntent):
            intent = result
        elif isinstance(result, dict):
            try:
                intent = ExtractedIntent.model_validate(result)
            except ValueError as exc:
                logger.warning("Discarding malformed extraction output: %s", exc)
                return ExtractedIntent()
        else:
            logger.warning("Extraction returned %s; treating as no request", type(result).__name__)
            return ExtractedIntent()

        logger.debug("Extracted intent: service_request=%s type=%s", intent.is_service_request, intent.type)
        return intent
