"""LangGraph pipeline for one chat turn.

Architecture:
  A StateGraph with a parallel fan-out and a join:

    START ─┬─> extract_intent ─┐
           └─> generate_reply ─┴─> compose_reply ─> log_inquiry ─> END

  1. **extract_intent** — structured-output call that flags service requests
  2. **generate_reply** — free-form reply with the FAQ supplement
  3. **compose_reply**  — picks the text shown to the customer: the fixed
                          form prompt for service requests, otherwise the
                          generated reply
  4. **log_inquiry**    — best-effort append to the inquiry log, always with
                          the *generated* reply text

  The two calls in step 1/2 share no state; LangGraph runs them in the same
  superstep and only runs ``compose_reply`` once both have written their
  keys.  Neither node raises: the completion engine returns fallback values.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from src.models import ExtractedIntent
from src.services.completion import CompletionEngine
from src.services.record_store import AirtableClient

logger = logging.getLogger(__name__)

FORM_PROMPT_MESSAGE = "Please fill out the form to schedule your service request."


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """Values flowing through one turn.

    ``message`` and ``history`` are inputs; every other key is written by
    exactly one node.
    """

    message: str
    history: Sequence[tuple[str, str]]
    intent: ExtractedIntent
    reply: str
    display_text: str
    logged: bool


# ── Nodes ────────────────────────────────────────────────────────────


def _make_extract_node(engine: CompletionEngine):
    def extract_intent_node(state: TurnState) -> dict:
        return {"intent": engine.extract_intent(state["message"], state.get("history", ()))}

    return extract_intent_node


def _make_reply_node(engine: CompletionEngine):
    def generate_reply_node(state: TurnState) -> dict:
        return {"reply": engine.generate_reply(state["message"], state.get("history", ()))}

    return generate_reply_node


def compose_reply(state: TurnState) -> dict:
    """Choose what the customer sees.  The generated reply is kept in state."""
    intent = state.get("intent") or ExtractedIntent()
    if intent.is_service_request:
        return {"display_text": FORM_PROMPT_MESSAGE}
    return {"display_text": state["reply"]}


def _make_log_node(record_store: AirtableClient | None):
    def log_inquiry_node(state: TurnState) -> dict:
        if record_store is None:
            return {"logged": False}
        try:
            result = record_store.log_inquiry(state["message"], state["reply"])
        except Exception:
            logger.exception("Unexpected error logging inquiry")
            return {"logged": False}
        if not result.ok:
            logger.warning("Inquiry not logged: %s", result.reason)
        return {"logged": result.ok}

    return log_inquiry_node


# ── Graph assembly ───────────────────────────────────────────────────


def create_turn_graph(engine: CompletionEngine, record_store: AirtableClient | None):
    """Build and compile the per-turn graph.

    Invoke with ``{"message": ..., "history": [(role, content), ...]}``;
    ``history`` excludes the current message.
    """
    graph = StateGraph(TurnState)

    graph.add_node("extract_intent", _make_extract_node(engine))
    graph.add_node("generate_reply", _make_reply_node(engine))
    graph.add_node("compose_reply", compose_reply)
    graph.add_node("log_inquiry", _make_log_node(record_store))

    # Fan out: both calls start together
    graph.add_edge(START, "extract_intent")
    graph.add_edge(START, "generate_reply")

    # Join: compose only once both results are in
    graph.add_edge(["extract_intent", "generate_reply"], "compose_reply")
    graph.add_edge("compose_reply", "log_inquiry")
    graph.add_edge("log_inquiry", END)

    compiled = graph.compile()
    logger.debug("Turn graph compiled")
    return compiled
