"""
Summarizer: rolling compaction of a chat session's history.

Pipeline (runs detached from the request that triggered it):
  1) should_trigger_summarization: fire at message counts 20, 30, 40, ...
     (a multiple of 10 and above 10, never at exactly 10).
  2) get_summary_type: detailed for 10–49 messages, high_level from 50 on.
     Each trigger produces exactly one summary.
  3) Load the source window (last 50 messages for detailed, last 1000 for
     high_level) and build one compaction prompt bounded to 150 / 100 words.
  4) Stream the model's answer through the text-only entry point and join
     the fragments.
  5) Upsert into the (session, summary_type) slot with the covered range
     and an estimated token count.

Any failure along the way is logged and swallowed; the chat turn that fired
the trigger never sees it.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Tuple

from chatstore import ChatStore, ConversationSummary, Message
from ollama_client import OllamaClient

logger = logging.getLogger(__name__)

SUMMARY_INTERVAL = 10
HIGH_LEVEL_THRESHOLD = 50

# Source window per summary type (most recent N messages)
WINDOWS: Dict[str, int] = {"detailed": 50, "high_level": 1000}
WORD_LIMITS: Dict[str, int] = {"detailed": 150, "high_level": 100}

SUMMARY_SYSTEM_PROMPT = "You are an expert at creating concise, information-dense conversation summaries."


def should_trigger_summarization(message_count: int) -> bool:
    return message_count > SUMMARY_INTERVAL and message_count % SUMMARY_INTERVAL == 0


def get_summary_type(message_count: int) -> Optional[str]:
    if message_count >= HIGH_LEVEL_THRESHOLD:
        return "high_level"
    if message_count >= SUMMARY_INTERVAL:
        return "detailed"
    return None


def summary_range(message_count: int, summary_type: str) -> Tuple[int, int]:
    """1-indexed [start, end] over the session's message sequence."""
    end = message_count
    if summary_type == "detailed":
        start = max(1, end - (WINDOWS["detailed"] - 1))
    else:
        # high_level always claims the whole conversation
        start = 1
    return start, end


def estimate_token_count(text: str) -> int:
    # Rough heuristic: ~4 chars/token
    return math.ceil(len(text) / 4) if text else 0


def build_summarization_prompt(messages: List[Message], word_limit: int) -> str:
    conversation = "\n\n".join(
        f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}" for m in messages
    )
    return (
        "You are creating a conversation summary for context preservation in a chat application.\n\n"
        "**PRESERVE:**\n"
        "- Key facts, decisions, and action items\n"
        "- User preferences, settings, and personal context\n"
        "- Important technical details or data\n"
        "- Unresolved questions or ongoing topics\n"
        "- Specific names, dates, numbers, or identifiers\n\n"
        "**OMIT:**\n"
        "- Greetings, pleasantries, casual chat\n"
        "- Redundant or repeated information\n"
        "- Fully resolved topics with no remaining relevance\n"
        "- Tangential discussions\n\n"
        f"**FORMAT:** Concise bullet points, maximum {word_limit} words.\n\n"
        f"**Conversation to summarize:**\n{conversation}\n\n"
        "**Summary:**"
    )


async def generate_summary(ollama: OllamaClient, messages: List[Message], summary_type: str) -> str:
    prompt = build_summarization_prompt(messages, WORD_LIMITS[summary_type])
    parts: List[str] = []
    async for fragment in ollama.stream_chat(
        [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
    ):
        parts.append(fragment)
    return "".join(parts).strip()


async def summarize_if_needed(store: ChatStore, ollama: OllamaClient, session_id: str) -> Optional[ConversationSummary]:
    """Run one summarization pass for the session if its message count calls for it.

    Returns the saved summary, or None when nothing was due or something failed.
    Never raises.
    """
    try:
        count = await store.count_messages(session_id)
        if not should_trigger_summarization(count):
            return None
        summary_type = get_summary_type(count)
        if summary_type is None:
            return None

        logger.info("Triggering %s summarization for session %s (msg count: %d)", summary_type, session_id, count)
        messages = await store.recent_messages(session_id, WINDOWS[summary_type])
        text = await generate_summary(ollama, messages, summary_type)
        if not text:
            logger.warning("Empty %s summary for session %s; keeping previous one", summary_type, session_id)
            return None

        start, end = summary_range(count, summary_type)
        tokens = estimate_token_count(text)
        saved = await store.save_summary(session_id, summary_type, start, end, text, tokens)
        logger.info("Saved %s summary (%d tokens) for session %s", summary_type, tokens, session_id)
        return saved
    except Exception:
        logger.exception("Background summarization failed for session %s", session_id)
        return None


__all__ = [
    "should_trigger_summarization",
    "get_summary_type",
    "summary_range",
    "estimate_token_count",
    "build_summarization_prompt",
    "generate_summary",
    "summarize_if_needed",
]
