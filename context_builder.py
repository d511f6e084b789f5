"""Assemble the prompt context for a chat turn.

Long conversations are represented by at most two rolling summaries plus a
short tail of raw messages, so the prompt stays bounded however long the
session grows.
"""
from typing import Dict, List, Optional

from chatstore import ChatStore, ConversationSummary, message_dicts

DEFAULT_TAIL = 10

_HEADERS = {
    "high_level": "Overview of the conversation so far",
    "detailed": "Detailed summary of recent conversation",
}


def summary_turn(summary: ConversationSummary) -> Dict[str, str]:
    header = _HEADERS.get(summary.summary_type, "Conversation summary")
    return {
        "role": "system",
        "content": (
            f"{header} (messages {summary.message_range_start}-{summary.message_range_end}):\n"
            f"{summary.summary_text.strip()}"
        ),
    }


async def build_context(
    store: ChatStore,
    session_id: str,
    limit: int = DEFAULT_TAIL,
    *,
    before_seq: Optional[int] = None,
) -> List[Dict[str, str]]:
    """Return [high_level?] + [detailed?] + last `limit` raw messages, oldest first.

    `before_seq` restricts the raw tail to messages older than that sequence
    number, which lets the caller leave out a message it has just written.
    """
    summaries = await store.get_summaries(session_id)
    context: List[Dict[str, str]] = []
    for kind in ("high_level", "detailed"):
        summary = summaries.get(kind)
        if summary is not None and summary.summary_text.strip():
            context.append(summary_turn(summary))
    tail = await store.recent_messages(session_id, limit, before_seq=before_seq)
    context.extend(message_dicts(tail))
    return context
