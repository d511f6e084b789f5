"""Streaming relay for one chat turn.

RECEIVED -> (SEARCHED) -> STREAMING -> PERSISTING -> DONE, with ERRORED
reachable once streaming has started. Fragments are forwarded to the client
as soon as they arrive and accumulated on the side; only a complete
generation is stored.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import orjson

from background import BackgroundTasks
from chatstore import ChatStore, Message
from context_builder import build_context
from ollama_client import OllamaClient, build_system_prompt
from summarizer import summarize_if_needed
from websearch import WebSearch

logger = logging.getLogger(__name__)

CONTEXT_TAIL = 5

DATA = b"data: "
END = b"\n\n"


def sse(payload: Dict[str, Any]) -> bytes:
    return DATA + orjson.dumps(payload) + END


class TurnState(str, enum.Enum):
    RECEIVED = "received"
    SEARCHED = "searched"
    STREAMING = "streaming"
    PERSISTING = "persisting"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class ChatRequest:
    session_id: str
    message: str
    user_name: str = "there"
    location: Optional[Dict[str, Any]] = None
    image_base64: Optional[str] = None


@dataclass
class ChatTurn:
    store: ChatStore
    ollama: OllamaClient
    tasks: BackgroundTasks
    request: ChatRequest
    search: Optional[WebSearch] = None
    context_tail: int = CONTEXT_TAIL

    state: TurnState = TurnState.RECEIVED
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    search_results: List[Dict[str, str]] = field(default_factory=list)
    prompt: List[Dict[str, Any]] = field(default_factory=list)

    async def prepare(self) -> None:
        """Persist the user message and build the outgoing prompt.

        Must finish before the response starts streaming.
        """
        req = self.request
        self.user_message = await self.store.create_message(req.session_id, "user", req.message)
        self._schedule_summarization()

        context = await build_context(
            self.store,
            req.session_id,
            self.context_tail,
            before_seq=self.user_message.seq,
        )

        search_block = ""
        if self.search is not None:
            self.search_results, search_block = await self.search.context_for(req.message)
            if search_block:
                self.state = TurnState.SEARCHED

        system_prompt = build_system_prompt(
            req.user_name,
            req.location,
            search_enabled=self.search is not None and self.search.enabled,
        )
        content = f"{req.message}\n\n{search_block}" if search_block else req.message
        self.prompt = [{"role": "system", "content": system_prompt}, *context, {"role": "user", "content": content}]

        if self.user_message.seq == 1:
            self.tasks.spawn(self._update_title(req.session_id, req.message), name=f"title:{req.session_id}")

    def _schedule_summarization(self) -> None:
        sid = self.request.session_id
        self.tasks.spawn(summarize_if_needed(self.store, self.ollama, sid), name=f"summarize:{sid}")

    async def _update_title(self, session_id: str, message: str) -> None:
        title = await self.ollama.generate_title(message)
        await self.store.update_session_title(session_id, title)
        logger.info("Session %s titled %r", session_id, title)

    def _open_stream(self) -> AsyncGenerator[str, None]:
        if self.request.image_base64:
            return self.ollama.stream_chat_with_vision(self.prompt, [self.request.image_base64])
        return self.ollama.stream_chat(self.prompt)

    async def events(self) -> AsyncIterator[bytes]:
        """SSE frames for this turn. Call prepare() first."""
        parts: List[str] = []
        try:
            if self.search_results:
                yield sse({"type": "meta", "search": True, "query": self.request.message})

            self.state = TurnState.STREAMING
            stream = self._open_stream()
            try:
                async for fragment in stream:
                    parts.append(fragment)
                    yield sse({"content": fragment, "done": False})
            finally:
                await stream.aclose()

            self.state = TurnState.PERSISTING
            self.assistant_message = await self.store.create_message(
                self.request.session_id, "assistant", "".join(parts)
            )
            self._schedule_summarization()
            self.state = TurnState.DONE
            yield sse({"content": "", "done": True})
        except Exception as e:
            self.state = TurnState.ERRORED
            logger.error("Stream error in session %s: %s", self.request.session_id, e)
            yield sse({"error": str(e), "done": True})
        except BaseException:
            # Client went away (generator closed or task cancelled); drop the partial text
            if self.state is not TurnState.DONE:
                self.state = TurnState.ERRORED
                logger.info(
                    "Client disconnected from session %s after %d fragments; partial reply discarded",
                    self.request.session_id,
                    len(parts),
                )
            raise
