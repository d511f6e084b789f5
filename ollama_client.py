# ollama_client.py
"""Thin async wrapper around the Ollama HTTP API.

The streaming entry points decode Ollama's newline-delimited JSON frames into
plain text fragments. Frames may be split across network reads, so bytes are
buffered and only complete lines are parsed.
"""
import os
import logging
import datetime as _dt
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import httpx
import orjson

logger = logging.getLogger(__name__)

OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
MODEL = os.getenv("OLLAMA_MODEL", "gemma:latest")
VISION_MODEL = os.getenv("VISION_MODEL", "gemma3:4b")
DEFAULT_NUM_CTX = int(os.getenv("DEFAULT_NUM_CTX", "4096"))
DEFAULT_TEMPERATURE = float(os.getenv("DEFAULT_TEMPERATURE", "0.7"))
KEEP_ALIVE = os.getenv("KEEP_ALIVE", "5m")

TITLE_PROMPT = (
    "Generate a very short title (3-5 words max) for this conversation. "
    "Reply with ONLY the title, nothing else."
)
TITLE_MAX_CHARS = 50


class OllamaError(RuntimeError):
    """The model host refused the request or returned nothing to stream."""


def build_options(temperature: Optional[float] = None, num_ctx: Optional[int] = None) -> Dict[str, Any]:
    return {
        "temperature": DEFAULT_TEMPERATURE if temperature is None else float(temperature),
        "num_ctx": DEFAULT_NUM_CTX if num_ctx is None else int(num_ctx),
    }


def _error_detail(status_code: int, raw: bytes) -> str:
    text = raw.decode("utf-8", "ignore").strip()
    if not text:
        return f"Ollama error: HTTP {status_code}"
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError:
        return f"Ollama error: HTTP {status_code}: {text}"
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("message") or payload.get("detail")
        if detail:
            return f"Ollama error: HTTP {status_code}: {detail}"
    return f"Ollama error: HTTP {status_code}: {text}"


def _fragment(line: bytes) -> tuple[Optional[str], bool]:
    """Decode one frame into (content, done). Raises on malformed JSON."""
    frame = orjson.loads(line)
    if not isinstance(frame, dict):
        raise ValueError("frame is not an object")
    msg = frame.get("message")
    content = msg.get("content") if isinstance(msg, dict) else None
    return (content or None), bool(frame.get("done"))


async def iter_fragments(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Turn a byte stream of NDJSON frames into text fragments.

    Partial lines are kept in the buffer until the rest arrives. A malformed
    frame is logged and skipped. A frame with ``done`` ends the sequence and
    whatever is still buffered is dropped.
    """
    buffer = b""
    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            line = line.strip()
            if not line:
                continue
            try:
                content, done = _fragment(line)
            except (orjson.JSONDecodeError, ValueError):
                logger.warning("Skipping malformed Ollama frame: %r", line[:200])
                continue
            if content:
                yield content
            if done:
                return
    # Stream closed without a trailing newline
    tail = buffer.strip()
    if tail:
        try:
            content, _ = _fragment(tail)
        except (orjson.JSONDecodeError, ValueError):
            logger.warning("Skipping malformed trailing Ollama frame: %r", tail[:200])
            return
        if content:
            yield content


class OllamaClient:
    """Handle on one Ollama host, sharing the app's pooled httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        host: str = OLLAMA_HOST,
        model: str = MODEL,
        vision_model: str = VISION_MODEL,
        keep_alive: str = KEEP_ALIVE,
    ):
        self.client = client
        self.host = host.rstrip("/")
        self.model = model
        self.vision_model = vision_model
        self.keep_alive = keep_alive

    def _request(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: Optional[str],
        stream: bool,
        temperature: Optional[float],
        num_ctx: Optional[int],
        keep_alive: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": messages,
            "stream": stream,
            "options": build_options(temperature, num_ctx),
            "keep_alive": keep_alive or self.keep_alive,
        }

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        num_ctx: Optional[int] = None,
        keep_alive: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments for one streamed chat completion.

        Raises OllamaError before the first fragment when the host answers
        with a non-success status or an empty body. Closing the generator
        early closes the upstream response.
        """
        req = self._request(
            messages,
            model=model,
            stream=True,
            temperature=temperature,
            num_ctx=num_ctx,
            keep_alive=keep_alive,
        )
        async with self.client.stream("POST", f"{self.host}/api/chat", json=req, timeout=None) as resp:
            if resp.status_code >= 400:
                raw = await resp.aread()
                raise OllamaError(_error_detail(resp.status_code, raw))

            received = False

            async def _body() -> AsyncIterator[bytes]:
                nonlocal received
                async for chunk in resp.aiter_bytes():
                    if chunk:
                        received = True
                    yield chunk

            async for fragment in iter_fragments(_body()):
                yield fragment
            if not received:
                raise OllamaError("No response body from Ollama")

    async def stream_chat_with_vision(
        self,
        messages: List[Dict[str, Any]],
        images: List[str],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        num_ctx: Optional[int] = None,
        keep_alive: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Same as stream_chat, with base64 images attached to the last user turn."""
        convo = [dict(m) for m in messages]
        for m in reversed(convo):
            if m.get("role") == "user":
                m["images"] = list(m.get("images") or []) + list(images)
                break
        else:
            convo.append({"role": "user", "content": "", "images": list(images)})
        async for fragment in self.stream_chat(
            convo,
            model=model or self.vision_model,
            temperature=temperature,
            num_ctx=num_ctx,
            keep_alive=keep_alive,
        ):
            yield fragment

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        num_ctx: Optional[int] = None,
    ) -> str:
        req = self._request(
            messages,
            model=model,
            stream=False,
            temperature=temperature,
            num_ctx=num_ctx,
            keep_alive=None,
        )
        r = await self.client.post(f"{self.host}/api/chat", json=req, timeout=120.0)
        if r.status_code >= 400:
            raise OllamaError(_error_detail(r.status_code, r.content))
        data = r.json()
        msg = data.get("message") if isinstance(data, dict) else None
        if isinstance(msg, dict):
            return msg.get("content") or ""
        return ""

    async def generate_title(self, user_message: str) -> str:
        raw = await self.chat(
            [
                {"role": "system", "content": TITLE_PROMPT},
                {"role": "user", "content": user_message},
            ],
            temperature=0.3,
        )
        title = raw.strip().strip("\"'").strip()
        return title[:TITLE_MAX_CHARS] or "New Chat"

    async def health(self) -> bool:
        try:
            r = await self.client.get(f"{self.host}/api/tags", timeout=5.0)
        except httpx.HTTPError:
            return False
        return r.status_code < 400

    async def list_models(self) -> List[str]:
        try:
            r = await self.client.get(f"{self.host}/api/tags", timeout=10.0)
            if r.status_code >= 400:
                return []
            data = r.json()
        except (httpx.HTTPError, ValueError):
            return []
        return [m.get("name") for m in data.get("models") or [] if isinstance(m, dict) and m.get("name")]


def build_system_prompt(
    user_name: str,
    location: Optional[Dict[str, Any]] = None,
    search_enabled: bool = True,
) -> str:
    today = _dt.datetime.now(_dt.timezone.utc).astimezone().strftime("%B %d, %Y")
    parts = [
        f"You are a helpful, knowledgeable assistant talking with {user_name or 'there'}.",
        f"Today is {today}.",
    ]
    if location:
        city, country = location.get("city"), location.get("country")
        if city or country:
            where = ", ".join(p for p in (city, country) if p)
            parts.append(f"The user is located in {where}.")
        elif location.get("latitude") is not None and location.get("longitude") is not None:
            parts.append(
                f"The user is near latitude {location['latitude']}, longitude {location['longitude']}."
            )
    if search_enabled:
        parts.append(
            "When web search results are appended to a message, use them for current facts "
            "and cite them by their [number]. Say so when the results do not answer the question."
        )
    parts.append("Be concise and use Markdown for structure when it helps.")
    return "\n".join(parts)
