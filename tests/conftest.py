import os
import sys
from typing import Any, Dict, List, Optional, Sequence

import orjson
import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from chatstore import ChatStore  # noqa: E402


class FakeOllama:
    """Scripted stand-in for OllamaClient. Records every prompt it is sent."""

    host = "http://ollama.test"
    model = "fake"

    def __init__(
        self,
        fragments: Sequence[str] = ("Hi", " there", "!"),
        title: str = "Greeting",
        fail_with: Optional[BaseException] = None,
    ):
        self.fragments = list(fragments)
        self.title = title
        self.fail_with = fail_with
        self.prompts: List[List[Dict[str, Any]]] = []
        self.images: List[List[str]] = []
        self.title_requests: List[str] = []
        self.yielded = 0

    async def stream_chat(self, messages, **kwargs):
        self.prompts.append(messages)
        if self.fail_with is not None:
            raise self.fail_with
        for fragment in self.fragments:
            self.yielded += 1
            yield fragment

    async def stream_chat_with_vision(self, messages, images, **kwargs):
        self.images.append(list(images))
        async for fragment in self.stream_chat(messages, **kwargs):
            yield fragment

    async def generate_title(self, user_message: str) -> str:
        self.title_requests.append(user_message)
        return self.title

    async def health(self) -> bool:
        return True


class FakeSearch:
    def __init__(self, results: Optional[List[Dict[str, str]]] = None, enabled: bool = True):
        self.results = results or []
        self.enabled = enabled
        self.queries: List[str] = []

    async def context_for(self, message: str):
        self.queries.append(message)
        if not self.results:
            return [], ""
        return self.results, "\n\n--- Web Search Results ---\n[1] stub\n--- End Search Results ---\n"


def ndjson(*frames: Dict[str, Any]) -> bytes:
    return b"".join(orjson.dumps(f) + b"\n" for f in frames)


def parse_sse(body: bytes) -> List[Dict[str, Any]]:
    events = []
    for record in body.split(b"\n\n"):
        record = record.strip()
        if record.startswith(b"data: "):
            events.append(orjson.loads(record[len(b"data: "):]))
    return events


@pytest.fixture
def store(tmp_path):
    s = ChatStore(str(tmp_path / "chat.db"))
    yield s
    s.close()


@pytest.fixture
def fake_ollama():
    return FakeOllama()
