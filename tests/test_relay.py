import pytest

from background import BackgroundTasks
from conftest import FakeOllama, FakeSearch, parse_sse
from ollama_client import OllamaError
from relay import ChatRequest, ChatTurn, TurnState


async def _session(store):
    user = await store.create_user("a@example.com", "x", "Ada")
    return (await store.create_session(user.id)).id


def _turn(store, ollama, sid, message="Hello", search=None, **kw):
    return ChatTurn(
        store=store,
        ollama=ollama,
        tasks=BackgroundTasks(),
        search=search,
        request=ChatRequest(session_id=sid, message=message, user_name="Ada", **kw),
    )


async def _run(turn):
    await turn.prepare()
    return parse_sse(b"".join([frame async for frame in turn.events()]))


@pytest.mark.asyncio
async def test_full_turn_streams_persists_and_titles(store, fake_ollama):
    sid = await _session(store)
    turn = _turn(store, fake_ollama, sid)
    events = await _run(turn)

    assert events == [
        {"content": "Hi", "done": False},
        {"content": " there", "done": False},
        {"content": "!", "done": False},
        {"content": "", "done": True},
    ]
    assert turn.state is TurnState.DONE
    messages = await store.recent_messages(sid, 10)
    assert [(m.role, m.content) for m in messages] == [("user", "Hello"), ("assistant", "Hi there!")]

    await turn.tasks.drain()
    assert (await store.get_session(sid)).title == "Greeting"
    assert fake_ollama.title_requests == ["Hello"]


@pytest.mark.asyncio
async def test_prompt_has_system_context_then_single_user_turn(store, fake_ollama):
    sid = await _session(store)
    for i in range(1, 9):
        await store.create_message(sid, "user" if i % 2 else "assistant", f"m{i}")
    await store.save_summary(sid, "detailed", 1, 8, "earlier stuff")

    turn = _turn(store, fake_ollama, sid, message="next question")
    await turn.prepare()
    prompt = turn.prompt
    assert prompt[0]["role"] == "system" and "Ada" in prompt[0]["content"]
    assert "earlier stuff" in prompt[1]["content"]
    assert [m["content"] for m in prompt[2:-1]] == ["m4", "m5", "m6", "m7", "m8"]
    assert prompt[-1] == {"role": "user", "content": "next question"}
    assert sum(1 for m in prompt if m["content"] == "next question") == 1
    # Not the first message, no title job
    await turn.tasks.drain()
    assert fake_ollama.title_requests == []


@pytest.mark.asyncio
async def test_search_results_add_meta_event_and_block(store, fake_ollama):
    sid = await _session(store)
    search = FakeSearch(results=[{"title": "stub", "url": "https://s.example", "description": "d"}])
    turn = _turn(store, fake_ollama, sid, message="weather today", search=search)
    events = await _run(turn)

    assert events[0] == {"type": "meta", "search": True, "query": "weather today"}
    assert events[-1] == {"content": "", "done": True}
    assert "--- Web Search Results ---" in turn.prompt[-1]["content"]
    # Only the bare question is stored
    stored = await store.recent_messages(sid, 10)
    assert stored[0].content == "weather today"


@pytest.mark.asyncio
async def test_upstream_error_becomes_error_event(store):
    sid = await _session(store)
    ollama = FakeOllama(fail_with=OllamaError("Ollama error: HTTP 500: boom"))
    turn = _turn(store, ollama, sid)
    events = await _run(turn)

    assert events == [{"error": "Ollama error: HTTP 500: boom", "done": True}]
    assert turn.state is TurnState.ERRORED
    assert turn.assistant_message is None
    assert await store.count_messages(sid) == 1
    await turn.tasks.drain()


@pytest.mark.asyncio
async def test_disconnect_mid_stream_persists_nothing(store):
    sid = await _session(store)
    ollama = FakeOllama(fragments=("a", "b", "c", "d", "e"))
    turn = _turn(store, ollama, sid)
    await turn.prepare()

    frames = turn.events()
    received = [await frames.__anext__(), await frames.__anext__()]
    assert len(received) == 2
    await frames.aclose()

    assert ollama.yielded == 2
    assert turn.state is TurnState.ERRORED
    assert turn.assistant_message is None
    messages = await store.recent_messages(sid, 10)
    assert [m.role for m in messages] == ["user"]
    await turn.tasks.drain()


@pytest.mark.asyncio
async def test_image_goes_through_vision_path(store, fake_ollama):
    sid = await _session(store)
    turn = _turn(store, fake_ollama, sid, message="What is in this image?", image_base64="aGk=")
    await _run(turn)
    assert fake_ollama.images == [["aGk="]]
    await turn.tasks.drain()


@pytest.mark.asyncio
async def test_reply_reaching_twenty_messages_triggers_detailed_summary(store):
    sid = await _session(store)
    for i in range(1, 19):
        await store.create_message(sid, "user" if i % 2 else "assistant", f"m{i}")
    ollama = FakeOllama(fragments=("- covered ", "the basics"))
    turn = _turn(store, ollama, sid, message="question 19")
    await _run(turn)
    await turn.tasks.drain()

    assert await store.count_messages(sid) == 20
    summary = await store.get_summary(sid, "detailed")
    assert summary is not None
    assert (summary.message_range_start, summary.message_range_end) == (1, 20)
    assert summary.summary_text == "- covered the basics"
