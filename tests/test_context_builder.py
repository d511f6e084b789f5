import pytest

from context_builder import build_context


async def _seed(store, n: int) -> str:
    user = await store.create_user("a@example.com", "x")
    session = await store.create_session(user.id)
    for i in range(1, n + 1):
        await store.create_message(session.id, "user" if i % 2 else "assistant", f"m{i}")
    return session.id


@pytest.mark.asyncio
async def test_without_summaries_returns_last_n(store):
    sid = await _seed(store, 12)
    ctx = await build_context(store, sid, 10)
    assert [c["content"] for c in ctx] == [f"m{i}" for i in range(3, 13)]
    assert ctx[0]["role"] == "user"
    assert ctx[1]["role"] == "assistant"


@pytest.mark.asyncio
async def test_summaries_come_first_high_level_before_detailed(store):
    sid = await _seed(store, 12)
    await store.save_summary(sid, "detailed", 1, 10, "recent details")
    await store.save_summary(sid, "high_level", 1, 10, "big picture")
    ctx = await build_context(store, sid, 5)
    assert len(ctx) == 7
    assert ctx[0]["role"] == "system" and "big picture" in ctx[0]["content"]
    assert ctx[1]["role"] == "system" and "recent details" in ctx[1]["content"]
    assert "messages 1-10" in ctx[1]["content"]
    assert [c["content"] for c in ctx[2:]] == ["m8", "m9", "m10", "m11", "m12"]


@pytest.mark.asyncio
async def test_before_seq_leaves_out_current_message(store):
    sid = await _seed(store, 4)
    ctx = await build_context(store, sid, 10, before_seq=4)
    assert [c["content"] for c in ctx] == ["m1", "m2", "m3"]


@pytest.mark.asyncio
async def test_empty_session(store):
    user = await store.create_user("b@example.com", "x")
    session = await store.create_session(user.id)
    assert await build_context(store, session.id) == []
