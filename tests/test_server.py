import httpx
import pytest

import auth
from conftest import FakeOllama, FakeSearch, parse_sse
from notify import Notifier
from server import create_app


@pytest.fixture
def app(store):
    notify_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    return create_app(
        store=store,
        ollama=FakeOllama(),
        search=FakeSearch(enabled=False),
        notifier=Notifier(notify_client, slack_webhook_url="", gotify_token=""),
        admin_token="admin-secret",
    )


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def _login(store, email="ada@example.com", approved=True):
    result = await auth.signup(store, email, "password1", "Ada", iterations=1000)
    if approved:
        await store.approve_user(result.user.id)
    return result.user, {"Cookie": f"{auth.COOKIE_NAME}={result.token}"}


@pytest.mark.asyncio
async def test_api_requires_auth(app):
    async with _client(app) as c:
        r = await c.get("/api/sessions")
        assert r.status_code == 401
        assert r.json() == {"error": "Not authenticated"}
        r = await c.post("/api/chat", json={"sessionId": "x", "message": "hi"})
        assert r.status_code == 401


@pytest.mark.asyncio
async def test_pages_redirect_to_login(app):
    async with _client(app) as c:
        r = await c.get("/chat")
        assert r.status_code == 303
        assert r.headers["location"] == "/login"
        r = await c.get("/")
        assert r.headers["location"] == "/chat"
        r = await c.get("/login")
        assert r.status_code == 200
        assert 'action="/login"' in r.text


@pytest.mark.asyncio
async def test_unapproved_user_is_held_back(app, store):
    _, headers = await _login(store, approved=False)
    async with _client(app) as c:
        assert (await c.get("/api/sessions", headers=headers)).status_code == 403
        page = await c.get("/chat", headers=headers)
        assert page.status_code == 403
        assert "awaiting approval" in page.text


@pytest.mark.asyncio
async def test_signup_form_sets_cookie(app, store):
    async with _client(app) as c:
        r = await c.post("/signup", data={"email": "new@example.com", "password": "password1", "name": "New"})
        assert r.status_code == 303
        assert "auth_token=" in r.headers["set-cookie"]
        bad = await c.post("/signup", data={"email": "new@example.com", "password": "password1"})
        assert bad.status_code == 400
        assert "Email already registered" in bad.text
    await app.state.tasks.drain()
    assert (await store.get_user_by_email("new@example.com")).name == "New"


@pytest.mark.asyncio
async def test_login_form(app, store):
    await _login(store)
    async with _client(app) as c:
        ok = await c.post("/login", data={"email": "ada@example.com", "password": "password1"})
        assert ok.status_code == 303
        assert "auth_token=" in ok.headers["set-cookie"]
        bad = await c.post("/login", data={"email": "ada@example.com", "password": "nope"})
        assert bad.status_code == 400
        assert "Invalid email or password" in bad.text


@pytest.mark.asyncio
async def test_session_lifecycle(app, store):
    _, headers = await _login(store)
    async with _client(app) as c:
        sid = (await c.post("/api/sessions", headers=headers)).json()["sessionId"]
        listed = (await c.get("/api/sessions", headers=headers)).json()
        assert [s["id"] for s in listed] == [sid]
        assert listed[0]["title"] == "New Chat"

        await store.create_message(sid, "user", "hi")
        await store.create_message(sid, "assistant", "hello")
        msgs = (await c.get(f"/api/sessions/{sid}/messages", headers=headers)).json()
        assert msgs == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        page = await c.get(f"/chat/{sid}", headers=headers)
        assert page.status_code == 200
        assert sid in page.text

        assert (await c.delete(f"/api/sessions/{sid}", headers=headers)).json() == {"success": True}
        assert await store.get_session(sid) is None


@pytest.mark.asyncio
async def test_foreign_sessions_are_hidden(app, store):
    owner, _ = await _login(store, "owner@example.com")
    _, intruder = await _login(store, "intruder@example.com")
    sid = (await store.create_session(owner.id)).id
    async with _client(app) as c:
        assert (await c.get(f"/api/sessions/{sid}/messages", headers=intruder)).status_code == 404
        assert (await c.delete(f"/api/sessions/{sid}", headers=intruder)).status_code == 404
        r = await c.post("/api/chat", headers=intruder, json={"sessionId": sid, "message": "hi"})
        assert r.status_code == 403
        assert r.json() == {"error": "Invalid session"}
        page = await c.get(f"/chat/{sid}", headers=intruder)
        assert page.headers["location"] == "/chat"
    assert await store.get_session(sid) is not None
    assert await store.count_messages(sid) == 0


@pytest.mark.asyncio
async def test_chat_streams_and_persists(app, store):
    user, headers = await _login(store)
    sid = (await store.create_session(user.id)).id
    async with _client(app) as c:
        r = await c.post("/api/chat", headers=headers, json={"sessionId": sid, "message": "Hello"})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(r.content)
    assert "".join(e.get("content", "") for e in events) == "Hi there!"
    assert events[-1] == {"content": "", "done": True}

    await app.state.tasks.drain()
    stored = await store.recent_messages(sid, 10)
    assert [(m.role, m.content) for m in stored] == [("user", "Hello"), ("assistant", "Hi there!")]
    assert (await store.get_session(sid)).title == "Greeting"


@pytest.mark.asyncio
async def test_chat_rejects_empty_message(app, store):
    user, headers = await _login(store)
    sid = (await store.create_session(user.id)).id
    async with _client(app) as c:
        r = await c.post("/api/chat", headers=headers, json={"sessionId": sid, "message": "   "})
        assert r.status_code == 400
        r = await c.post("/api/chat", headers=headers, json={"message": "hi"})
        assert r.status_code == 400


@pytest.mark.asyncio
async def test_admin_approval(app, store):
    user, _ = await _login(store, approved=False)
    async with _client(app) as c:
        denied = await c.get("/api/admin/approve", params={"userId": user.id, "action": "approve", "token": "wrong"})
        assert denied.status_code == 403
        ok = await c.get("/api/admin/approve", params={"userId": user.id, "action": "approve", "token": "admin-secret"})
        assert ok.json() == {"success": True, "email": user.email, "action": "approved"}
    await app.state.tasks.drain()
    assert (await store.get_user_by_id(user.id)).approved is True


@pytest.mark.asyncio
async def test_admin_endpoint_off_without_token(store):
    app = create_app(store=store, ollama=FakeOllama(), search=FakeSearch(enabled=False), admin_token="")
    async with _client(app) as c:
        r = await c.get("/api/admin/approve", params={"userId": "x", "action": "approve", "token": ""})
        assert r.status_code == 404


@pytest.mark.asyncio
async def test_health(app):
    async with _client(app) as c:
        body = (await c.get("/health")).json()
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["ollama"] == "connected"
    assert body["search"] == "disabled"
    assert "timestamp" in body
