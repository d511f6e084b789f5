# server.py
import os
import hmac
import time
import logging
import datetime as _dt
from typing import Any, Dict, Optional, Union
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, Form, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles

import auth
from background import BackgroundTasks
from chatstore import ChatStore, User, init_store, message_dicts
from notify import ADMIN_TOKEN, Notifier
from ollama_client import OllamaClient
from pages import render_chat, render_login, render_pending_approval, render_signup
from relay import ChatRequest, ChatTurn
from websearch import WebSearch

APP_DIR = os.path.dirname(os.path.abspath(__file__))
STATIC_DIR = os.path.join(APP_DIR, "static")

# Configure via env if you want
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
MESSAGE_PAGE_LIMIT = 50
SESSION_LIST_LIMIT = 50
SHUTDOWN_GRACE_SECONDS = float(os.getenv("SHUTDOWN_GRACE_SECONDS", "10"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("server")

router = APIRouter()


# -------- Auth helpers --------
async def _current_user(request: Request) -> Optional[User]:
    token = request.cookies.get(auth.COOKIE_NAME)
    return await auth.validate_token(request.app.state.store, token)


async def _api_user(request: Request) -> User:
    user = await _current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not user.approved:
        raise HTTPException(status_code=403, detail="Account pending approval")
    return user


async def _page_user(request: Request) -> Union[User, Response]:
    """Logged-in, approved user or the response to send instead."""
    user = await _current_user(request)
    if user is None:
        return RedirectResponse("/login", status_code=303)
    if not user.approved:
        return HTMLResponse(render_pending_approval(user.email), status_code=403)
    return user


async def _owned_session(request: Request, user: User, session_id: str):
    session = await request.app.state.store.get_session(session_id)
    if session is None or session.user_id != user.id:
        return None
    return session


def _parse_location(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    try:
        lat = float(raw["latitude"]) if raw.get("latitude") is not None else None
        lon = float(raw["longitude"]) if raw.get("longitude") is not None else None
    except (TypeError, ValueError):
        return None
    loc = {
        "latitude": lat,
        "longitude": lon,
        "city": raw.get("city") if isinstance(raw.get("city"), str) else None,
        "country": raw.get("country") if isinstance(raw.get("country"), str) else None,
    }
    if lat is None and lon is None and not loc["city"] and not loc["country"]:
        return None
    return loc


# -------- Public pages --------
@router.get("/")
async def root():
    return RedirectResponse("/chat", status_code=303)


@router.get("/login", response_class=HTMLResponse)
async def login_page():
    return render_login()


@router.post("/login")
async def login_submit(request: Request, email: str = Form(""), password: str = Form("")):
    result = await auth.login(request.app.state.store, email, password)
    if isinstance(result, auth.AuthError):
        return HTMLResponse(render_login(result.error), status_code=400)
    resp = RedirectResponse("/chat", status_code=303)
    resp.set_cookie(**auth.auth_cookie_kwargs(result.token))
    return resp


@router.get("/signup", response_class=HTMLResponse)
async def signup_page():
    return render_signup()


@router.post("/signup")
async def signup_submit(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
    name: Optional[str] = Form(None),
):
    state = request.app.state
    result = await auth.signup(state.store, email, password, name)
    if isinstance(result, auth.AuthError):
        return HTMLResponse(render_signup(result.error), status_code=400)
    logger.info("New signup: %s", result.user.email)
    state.tasks.spawn(state.notifier.new_user_signup(result.user), name=f"notify-signup:{result.user.id}")
    resp = RedirectResponse("/chat", status_code=303)
    resp.set_cookie(**auth.auth_cookie_kwargs(result.token))
    return resp


@router.get("/logout")
async def logout(request: Request):
    token = request.cookies.get(auth.COOKIE_NAME)
    if token:
        await auth.logout(request.app.state.store, token)
    resp = RedirectResponse("/login", status_code=303)
    resp.delete_cookie(auth.COOKIE_NAME, path="/")
    return resp


# -------- Protected pages --------
@router.get("/chat")
async def chat_page(request: Request):
    user = await _page_user(request)
    if isinstance(user, Response):
        return user
    sessions = await request.app.state.store.list_user_sessions(user.id, SESSION_LIST_LIMIT)
    return HTMLResponse(render_chat(user, sessions))


@router.get("/chat/{session_id}")
async def chat_session_page(request: Request, session_id: str):
    user = await _page_user(request)
    if isinstance(user, Response):
        return user
    if await _owned_session(request, user, session_id) is None:
        return RedirectResponse("/chat", status_code=303)
    sessions = await request.app.state.store.list_user_sessions(user.id, SESSION_LIST_LIMIT)
    return HTMLResponse(render_chat(user, sessions, session_id))


# -------- Session API --------
@router.get("/api/sessions")
async def list_sessions(request: Request):
    user = await _api_user(request)
    sessions = await request.app.state.store.list_user_sessions(user.id, SESSION_LIST_LIMIT)
    return [
        {"id": s.id, "title": s.title, "createdAt": s.created_at, "updatedAt": s.updated_at}
        for s in sessions
    ]


@router.post("/api/sessions")
async def create_session(request: Request):
    user = await _api_user(request)
    session = await request.app.state.store.create_session(user.id)
    return {"sessionId": session.id}


@router.get("/api/sessions/{session_id}/messages")
async def session_messages(request: Request, session_id: str):
    user = await _api_user(request)
    if await _owned_session(request, user, session_id) is None:
        return JSONResponse({"error": "Not found"}, status_code=404)
    messages = await request.app.state.store.recent_messages(session_id, MESSAGE_PAGE_LIMIT)
    return message_dicts(messages)


@router.delete("/api/sessions/{session_id}")
async def delete_session(request: Request, session_id: str):
    user = await _api_user(request)
    if await _owned_session(request, user, session_id) is None:
        return JSONResponse({"error": "Not found"}, status_code=404)
    await request.app.state.store.delete_session(session_id)
    return {"success": True}


# -------- Chat streaming --------
@router.post("/api/chat")
async def chat_stream(request: Request, payload: Dict[str, Any]):
    user = await _api_user(request)
    state = request.app.state

    session_id = payload.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        return JSONResponse({"error": "sessionId is required"}, status_code=400)
    if await _owned_session(request, user, session_id) is None:
        return JSONResponse({"error": "Invalid session"}, status_code=403)

    image = payload.get("imageBase64")
    image = image if isinstance(image, str) and image else None
    message = payload.get("message")
    message = message.strip() if isinstance(message, str) else ""
    if not message:
        if image is None:
            return JSONResponse({"error": "message is required"}, status_code=400)
        message = "What is in this image?"

    turn = ChatTurn(
        store=state.store,
        ollama=state.ollama,
        tasks=state.tasks,
        search=state.search,
        request=ChatRequest(
            session_id=session_id,
            message=message,
            user_name=user.name or "there",
            location=_parse_location(payload.get("location")),
            image_base64=image,
        ),
    )
    await turn.prepare()
    return StreamingResponse(
        turn.events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# -------- Admin --------
@router.get("/api/admin/approve")
async def admin_approve(request: Request, userId: str = "", action: str = "", token: str = ""):
    state = request.app.state
    if not state.admin_token:
        return JSONResponse({"error": "Not found"}, status_code=404)
    if not token or not hmac.compare_digest(token, state.admin_token):
        return JSONResponse({"error": "Forbidden"}, status_code=403)
    if action not in ("approve", "decline"):
        return JSONResponse({"error": "action must be approve or decline"}, status_code=400)
    user = await state.store.get_user_by_id(userId)
    if user is None:
        return JSONResponse({"error": "User not found"}, status_code=404)

    if action == "approve":
        await state.store.approve_user(user.id)
        outcome = "approved"
    else:
        await state.store.delete_user(user.id)
        outcome = "declined"
    logger.info("User %s %s", user.email, outcome)
    state.tasks.spawn(state.notifier.approval_action(user.email, outcome), name=f"notify-{outcome}:{user.id}")
    return {"success": True, "email": user.email, "action": outcome}


# -------- Health --------
@router.get("/health")
async def health(request: Request):
    state = request.app.state
    db_ok = await state.store.health_check()
    ollama_ok = await state.ollama.health()
    return {
        "status": "healthy" if db_ok and ollama_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "ollama": "connected" if ollama_ok else "disconnected",
        "search": "configured" if state.search.enabled else "disabled",
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
    }


def create_app(
    *,
    store: Optional[ChatStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    ollama: Optional[OllamaClient] = None,
    search: Optional[WebSearch] = None,
    notifier: Optional[Notifier] = None,
    admin_token: str = ADMIN_TOKEN,
) -> FastAPI:
    """Build the app. Anything not passed in is created by the lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        state = app.state
        owned_client = None
        if state.http is None:
            limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
            owned_client = state.http = httpx.AsyncClient(http2=True, limits=limits)
        owned_store = state.store is None
        if owned_store:
            state.store = init_store()
        state.ollama = state.ollama or OllamaClient(state.http)
        state.search = state.search or WebSearch(state.http)
        state.notifier = state.notifier or Notifier(state.http)
        purged = await state.store.clean_expired_tokens()
        if purged:
            logger.info("Removed %d expired auth tokens", purged)
        logger.info("Using Ollama at %s (model %s)", state.ollama.host, state.ollama.model)
        yield
        # Shutdown
        await state.tasks.drain(timeout=SHUTDOWN_GRACE_SECONDS)
        if owned_client is not None:
            await owned_client.aclose()
        if owned_store:
            state.store.close()

    app = FastAPI(title="Ollama Chat", lifespan=lifespan)
    app.state.store = store
    app.state.http = http_client
    app.state.ollama = ollama or (OllamaClient(http_client) if http_client else None)
    app.state.search = search or (WebSearch(http_client) if http_client else None)
    app.state.notifier = notifier or (Notifier(http_client) if http_client else None)
    app.state.tasks = BackgroundTasks()
    app.state.admin_token = admin_token

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s %d %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    if os.path.isdir(STATIC_DIR):
        app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",  # module_name:app_instance
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3000")),
    )
