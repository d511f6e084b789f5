import os
import uuid
import sqlite3
import datetime as _dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


def _app_dir() -> str:
    return os.path.dirname(os.path.abspath(__file__))


CHAT_DB_PATH = os.getenv("CHAT_DB", os.path.join(_app_dir(), "chat.db"))

SUMMARY_TYPES = ("detailed", "high_level")


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: Optional[str]
    approved: bool
    created_at: str
    updated_at: str


@dataclass
class Session:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str


@dataclass
class Message:
    id: str
    session_id: str
    seq: int
    role: str
    content: str
    created_at: str


@dataclass
class ConversationSummary:
    id: str
    session_id: str
    summary_type: str
    message_range_start: int
    message_range_end: int
    summary_text: str
    token_count: Optional[int]
    created_at: str
    updated_at: str


def _user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        password_hash=row["password_hash"],
        name=row["name"],
        approved=bool(row["approved"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _session(row: sqlite3.Row) -> Session:
    return Session(**{k: row[k] for k in ("id", "user_id", "title", "created_at", "updated_at")})


def _message(row: sqlite3.Row) -> Message:
    return Message(**{k: row[k] for k in ("id", "session_id", "seq", "role", "content", "created_at")})


def _summary(row: sqlite3.Row) -> ConversationSummary:
    return ConversationSummary(
        **{
            k: row[k]
            for k in (
                "id",
                "session_id",
                "summary_type",
                "message_range_start",
                "message_range_end",
                "summary_text",
                "token_count",
                "created_at",
                "updated_at",
            )
        }
    )


class ChatStore:
    """
    SQLite store for users, auth tokens, chat sessions, messages and
    conversation summaries.
    - Foreign keys are enforced; deleting a session cascades to its messages
      and summaries, deleting a user cascades to everything it owns
    - Messages carry an explicit per-session sequence number; every read
      orders by it
    - One summary row per (session, summary_type); saving replaces it
    """

    def __init__(self, db_path: str = CHAT_DB_PATH):
        self.db_path = db_path
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._ensure_schema()

    # ——— Schema
    def _ensure_schema(self) -> None:
        c = self._conn.cursor()
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              email TEXT UNIQUE NOT NULL,
              password_hash TEXT NOT NULL,
              name TEXT,
              approved INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS auth_tokens (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
              token TEXT UNIQUE NOT NULL,
              expires_at TEXT NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
              title TEXT NOT NULL DEFAULT 'New Chat',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
              id TEXT PRIMARY KEY,
              session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
              seq INTEGER NOT NULL,
              role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
              content TEXT NOT NULL,
              created_at TEXT NOT NULL,
              UNIQUE (session_id, seq)
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_summaries (
              id TEXT PRIMARY KEY,
              session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
              summary_type TEXT NOT NULL CHECK (summary_type IN ('detailed', 'high_level')),
              message_range_start INTEGER NOT NULL,
              message_range_end INTEGER NOT NULL,
              summary_text TEXT NOT NULL,
              token_count INTEGER,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE (session_id, summary_type)
            )
            """
        )
        c.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id, updated_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_auth_tokens_expires ON auth_tokens(expires_at)")
        self._conn.commit()

    # ——— Users
    async def create_user(self, email: str, password_hash: str, name: Optional[str] = None) -> User:
        now = _now_iso()
        uid = _new_id()
        with self._conn:
            self._conn.execute(
                "INSERT INTO users(id, email, password_hash, name, approved, created_at, updated_at) VALUES(?,?,?,?,0,?,?)",
                (uid, email, password_hash, name or None, now, now),
            )
        return User(id=uid, email=email, password_hash=password_hash, name=name or None, approved=False, created_at=now, updated_at=now)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._conn.execute("SELECT * FROM users WHERE email = ? LIMIT 1", (email,)).fetchone()
        return _user(row) if row else None

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        row = self._conn.execute("SELECT * FROM users WHERE id = ? LIMIT 1", (user_id,)).fetchone()
        return _user(row) if row else None

    async def approve_user(self, user_id: str) -> Optional[User]:
        with self._conn:
            self._conn.execute("UPDATE users SET approved = 1, updated_at = ? WHERE id = ?", (_now_iso(), user_id))
        return await self.get_user_by_id(user_id)

    async def approve_user_by_email(self, email: str) -> Optional[User]:
        user = await self.get_user_by_email(email)
        if user is None:
            return None
        return await self.approve_user(user.id)

    async def delete_user(self, user_id: str) -> bool:
        with self._conn:
            cur = self._conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cur.rowcount > 0

    # ——— Auth tokens
    async def create_auth_token(self, user_id: str, token: str, expires_at: _dt.datetime) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT INTO auth_tokens(id, user_id, token, expires_at, created_at) VALUES(?,?,?,?,?)",
                (_new_id(), user_id, token, expires_at.astimezone(_dt.timezone.utc).isoformat(), _now_iso()),
            )

    async def get_user_by_token(self, token: str) -> Optional[User]:
        row = self._conn.execute(
            """
            SELECT u.* FROM auth_tokens t
            JOIN users u ON t.user_id = u.id
            WHERE t.token = ? AND t.expires_at > ?
            LIMIT 1
            """,
            (token, _now_iso()),
        ).fetchone()
        return _user(row) if row else None

    async def delete_auth_token(self, token: str) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM auth_tokens WHERE token = ?", (token,))

    async def clean_expired_tokens(self) -> int:
        with self._conn:
            cur = self._conn.execute("DELETE FROM auth_tokens WHERE expires_at < ?", (_now_iso(),))
        return cur.rowcount

    # ——— Sessions
    async def create_session(self, user_id: str, title: str = "New Chat") -> Session:
        now = _now_iso()
        sid = _new_id()
        with self._conn:
            self._conn.execute(
                "INSERT INTO sessions(id, user_id, title, created_at, updated_at) VALUES(?,?,?,?,?)",
                (sid, user_id, title or "New Chat", now, now),
            )
        return Session(id=sid, user_id=user_id, title=title or "New Chat", created_at=now, updated_at=now)

    async def get_session(self, session_id: str) -> Optional[Session]:
        row = self._conn.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        return _session(row) if row else None

    async def list_user_sessions(self, user_id: str, limit: int = 50) -> List[Session]:
        rows = self._conn.execute(
            "SELECT * FROM sessions WHERE user_id = ? ORDER BY updated_at DESC LIMIT ?",
            (user_id, int(limit)),
        ).fetchall()
        return [_session(r) for r in rows]

    async def update_session_title(self, session_id: str, title: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
                (title, _now_iso(), session_id),
            )

    async def delete_session(self, session_id: str) -> bool:
        with self._conn:
            cur = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        return cur.rowcount > 0

    # ——— Messages
    async def create_message(self, session_id: str, role: str, content: str) -> Message:
        now = _now_iso()
        mid = _new_id()
        with self._conn:
            # seq is allocated in the same statement so concurrent writers cannot collide
            self._conn.execute(
                """
                INSERT INTO messages(id, session_id, seq, role, content, created_at)
                VALUES(?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE session_id = ?), ?, ?, ?)
                """,
                (mid, session_id, session_id, role, content, now),
            )
            self._conn.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id))
        row = self._conn.execute("SELECT * FROM messages WHERE id = ?", (mid,)).fetchone()
        return _message(row)

    async def recent_messages(self, session_id: str, limit: int = 10, before_seq: Optional[int] = None) -> List[Message]:
        """Last `limit` messages of a session, oldest first."""
        if before_seq is None:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?",
                (session_id, int(limit)),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE session_id = ? AND seq < ? ORDER BY seq DESC LIMIT ?",
                (session_id, int(before_seq), int(limit)),
            ).fetchall()
        return [_message(r) for r in reversed(rows)]

    async def count_messages(self, session_id: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM messages WHERE session_id = ?", (session_id,)).fetchone()
        return int(row["n"])

    # ——— Summaries
    async def save_summary(
        self,
        session_id: str,
        summary_type: str,
        range_start: int,
        range_end: int,
        summary_text: str,
        token_count: Optional[int] = None,
    ) -> Optional[ConversationSummary]:
        if summary_type not in SUMMARY_TYPES:
            raise ValueError(f"unknown summary type: {summary_type}")
        now = _now_iso()
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO conversation_summaries(
                  id, session_id, summary_type, message_range_start, message_range_end,
                  summary_text, token_count, created_at, updated_at)
                VALUES(?,?,?,?,?,?,?,?,?)
                ON CONFLICT(session_id, summary_type) DO UPDATE SET
                  message_range_start=excluded.message_range_start,
                  message_range_end=excluded.message_range_end,
                  summary_text=excluded.summary_text,
                  token_count=excluded.token_count,
                  updated_at=excluded.updated_at
                """,
                (_new_id(), session_id, summary_type, int(range_start), int(range_end), summary_text, token_count, now, now),
            )
        return await self.get_summary(session_id, summary_type)

    async def get_summary(self, session_id: str, summary_type: str) -> Optional[ConversationSummary]:
        row = self._conn.execute(
            "SELECT * FROM conversation_summaries WHERE session_id = ? AND summary_type = ? LIMIT 1",
            (session_id, summary_type),
        ).fetchone()
        return _summary(row) if row else None

    async def get_summaries(self, session_id: str) -> Dict[str, ConversationSummary]:
        rows = self._conn.execute(
            "SELECT * FROM conversation_summaries WHERE session_id = ?",
            (session_id,),
        ).fetchall()
        return {r["summary_type"]: _summary(r) for r in rows}

    # ——— Lifecycle
    async def health_check(self) -> bool:
        try:
            self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        self._conn.close()


_STORE: Optional[ChatStore] = None


def init_store(*, db_path: Optional[str] = None) -> ChatStore:
    global _STORE
    if _STORE is None:
        _STORE = ChatStore(db_path=db_path or CHAT_DB_PATH)
    return _STORE


def get_store() -> ChatStore:
    if _STORE is None:
        # Lazy init with defaults; suitable for scripts
        return init_store()
    return _STORE


def message_dicts(messages: List[Message]) -> List[Dict[str, Any]]:
    return [{"role": "assistant" if m.role == "assistant" else "user", "content": m.content} for m in messages]
