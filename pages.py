"""Server-rendered pages. Plain f-strings; every interpolated value is escaped."""
from html import escape
from typing import List, Optional

from chatstore import Session, User

_STYLE = """
body { margin: 0; font-family: Inter, system-ui, sans-serif; background: #020617; color: #e2e8f0; }
a { color: #60a5fa; }
.center { min-height: 100vh; display: flex; align-items: center; justify-content: center; }
.card { background: #0f172a; border: 1px solid #1e293b; border-radius: 12px; padding: 2rem; width: 22rem; }
.card input { width: 100%; box-sizing: border-box; margin: .35rem 0 1rem; padding: .6rem; border-radius: 8px;
  border: 1px solid #334155; background: #020617; color: inherit; }
button { background: #2563eb; color: white; border: 0; border-radius: 8px; padding: .6rem 1rem; cursor: pointer; }
.error { background: rgba(239,68,68,.1); border: 1px solid rgba(239,68,68,.2); color: #f87171;
  padding: .75rem 1rem; border-radius: 8px; margin-bottom: 1rem; }
.app { display: flex; height: 100vh; }
.sidebar { width: 16rem; background: #0f172a; border-right: 1px solid #1e293b; padding: 1rem; overflow-y: auto; }
.sidebar a.session { display: block; padding: .5rem .75rem; border-radius: 8px; color: #cbd5e1; text-decoration: none; }
.sidebar a.session.active, .sidebar a.session:hover { background: #1e293b; color: white; }
.main { flex: 1; display: flex; flex-direction: column; }
#messages { flex: 1; overflow-y: auto; padding: 1.5rem; }
.msg { max-width: 48rem; margin: 0 auto 1rem; white-space: pre-wrap; line-height: 1.5; }
.msg .who { font-size: .75rem; color: #94a3b8; margin-bottom: .25rem; }
.msg .meta { font-size: .75rem; color: #60a5fa; margin-bottom: .25rem; }
form.chat { display: flex; gap: .5rem; padding: 1rem; border-top: 1px solid #1e293b; }
form.chat textarea { flex: 1; resize: none; padding: .6rem; border-radius: 8px; border: 1px solid #334155;
  background: #020617; color: inherit; }
"""


def render_layout(content: str, title: str = "Chat") -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{escape(title)}</title>
  <style>{_STYLE}</style>
</head>
<body>
{content}
</body>
</html>"""


def _error_box(error: Optional[str]) -> str:
    return f'<div class="error">{escape(error)}</div>' if error else ""


def render_login(error: Optional[str] = None) -> str:
    return render_layout(f"""
<div class="center"><div class="card">
  <h1>Sign in</h1>
  {_error_box(error)}
  <form method="post" action="/login">
    <label>Email<input type="email" name="email" required></label>
    <label>Password<input type="password" name="password" required></label>
    <button type="submit">Sign In</button>
  </form>
  <p>Don't have an account? <a href="/signup">Sign up</a></p>
</div></div>""", "Login")


def render_signup(error: Optional[str] = None) -> str:
    return render_layout(f"""
<div class="center"><div class="card">
  <h1>Create account</h1>
  {_error_box(error)}
  <form method="post" action="/signup">
    <label>Name<input type="text" name="name"></label>
    <label>Email<input type="email" name="email" required></label>
    <label>Password<input type="password" name="password" minlength="8" required></label>
    <button type="submit">Create Account</button>
  </form>
  <p>Already have an account? <a href="/login">Sign in</a></p>
</div></div>""", "Sign Up")


def render_pending_approval(email: str) -> str:
    return render_layout(f"""
<div class="center"><div class="card">
  <h1>Almost there</h1>
  <p>Your account ({escape(email)}) is awaiting approval.</p>
  <p>You'll be notified once your account is approved.</p>
  <p><a href="/logout">Sign out</a></p>
</div></div>""", "Pending Approval")


def render_chat(user: User, sessions: List[Session], current_session_id: Optional[str] = None) -> str:
    items = "\n".join(
        f'<a class="session{" active" if s.id == current_session_id else ""}" href="/chat/{escape(s.id)}">{escape(s.title)}</a>'
        for s in sessions
    )
    if current_session_id:
        main = f"""
  <input type="hidden" id="session-id" value="{escape(current_session_id)}">
  <div id="messages"><div id="message-container"></div></div>
  <form class="chat" id="chat-form">
    <input type="file" id="image-input" accept="image/*">
    <textarea id="message-input" rows="2" placeholder="Send a message..."></textarea>
    <button type="submit">Send</button>
  </form>"""
    else:
        main = """
  <div id="messages"><div class="msg">Start a new chat from the sidebar.</div></div>"""
    return render_layout(f"""
<div class="app" data-user-name="{escape(user.name or 'there')}">
  <nav class="sidebar">
    <button type="button" id="new-chat">New Chat</button>
    <div style="margin-top:1rem">{items}</div>
    <p style="margin-top:2rem"><a href="/logout">Sign out</a></p>
  </nav>
  <main class="main">{main}
  </main>
</div>
<script src="/static/chat.js"></script>""", "Chat")
