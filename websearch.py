# websearch.py
import os
import re
import logging
from typing import List, Dict, Tuple, Any, Optional

import httpx
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

BRAVE_API_KEY = os.getenv("BRAVE_SEARCH_API_KEY", "")
BRAVE_SEARCH_URL = os.getenv("BRAVE_SEARCH_URL", "https://api.search.brave.com/res/v1/web/search")
SEARCH_RESULT_COUNT = 5


# ----------------- Helpers -----------------

def _clean_text(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def _strip_html(s: str) -> str:
    # Brave snippets can carry <strong> highlights and HTML entities
    if not s:
        return ""
    return _clean_text(BeautifulSoup(s, "html.parser").get_text(" "))


def _ok(payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Wrap a payload as a success."""
    data: Dict[str, Any] = {"ok": True}
    if payload:
        data.update(payload)
    return data


def _err(msg: str, **extra) -> Dict[str, Any]:
    """Standardized error shape."""
    out = {"ok": False, "error": str(msg)}
    if extra:
        out.update(extra)
    return out


# ----------------- Gate -----------------

# Keywords that suggest the question needs current information
SEARCH_TRIGGERS = (
    "today",
    "current",
    "latest",
    "recent",
    "now",
    "weather",
    "news",
    "price",
    "stock",
    "what time",
    "when is",
    "where is",
    "how to get to",
    "directions",
    "search for",
    "look up",
    "find me",
    "what's happening",
    "score",
    "results",
    "who won",
    "release date",
    "opening hours",
    "nearby",
    "restaurant",
    "store",
    "movie",
    "show",
)

# Match at word starts: "restaurants" fires, "know" does not
_TRIGGER_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(t) for t in SEARCH_TRIGGERS) + r")",
    re.IGNORECASE,
)

TIME_PATTERNS = (
    re.compile(r"what('s| is) the .*(today|now|current)", re.IGNORECASE),
    re.compile(r"how (much|many) .*(cost|price)", re.IGNORECASE),
    re.compile(r"when (does|did|will|is)", re.IGNORECASE),
    re.compile(r"\bis .* open\b", re.IGNORECASE),
)


def should_search_web(message: str) -> bool:
    """True when the message looks like it needs fresh information from the web."""
    if not message:
        return False
    text = message.replace("’", "'")
    if _TRIGGER_RE.search(text):
        return True
    return any(p.search(text) for p in TIME_PATTERNS)


# ----------------- Network -----------------

async def web_search(
    client: httpx.AsyncClient,
    query: str,
    count: int = SEARCH_RESULT_COUNT,
    api_key: Optional[str] = None,
    url: str = BRAVE_SEARCH_URL,
) -> Dict[str, Any]:
    """
    Query the Brave web search API once (no retries).
      Success: {"ok": True, "results": [{title, url, description}, ...], "query": ...}
      Failure: {"ok": False, "error": "..."}
    """
    key = BRAVE_API_KEY if api_key is None else api_key
    if not key:
        return _err("search API key not configured")
    params = {
        "q": query,
        "count": str(count),
        "text_decorations": "false",
        "search_lang": "en",
    }
    headers = {
        "Accept": "application/json",
        "Accept-Encoding": "gzip",
        "X-Subscription-Token": key,
    }
    try:
        r = await client.get(url, params=params, headers=headers, timeout=10.0)
        if r.status_code >= 400:
            return _err(f"search backend returned HTTP {r.status_code}")
        data = r.json()
    except httpx.HTTPError as e:
        return _err(f"web search failed: {e}")
    except ValueError as e:
        return _err(f"web search returned invalid JSON: {e}")

    web = data.get("web") if isinstance(data, dict) else None
    raw = web.get("results") if isinstance(web, dict) else None
    results: List[Dict[str, str]] = []
    for r in (raw or [])[:count]:
        if not isinstance(r, dict):
            continue
        results.append({
            "title": _strip_html(r.get("title") or ""),
            "url": r.get("url") or "",
            "description": _strip_html(r.get("description") or ""),
        })
    return _ok({"results": results, "query": query})


def format_search_context(results: List[Dict[str, str]]) -> str:
    if not results:
        return ""
    formatted = "\n\n".join(
        f"[{i}] {r.get('title', '')}\n    URL: {r.get('url', '')}\n    {r.get('description', '')}"
        for i, r in enumerate(results, start=1)
    )
    return f"\n\n--- Web Search Results ---\n{formatted}\n--- End Search Results ---\n"


class WebSearch:
    """The retrieval gate: decide, search once, format. Never raises."""

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str] = None, url: str = BRAVE_SEARCH_URL):
        self.client = client
        self.api_key = BRAVE_API_KEY if api_key is None else api_key
        self.url = url

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def context_for(self, message: str) -> Tuple[List[Dict[str, str]], str]:
        """Return (results, formatted block); both empty when search is skipped or fails."""
        if not self.enabled or not should_search_web(message):
            return [], ""
        logger.info("Performing web search for: %s", message[:120])
        res = await web_search(self.client, message, SEARCH_RESULT_COUNT, api_key=self.api_key, url=self.url)
        if not res.get("ok"):
            logger.warning("Web search skipped: %s", res.get("error"))
            return [], ""
        results = res.get("results") or []
        if results:
            logger.info("Found %d search results", len(results))
        return results, format_search_context(results)
