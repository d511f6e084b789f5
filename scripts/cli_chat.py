#!/usr/bin/env python3
import asyncio
import os
import sys

import httpx
import orjson


BASE_URL = os.getenv("CHAT_URL", "http://127.0.0.1:3000")
AUTH_TOKEN = os.getenv("CHAT_AUTH_TOKEN", "")


async def stream_chat(prompt: str, session_id: str | None = None) -> None:
    cookies = {"auth_token": AUTH_TOKEN}
    async with httpx.AsyncClient(base_url=BASE_URL, cookies=cookies, timeout=None) as client:
        if not session_id:
            r = await client.post("/api/sessions")
            if r.status_code != 200:
                print(f"HTTP {r.status_code}: {r.text}")
                return
            session_id = r.json()["sessionId"]
            print(f"[session] {session_id}")

        payload = {"sessionId": session_id, "message": prompt}
        async with client.stream("POST", "/api/chat", json=payload) as resp:
            if resp.status_code != 200:
                print(f"HTTP {resp.status_code}: {await resp.aread()}")
                return
            buffer = b""
            async for chunk in resp.aiter_bytes():
                if not chunk:
                    continue
                buffer += chunk
                while b"\n\n" in buffer:
                    raw, buffer = buffer.split(b"\n\n", 1)
                    # Each SSE record comes as lines; we only care about `data:` ones
                    for line in raw.split(b"\n"):
                        if not line.startswith(b"data: "):
                            continue
                        try:
                            evt = orjson.loads(line[len(b"data: "):])
                        except orjson.JSONDecodeError:
                            continue
                        if evt.get("type") == "meta":
                            print(f"[searched the web for: {evt.get('query')}]")
                        elif evt.get("error"):
                            print("\n[error]", evt["error"])
                        elif evt.get("done"):
                            print()
                        else:
                            sys.stdout.write(evt.get("content", ""))
                            sys.stdout.flush()


def main():
    if len(sys.argv) < 2:
        print("Usage: scripts/cli_chat.py 'your prompt here' [session-id]")
        print("Set CHAT_AUTH_TOKEN to the auth_token cookie of an approved account.")
        return
    if not AUTH_TOKEN:
        print("CHAT_AUTH_TOKEN is not set")
        return
    session_id = sys.argv[2] if len(sys.argv) >= 3 else None
    asyncio.run(stream_chat(sys.argv[1], session_id))


if __name__ == "__main__":
    main()
