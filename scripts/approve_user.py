#!/usr/bin/env python3
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chatstore import init_store  # noqa: E402


async def approve(email: str) -> int:
    store = init_store()
    try:
        user = await store.approve_user_by_email(email.strip().lower())
    finally:
        store.close()
    if user is None:
        print(f"No user with email {email}")
        return 1
    print(f"Approved {user.email} ({user.id})")
    return 0


def main():
    if len(sys.argv) != 2:
        print("Usage: scripts/approve_user.py user@example.com")
        print("Uses CHAT_DB for the database path.")
        sys.exit(2)
    sys.exit(asyncio.run(approve(sys.argv[1])))


if __name__ == "__main__":
    main()
