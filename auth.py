"""Accounts: password hashing, signup/login/logout and the auth cookie."""
from __future__ import annotations

import os
import hmac
import hashlib
import secrets
import datetime as _dt
from dataclasses import dataclass
from typing import Optional, Union

from chatstore import ChatStore, User

TOKEN_EXPIRY_DAYS = 7
COOKIE_NAME = "auth_token"
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "0").lower() in ("1", "true", "yes")

PASSWORD_HASH_ALGORITHM = "sha256"
PASSWORD_PBKDF2_ITERATIONS = int(os.getenv("PASSWORD_PBKDF2_ITERATIONS", "310000"))
PASSWORD_SALT_BYTES = 16
PASSWORD_HASH_SEPARATOR = "$"
MIN_PASSWORD_LENGTH = 8


def hash_password(plaintext: str, iterations: int = PASSWORD_PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(PASSWORD_SALT_BYTES)
    derived = hashlib.pbkdf2_hmac(PASSWORD_HASH_ALGORITHM, plaintext.encode("utf-8"), salt, iterations)
    return PASSWORD_HASH_SEPARATOR.join(
        [PASSWORD_HASH_ALGORITHM, str(iterations), salt.hex(), derived.hex()]
    )


def verify_password(plaintext: str, stored: str) -> bool:
    try:
        algo, iterations_str, salt_hex, hash_hex = stored.split(PASSWORD_HASH_SEPARATOR)
        iterations = int(iterations_str)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(hash_hex)
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac(algo, plaintext.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(candidate, expected)


def generate_token() -> str:
    return secrets.token_hex(32)


@dataclass
class AuthResult:
    user: User
    token: str


@dataclass
class AuthError:
    error: str


async def _issue_token(store: ChatStore, user: User) -> str:
    token = generate_token()
    expires_at = _dt.datetime.now(_dt.timezone.utc) + _dt.timedelta(days=TOKEN_EXPIRY_DAYS)
    await store.create_auth_token(user.id, token, expires_at)
    return token


async def signup(
    store: ChatStore,
    email: str,
    password: str,
    name: Optional[str] = None,
    *,
    iterations: int = PASSWORD_PBKDF2_ITERATIONS,
) -> Union[AuthResult, AuthError]:
    email = (email or "").strip().lower()
    if await store.get_user_by_email(email):
        return AuthError("Email already registered")
    if "@" not in email or len(email) < 5:
        return AuthError("Invalid email address")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        return AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    user = await store.create_user(email, hash_password(password, iterations), (name or "").strip() or None)
    return AuthResult(user, await _issue_token(store, user))


async def login(store: ChatStore, email: str, password: str) -> Union[AuthResult, AuthError]:
    user = await store.get_user_by_email((email or "").strip().lower())
    if user is None or not verify_password(password or "", user.password_hash):
        return AuthError("Invalid email or password")
    return AuthResult(user, await _issue_token(store, user))


async def logout(store: ChatStore, token: str) -> None:
    await store.delete_auth_token(token)


async def validate_token(store: ChatStore, token: Optional[str]) -> Optional[User]:
    if not token:
        return None
    return await store.get_user_by_token(token)


def auth_cookie_kwargs(token: str) -> dict:
    """Keyword arguments for Response.set_cookie."""
    return {
        "key": COOKIE_NAME,
        "value": token,
        "max_age": TOKEN_EXPIRY_DAYS * 24 * 60 * 60,
        "path": "/",
        "httponly": True,
        "samesite": "strict",
        "secure": COOKIE_SECURE,
    }
