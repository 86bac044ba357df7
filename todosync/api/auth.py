"""Credentials and bearer sessions for the todosync server."""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from ..state.document import now_ms
from ..state.storage import KeyValueStorage

if TYPE_CHECKING:
    from starlette.requests import Request

logger = logging.getLogger("todosync.api.auth")

PBKDF2_ITERATIONS = 120_000
KEY_LENGTH = 32
MIN_PASSWORD_LENGTH = 6
EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
SESSION_PREFIX = "session:"


def hash_password(password: str, salt: Optional[str] = None) -> Tuple[str, str]:
    """Return ``(salt, hash)`` for a password using PBKDF2-SHA256."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
        dklen=KEY_LENGTH,
    )
    return salt, digest.hex()


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not salt or not expected_hash:
        return False
    _, candidate = hash_password(password, salt)
    return secrets.compare_digest(candidate, expected_hash)


def normalize_email(email: Any) -> str:
    return email.strip().lower() if isinstance(email, str) else ""


def validate_credentials(body: Any) -> Tuple[str, str, Dict[str, str]]:
    """Validate a register/login body; returns ``(email, password, errors)``."""
    body = body if isinstance(body, dict) else {}
    email = normalize_email(body.get("email"))
    password = body.get("password") if isinstance(body.get("password"), str) else ""
    errors: Dict[str, str] = {}

    if not email or not EMAIL_PATTERN.fullmatch(email):
        errors["email"] = "Enter a valid email address"
    if len(password) < MIN_PASSWORD_LENGTH:
        errors["password"] = f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    return email, password, errors


def extract_token(request: "Request", cookie_name: str) -> Optional[str]:
    """Bearer header, then ``?token=``, then the session cookie. First match wins."""
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        token = header[len("Bearer "):].strip()
        if token:
            return token

    from_query = request.query_params.get("token", "").strip()
    if from_query:
        return from_query

    return request.cookies.get(cookie_name) or None


@dataclass
class Session:
    token: str
    email: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token, "email": self.email, "createdAt": self.created_at}


class SessionService:
    """Issues random hex tokens and expires them after ``ttl_ms``."""

    def __init__(self, storage: KeyValueStorage, ttl_ms: Optional[int] = None):
        self.storage = storage
        self.ttl_ms = ttl_ms if ttl_ms and ttl_ms > 0 else None

    def issue(self, email: str) -> Session:
        session = Session(token=secrets.token_hex(32), email=email, created_at=now_ms())
        self.storage.set(SESSION_PREFIX + session.token, session.to_dict())
        return session

    def _expired(self, created_at: int, now: int) -> bool:
        return self.ttl_ms is not None and now - created_at > self.ttl_ms

    def find_valid(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        raw = self.storage.get(SESSION_PREFIX + token)
        if not isinstance(raw, dict) or not raw.get("email"):
            return None
        created_at = int(raw.get("createdAt") or 0)
        if self._expired(created_at, now_ms()):
            logger.info("Session for %s expired", raw["email"])
            self.storage.remove(SESSION_PREFIX + token)
            return None
        return Session(token=token, email=raw["email"], created_at=created_at)

    def revoke(self, token: Optional[str]) -> None:
        if token:
            self.storage.remove(SESSION_PREFIX + token)

    def cleanup_expired(self) -> int:
        if self.ttl_ms is None:
            return 0
        now = now_ms()
        removed = 0
        for key in self.storage.keys():
            if not key.startswith(SESSION_PREFIX):
                continue
            raw = self.storage.get(key)
            created_at = int(raw.get("createdAt") or 0) if isinstance(raw, dict) else 0
            if self._expired(created_at, now):
                self.storage.remove(key)
                removed += 1
        return removed

    def count(self) -> int:
        return sum(1 for key in self.storage.keys() if key.startswith(SESSION_PREFIX))


__all__ = [
    "MIN_PASSWORD_LENGTH",
    "Session",
    "SessionService",
    "extract_token",
    "hash_password",
    "normalize_email",
    "validate_credentials",
    "verify_password",
]
