from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

import jwt
from fastapi import Depends, HTTPException, Request

from app.core.settings import settings

logger = logging.getLogger(__name__)

SESSION_ALGORITHM = "HS256"
SESSION_AUDIENCE = "admin-panel"


@dataclass(frozen=True)
class CurrentAdmin:
    email: str
    session_id: str
    expires_at: datetime


def _normalize_email(value: str | None) -> str:
    return str(value or "").strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_admin_email(email: str) -> bool:
    normalized = _normalize_email(email)
    if not normalized:
        return False
    return normalized in (settings.admin_emails or set())


def _get_request_ip(request: Request) -> str | None:
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    xri = (request.headers.get("x-real-ip") or "").strip()
    if xri:
        return xri
    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client else None
    if host:
        return str(host).strip()
    return None


def get_client_ip(request: Request) -> str:
    """Address of the connecting peer; forwarded headers only count behind a trusted proxy."""
    client = getattr(request, "client", None)
    peer = str(getattr(client, "host", "") or "").strip()
    if peer and peer.lower() in (settings.trusted_proxies or set()):
        return _get_request_ip(request) or peer
    return peer or "unknown"


def login_attempt_keys(request: Request, email: str | None) -> list[str]:
    keys = [f"ip:{get_client_ip(request)}"]
    normalized = _normalize_email(email)
    if normalized:
        keys.append(f"email:{normalized}")
    return keys


def _matches(provided: str | None, expected: str | None) -> bool:
    provided_b = str(provided or "").encode("utf-8")
    if not expected:
        secrets.compare_digest(provided_b, provided_b)
        return False
    return secrets.compare_digest(provided_b, expected.encode("utf-8"))


def verify_admin_credentials(email: str | None, password: str | None, otp_code: str | None) -> bool:
    # Evaluate every factor so timing does not reveal which one failed.
    email_ok = _matches(_normalize_email(email), settings.admin_email)
    password_ok = _matches(password, settings.admin_password)
    otp_ok = _matches(str(otp_code or "").strip(), settings.admin_otp_code)
    return email_ok and password_ok and otp_ok


@dataclass
class _Attempts:
    failures: int
    window_expires_at: float
    locked_until: float = 0.0


class LoginAttemptTracker:
    """Counts failed logins per client and locks the client out past a threshold."""

    def __init__(self, *, max_failures: int = 5, lockout_s: int = 900, max_items: int = 10000) -> None:
        self._max_failures = max(1, int(max_failures or 1))
        self._lockout_s = max(1, int(lockout_s or 1))
        self._max_items = max(1, int(max_items or 1))
        self._items: dict[str, _Attempts] = {}
        self._lock = threading.Lock()

    def locked_for(self, key: str) -> int:
        now = time.time()
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return 0
            if entry.locked_until > now:
                return int(entry.locked_until - now) + 1
            if entry.window_expires_at <= now:
                self._items.pop(key, None)
            return 0

    def record_failure(self, key: str) -> int:
        now = time.time()
        with self._lock:
            entry = self._items.get(key)
            if entry is None or entry.window_expires_at <= now:
                self._evict_if_needed(now)
                entry = _Attempts(failures=0, window_expires_at=now + self._lockout_s)
                self._items[key] = entry
            entry.failures += 1
            if entry.failures >= self._max_failures:
                entry.locked_until = now + self._lockout_s
                entry.window_expires_at = entry.locked_until
            return entry.failures

    def reset(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def _evict_if_needed(self, now: float) -> None:
        if len(self._items) < self._max_items:
            return
        for k in list(self._items.keys()):
            if self._items[k].window_expires_at <= now:
                self._items.pop(k, None)
        while len(self._items) >= self._max_items and self._items:
            self._items.pop(next(iter(self._items)), None)


login_attempts = LoginAttemptTracker(
    max_failures=settings.login_max_failures,
    lockout_s=settings.login_lockout_minutes * 60,
)


def issue_session_token(email: str, now: datetime | None = None) -> tuple[str, datetime]:
    now = now or _utcnow()
    expires_at = now + timedelta(minutes=settings.session_ttl_minutes)
    payload = {
        "sub": _normalize_email(email),
        "jti": uuid4().hex,
        "aud": SESSION_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(payload, settings.resolved_session_secret(), algorithm=SESSION_ALGORITHM)
    return token, expires_at


def decode_session_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(
            token,
            settings.resolved_session_secret(),
            algorithms=[SESSION_ALGORITHM],
            audience=SESSION_AUDIENCE,
            options={"require": ["exp", "sub", "jti"]},
        )
        return dict(payload)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid session")


def _get_session_token(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        token = auth.split(" ", 1)[1].strip()
        if token:
            return token
    cookie = (request.cookies.get(settings.session_cookie_name) or "").strip()
    return cookie or None


def get_current_admin(request: Request) -> CurrentAdmin:
    token = _get_session_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    claims = decode_session_token(token)
    return CurrentAdmin(
        email=_normalize_email(claims.get("sub")),
        session_id=str(claims.get("jti") or ""),
        expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
    )


def require_admin(admin: CurrentAdmin = Depends(get_current_admin)) -> CurrentAdmin:
    if not _is_admin_email(admin.email):
        logger.warning("security.admin.forbidden email=%s", admin.email)
        raise HTTPException(status_code=403, detail="Admin access required")
    return admin
