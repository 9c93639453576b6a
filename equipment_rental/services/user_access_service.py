from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import User
from services.errors import InvalidCredentials, RentalValidationError, TooManyAttempts


SESSION_TTL_SECONDS = 60 * 60 * 12
ROLES = ("Admin", "Staff")
DEFAULT_ROLE = "Staff"
MIN_PASSWORD_LENGTH = 6

AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_IP = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_IP") or "50")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")

AUTH_LOGGER = logging.getLogger("equipment_rental.auth")

_LOCK = threading.Lock()
_SESSIONS: dict[str, dict[str, Any]] = {}
_REVOKED: dict[str, float] = {}
_AUTH_ATTEMPTS_BY_IP: dict[str, list[float]] = {}
_AUTH_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def normalize_email(raw: str | None) -> str:
    return (raw or "").strip().lower()


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    if role in ROLES:
        return role
    return DEFAULT_ROLE


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def get_user_by_email(db: Session, email: str) -> User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.execute(select(User).where(func.lower(User.Email) == normalized)).scalars().first()


def upsert_user(
    db: Session,
    email: str,
    *,
    display_name: str | None = None,
    password: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
) -> User:
    normalized = normalize_email(email)
    if "@" not in normalized:
        raise RentalValidationError("A valid email address is required.")

    user = get_user_by_email(db, normalized)
    now = datetime.now()
    if user is None:
        if not password:
            raise RentalValidationError("A password is required for new users.")
        user = User(Email=normalized, DisplayName=display_name or normalized.split("@", 1)[0], CreatedAt=now)
        db.add(user)

    if display_name is not None and display_name.strip():
        user.DisplayName = display_name.strip()
    if role is not None or not user.Role:
        user.Role = _normalize_role(role)
    if is_active is not None:
        user.IsActive = bool(is_active)
    elif user.IsActive is None:
        user.IsActive = True
    if password is not None:
        trimmed = str(password).strip()
        if len(trimmed) < MIN_PASSWORD_LENGTH:
            raise RentalValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        salt = secrets.token_hex(16)
        user.PasswordSalt = salt
        user.PasswordHash = _password_hash(trimmed, salt)
    user.UpdatedAt = now
    return user


def verify_password(user: User, password: str) -> bool:
    if not user.PasswordHash or not user.PasswordSalt:
        return False
    candidate = _password_hash((password or "").strip(), user.PasswordSalt)
    return hmac.compare_digest(candidate, user.PasswordHash)


def session_payload_for(user: User) -> dict[str, Any]:
    return {
        "userID": user.UserID,
        "email": user.Email,
        "displayName": user.DisplayName,
        "role": _normalize_role(user.Role),
    }


def authenticate(db: Session, email: str, password: str) -> dict[str, Any]:
    user = get_user_by_email(db, email)
    if user is None or not user.IsActive or not verify_password(user, password):
        raise InvalidCredentials()
    return session_payload_for(user)


# Login throttling


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def check_login_guard(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _LOCK:
        lockout_until = _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            raise TooManyAttempts(max(1, int(lockout_until - now_ts)))
        if lockout_until and lockout_until <= now_ts:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)

        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts

        if len(ip_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_IP, 1):
            oldest = ip_attempts[0]
            raise TooManyAttempts(max(1, int((oldest + AUTH_ATTEMPT_WINDOW_SECONDS) - now_ts)))
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)
            raise TooManyAttempts(max(AUTH_LOCKOUT_SECONDS, 1))


def record_login_failure(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _LOCK:
        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        ip_attempts.append(now_ts)
        account_attempts.append(now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def record_login_success(account_key: str) -> None:
    with _LOCK:
        _AUTH_ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def reset_login_guard() -> None:
    with _LOCK:
        _AUTH_ATTEMPTS_BY_IP.clear()
        _AUTH_ATTEMPTS_BY_ACCOUNT.clear()
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.clear()


# Sessions


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(raw: str) -> bytes:
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def create_session(payload: dict[str, Any]) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    session_payload["nonce"] = secrets.token_hex(8)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    token = f"{encoded}.{_b64encode(signature)}"
    with _LOCK:
        _SESSIONS[token] = session_payload
    return token


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError, json.JSONDecodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None

    expires_at = float(decoded_session.get("expiresAt") or 0.0)
    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED.items()):
            if now >= revoked_exp:
                _REVOKED.pop(revoked_token, None)
        if now >= expires_at or token in _REVOKED:
            _SESSIONS.pop(token, None)
            return None
        _SESSIONS[token] = decoded_session
        return dict(decoded_session)


def remove_session(token: str | None) -> None:
    if not token:
        return
    session = get_session(token)
    with _LOCK:
        _SESSIONS.pop(token, None)
        if session:
            _REVOKED[token] = float(session.get("expiresAt") or time.time() + SESSION_TTL_SECONDS)
