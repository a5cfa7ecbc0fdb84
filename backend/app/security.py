from __future__ import annotations

import datetime as dt

import bcrypt
import jwt

from app.config import jwt_secret

TOKEN_TTL = dt.timedelta(days=7)


def hash_password(password: str) -> str:
    # bcrypt stores algorithm + cost + salt in the resulting hash string.
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), (password_hash or "").encode("utf-8"))
    except ValueError:
        # Invalid hash format.
        return False


def create_access_token(*, user_id: int, role: str, ttl: dt.timedelta = TOKEN_TTL) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, jwt_secret(), algorithm="HS256")


def decode_access_token(token: str) -> dict:
    """Raises jwt.InvalidTokenError (incl. ExpiredSignatureError) on a bad token."""
    return jwt.decode(token, jwt_secret(), algorithms=["HS256"])


def user_id_from_token(token: str) -> int | None:
    try:
        payload = decode_access_token(token)
        return int(payload.get("sub") or 0) or None
    except (jwt.InvalidTokenError, ValueError):
        return None
