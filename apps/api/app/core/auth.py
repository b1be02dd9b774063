from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from app.core.config import get_settings


@dataclass
class TokenClaims:
    sub: str
    sid: str
    expires_at: datetime


def issue_session_token(user_id: str, session_id: str, expires_at: datetime) -> str:
    settings = get_settings()
    payload = {"sub": user_id, "sid": session_id, "exp": int(expires_at.timestamp())}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_session_token(token: str) -> TokenClaims | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    session_id = payload.get("sid")
    expires_raw = payload.get("exp")
    if not isinstance(subject, str) or not isinstance(session_id, str) or not isinstance(expires_raw, (int, float)):
        return None
    return TokenClaims(
        sub=subject,
        sid=session_id,
        expires_at=datetime.fromtimestamp(expires_raw, tz=timezone.utc),
    )


def extract_session_token(connection: HTTPConnection) -> str | None:
    auth_header = connection.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.replace("Bearer ", "", 1).strip()
        if token:
            return token
    cookie_token = connection.cookies.get(get_settings().session_cookie_name)
    return cookie_token or None
