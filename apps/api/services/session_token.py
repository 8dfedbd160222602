"""Signed session cookie codec and stored-session serialization.

The cookie is an HS256 JWT that only carries an opaque session id (``sid``).
The session itself lives in the session store; provider tokens stored under
``connectedPlatforms`` are Fernet-encrypted before they are written there.
"""

import copy
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.crypto import TokenDecryptionError, decrypt_token, encrypt_token
from services.sessions import Session


SESSION_TOKEN_TYPE = "adinsights_session"
SESSION_ID_BYTES = 32
_ENCRYPTED_TOKEN_FIELDS = ("access_token", "refresh_token")


def new_session_id() -> str:
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def session_ttl_seconds(expires_days: Optional[int] = None) -> int:
    ttl_days = int(expires_days or settings.SESSION_DURATION_DAYS or 7)
    return max(ttl_days, 1) * 24 * 60 * 60


def _transform_connection_tokens(claims: Dict[str, Any], transform) -> Dict[str, Any]:
    result = copy.deepcopy(claims)
    for connection in (result.get("connectedPlatforms") or {}).values():
        tokens = connection.get("account_tokens") if isinstance(connection, dict) else None
        if not isinstance(tokens, dict):
            continue
        for field_name in _ENCRYPTED_TOKEN_FIELDS:
            tokens[field_name] = transform(str(tokens.get(field_name) or ""))
    return result


def serialize_session(session: Session) -> Dict[str, Any]:
    """Session claims as stored server-side, with provider tokens encrypted."""
    return _transform_connection_tokens(session.to_claims(), encrypt_token)


def deserialize_session(payload: Dict[str, Any]) -> Session:
    try:
        claims = _transform_connection_tokens(payload, decrypt_token)
    except TokenDecryptionError as exc:
        raise ValueError("Session tokens could not be decrypted.") from exc
    return Session.from_claims(claims)


def create_session_token(session_id: str, expires_days: Optional[int] = None) -> Dict[str, Any]:
    """Create a signed session cookie value that references ``session_id``."""
    now = datetime.now(timezone.utc)
    max_age = session_ttl_seconds(expires_days)
    expires_at = now + timedelta(seconds=max_age)

    claims = {
        "sid": session_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    token = jwt.encode(claims, settings.SESSION_SECRET, algorithm=settings.SESSION_ALGORITHM)
    return {
        "token": token,
        "expires_at": int(expires_at.timestamp()),
        "max_age": max_age,
    }


def decode_session_token(token: str) -> str:
    """Decode and validate a signed session cookie, returning its session id."""
    try:
        payload = jwt.decode(token, settings.SESSION_SECRET, algorithms=[settings.SESSION_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    token_type = str(payload.get("type", "")).strip()
    if token_type != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")

    session_id = str(payload.get("sid") or "").strip()
    if not session_id:
        raise ValueError("Session token has no session id.")
    return session_id
