"""Session cookie dependencies for OAuth connection scoping."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request, Response

from config import settings
from services.session_store import SessionStore
from services.session_token import create_session_token, decode_session_token, new_session_id, session_ttl_seconds
from services.sessions import Session, SessionPatch, apply_patch


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionContext:
    session_id: Optional[str] = None
    session: Session = field(default_factory=Session)


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


async def get_session_context(request: Request) -> SessionContext:
    """Resolve the caller's stored session from the cookie; bad or stale cookies mean no session."""
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token:
        return SessionContext()

    try:
        session_id = decode_session_token(token)
    except ValueError as exc:
        logger.warning("Ignoring unreadable session cookie: %s", exc)
        return SessionContext()

    session = await get_session_store(request).load(session_id)
    if session is None:
        return SessionContext()
    return SessionContext(session_id=session_id, session=session)


async def commit_session(
    response: Response,
    store: SessionStore,
    context: SessionContext,
    patch: SessionPatch,
) -> Session:
    """Apply ``patch``, persist the result and refresh the session cookie on ``response``."""
    if patch.is_empty:
        return context.session

    updated = apply_patch(context.session, patch)
    session_id = context.session_id or new_session_id()
    ttl_seconds = session_ttl_seconds()
    await store.save(session_id, updated, ttl_seconds)

    issued = create_session_token(session_id)
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=issued["token"],
        max_age=issued["max_age"],
        httponly=True,
        samesite="lax",
        secure=settings.SESSION_COOKIE_SECURE,
        path="/",
    )
    return updated
