"""
OAuth connection router: initiate, callback, disconnect, status and refresh.
"""

import logging
from typing import Awaitable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from routers.auth_scope import SessionContext, commit_session, get_session_context, get_session_store
from routers.envelope import error_response, success_response
from routers.rate_limit import rate_limit
from services.connection_policy import ConnectionPolicy
from services.errors import InternalError, OAuthError
from services.oauth_flow import FlowResult, OAuthFlowService, resolve_base_url
from services.session_store import SessionStore


logger = logging.getLogger(__name__)

router = APIRouter()


def get_flow_service(request: Request) -> OAuthFlowService:
    return OAuthFlowService(request.app.state.providers, ConnectionPolicy())


async def _run_flow(call: Awaitable[FlowResult], failure_message: str) -> FlowResult:
    try:
        return await call
    except OAuthError:
        raise
    except Exception as exc:
        logger.exception(failure_message)
        raise InternalError(failure_message) from exc


async def _render(result: FlowResult, store: SessionStore, context: SessionContext) -> JSONResponse:
    if result.error is not None:
        response = error_response(result.error)
    else:
        response = success_response(result.data, result.message)
    await commit_session(response, store, context, result.patch)
    return response


@router.get("/initiate", dependencies=[Depends(rate_limit("oauth_initiate"))])
async def initiate_oauth(
    request: Request,
    platform: Optional[str] = None,
    context: SessionContext = Depends(get_session_context),
    store: SessionStore = Depends(get_session_store),
    flow: OAuthFlowService = Depends(get_flow_service),
):
    """Start an OAuth authorization for ``platform`` and return the provider URL."""
    result = await _run_flow(
        flow.initiate(context.session, platform, resolve_base_url(request.headers)),
        "Failed to initiate OAuth flow",
    )
    return await _render(result, store, context)


@router.get("/callback", dependencies=[Depends(rate_limit("oauth_callback"))])
async def oauth_callback(
    request: Request,
    platform: Optional[str] = None,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    context: SessionContext = Depends(get_session_context),
    store: SessionStore = Depends(get_session_store),
    flow: OAuthFlowService = Depends(get_flow_service),
):
    """Complete the provider redirect: verify state, exchange the code, store the connection."""
    result = await _run_flow(
        flow.callback(
            context.session,
            platform=platform,
            code=code,
            state=state,
            error=error,
            base_url=resolve_base_url(request.headers),
        ),
        "OAuth callback processing failed",
    )
    return await _render(result, store, context)


@router.post("/disconnect")
async def disconnect_platform(
    platform: Optional[str] = None,
    context: SessionContext = Depends(get_session_context),
    store: SessionStore = Depends(get_session_store),
    flow: OAuthFlowService = Depends(get_flow_service),
):
    result = await _run_flow(flow.disconnect(context.session, platform), "Failed to disconnect platform")
    return await _render(result, store, context)


@router.get("/status")
async def connection_status(
    context: SessionContext = Depends(get_session_context),
    store: SessionStore = Depends(get_session_store),
    flow: OAuthFlowService = Depends(get_flow_service),
):
    result = await _run_flow(flow.status(context.session), "Failed to retrieve platform status")
    return await _render(result, store, context)


@router.post("/refresh")
async def refresh_platform_tokens(
    platform: Optional[str] = None,
    context: SessionContext = Depends(get_session_context),
    store: SessionStore = Depends(get_session_store),
    flow: OAuthFlowService = Depends(get_flow_service),
):
    result = await _run_flow(flow.refresh(context.session, platform), "Failed to refresh platform tokens")
    return await _render(result, store, context)
