from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qs

import httpx
import pytest

from config import Settings
from main import app
from routers import rate_limit
from services.session_store import InMemorySessionStore
from services.session_token import create_session_token, decode_session_token, new_session_id, session_ttl_seconds
from services.sessions import Session


TEST_PROVIDER_SETTINGS = {
    "FACEBOOK_APP_ID": "fb-app-id",
    "FACEBOOK_APP_SECRET": "fb-app-secret",
    "TWITTER_CLIENT_ID": "tw-client-id",
    "TWITTER_CLIENT_SECRET": "tw-client-secret",
    "AMAZON_CLIENT_ID": "amzn-client-id",
    "AMAZON_CLIENT_SECRET": "amzn-client-secret",
}

StubbedResponse = Union[httpx.Response, Exception]


class ProviderStub:
    """Routes outbound provider calls by ``(method, url without query)`` to canned responses.

    When several responses are queued for one route they are served in order and
    the last one repeats.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], List[StubbedResponse]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, *responses: StubbedResponse) -> None:
        self.routes[(method.upper(), url)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        queued = self.routes.get(key)
        if not queued:
            return httpx.Response(404, json={"error": f"unexpected call {key}"})
        response = queued.pop(0) if len(queued) > 1 else queued[0]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls_to(self, url: str) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if f"{request.url.scheme}://{request.url.host}{request.url.path}" == url
        ]


def form_of(request: httpx.Request) -> Dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


async def cookie_header(session: Session) -> Dict[str, str]:
    """Store ``session`` in the app's session store and return a cookie referencing it."""
    session_id = new_session_id()
    await app.state.session_store.save(session_id, session, session_ttl_seconds())
    return {"cookie": f"session={create_session_token(session_id)['token']}"}


async def session_from(response: httpx.Response) -> Optional[Session]:
    token = response.cookies.get("session")
    if not token:
        return None
    return await app.state.session_store.load(decode_session_token(token))


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def provider_settings() -> Settings:
    return Settings(**TEST_PROVIDER_SETTINGS)


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture(autouse=True)
def in_memory_session_store():
    previous = app.state.session_store
    app.state.session_store = InMemorySessionStore()
    yield app.state.session_store
    app.state.session_store = previous
