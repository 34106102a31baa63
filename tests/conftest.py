"""Pytest shared fixtures for the portal SDK tests."""
import json
import pathlib
import sys
import threading
from types import SimpleNamespace
from typing import Any, Optional

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import requests

from portal_sdk import sdk
from portal_sdk.config.settings import SdkSettings
from portal_sdk.core.client import RequestDispatcher
from portal_sdk.core.config_store import ConfigStore
from portal_sdk.core.state import ProcessState, set_correlation_id, state
from portal_sdk.core.tokens import TokenManager


API_URL = "http://portal-api:3001"
AUTH_URL = "http://portal-auth:3010"

BASE_GLOBALS = {
    "schema": "https",
    "externalPortalHost": "developer.example.com",
    "externalApiHost": "api.example.com",
    "internalServiceUrls": {"apiUrl": API_URL, "authServerUrl": AUTH_URL},
    "kongAdapterIgnoreList": ["correlation-id"],
    "portalApiScopes": ["read_users", "write_users"],
}


def make_response(
    status_code: int = 200,
    payload: Any = None,
    text: Optional[str] = None,
    headers: Optional[dict] = None,
    reason: Optional[str] = None,
    url: str = "",
) -> requests.Response:
    """Build a real ``requests.Response`` carrying a JSON payload or raw text."""
    resp = requests.Response()
    resp.status_code = status_code
    resp.reason = reason
    resp.url = url
    if payload is not None:
        resp._content = json.dumps(payload).encode("utf-8")
        resp.headers["Content-Type"] = "application/json; charset=utf-8"
    elif text is not None:
        resp._content = text.encode("utf-8")
        resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    else:
        resp._content = b""
    resp.encoding = "utf-8"
    resp.headers.update(headers or {})
    return resp


class FakeBackend:
    """Routes stubbed HTTP calls and records every request.

    Responses registered for a route are served in order; the last one
    repeats. A response may also be an exception instance (raised) or a
    callable receiving the request kwargs.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def add(self, method: str, url: str, *responses):
        self.routes[(method.upper(), url)] = list(responses)

    def calls_to(self, method: str, url: str):
        return [call for call in self.calls if call["method"] == method.upper() and call["url"] == url]

    def handle(self, method: str, url: str, **kwargs):
        method = method.upper()
        with self._lock:
            self.calls.append({"method": method, "url": url, **kwargs})
            queue = self.routes.get((method, url))
            if not queue:
                raise RuntimeError(f"Unexpected HTTP {method} in unit test: {url}")
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(**kwargs)
        response.url = url
        return response


# ─────────────────────────────────────────────────────────────────────────────
# Network Guard Rails
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def backend(monkeypatch):
    """Route every ``requests`` call through an in-memory backend."""
    fake = FakeBackend()

    def _stub_get(url, *args, **kwargs):
        return fake.handle("GET", url, **kwargs)

    def _stub_post(url, *args, **kwargs):
        return fake.handle("POST", url, **kwargs)

    def _stub_request(method, url, *args, **kwargs):
        return fake.handle(method, url, **kwargs)

    monkeypatch.setattr(requests, "get", _stub_get)
    monkeypatch.setattr(requests, "post", _stub_post)
    monkeypatch.setattr(requests, "request", _stub_request)
    return fake


@pytest.fixture(autouse=True)
def reset_sdk(monkeypatch):
    """Every test starts from an empty process state."""
    for var in ("PORTAL_API_URL", "PORTAL_MACHINE_SECRET", "PORTAL_AWAIT_TIMEOUT_SECONDS",
                "PORTAL_RETRY_DELAY_SECONDS", "PORTAL_REQUEST_TIMEOUT_SECONDS", "PORTAL_TOKEN_SKEW_SECONDS"):
        monkeypatch.delenv(var, raising=False)
    state.reset()
    sdk._tokens.clear()
    sdk._settings = SdkSettings()
    yield
    state.reset()
    sdk._tokens.clear()
    set_correlation_id(None)


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def globals_doc():
    return json.loads(json.dumps(BASE_GLOBALS))


def stub_identity(backend, user_id="machine-1", access_tokens=("token-1",), expires_in=3600):
    """Register machine-users and token endpoints; tokens are served in order."""
    backend.add("POST", f"{AUTH_URL}/machine-users",
                make_response(200, {"userId": user_id, "identityToken": "identity-abc"}))
    backend.add("POST", f"{AUTH_URL}/token",
                *[make_response(200, {"accessToken": token, "expiresIn": expires_in}) for token in access_tokens])


@pytest.fixture
def runtime(globals_doc, clock):
    """Isolated, initialized runtime: state, config store, token manager, dispatcher."""
    process_state = ProcessState()
    store = ConfigStore(process_state)
    store.load(globals_doc, env={})
    process_state.is_reachable = True
    tokens = TokenManager(process_state, auth_server_url=store.internal_auth_server_url,
                          machine_secret="machine-secret", clock=clock)
    dispatcher = RequestDispatcher(process_state, store, tokens)
    set_correlation_id(None)
    return SimpleNamespace(
        state=process_state,
        store=store,
        tokens=tokens,
        dispatcher=dispatcher,
        clock=clock,
    )
