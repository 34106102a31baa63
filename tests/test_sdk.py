"""End-to-end tests of the public callback surface against the in-memory backend."""
import pytest

import portal_sdk
from portal_sdk.core.exceptions import (
    ApiError,
    AuthError,
    NotInitializedError,
    NotReadyError,
    PollTimeoutError,
    ValidationError,
)
from tests.conftest import API_URL, AUTH_URL, make_response, stub_identity

PING_URL = f"{API_URL}/ping"


class Recorder:
    """Callback that records every ``(error, result)`` delivery."""

    def __init__(self):
        self.calls = []

    def __call__(self, error, result):
        self.calls.append((error, result))

    @property
    def error(self):
        assert len(self.calls) == 1, f"expected exactly one delivery, got {self.calls}"
        return self.calls[0][0]

    @property
    def result(self):
        assert len(self.calls) == 1, f"expected exactly one delivery, got {self.calls}"
        return self.calls[0][1]


def _initialize(backend, globals_doc, **options):
    backend.add("GET", PING_URL, make_response(200, {"status": "ok"}))
    cb = Recorder()
    portal_sdk.initialize({"globals": globals_doc, "machineSecret": "machine-secret", **options}, cb)
    assert cb.error is None
    return cb.result


@pytest.fixture
def ready(backend, globals_doc):
    _initialize(backend, globals_doc)
    stub_identity(backend, user_id="machine-1", access_tokens=("token-1", "token-2"))
    cb = Recorder()
    portal_sdk.init_machine_user("portal-mailer", cb)
    assert cb.error is None
    return backend


# ─────────────────────────────────────────────────────────────────────────────
# Initialization
# ─────────────────────────────────────────────────────────────────────────────
def test_initialize_with_globals(backend, globals_doc):
    result = _initialize(backend, globals_doc)

    assert result["externalPortalHost"] == "developer.example.com"
    assert result["internalServiceUrls"]["kongAdapterUrl"] == "http://portal-kong-adapter:3002"
    assert portal_sdk.is_api_reachable()
    assert not portal_sdk.is_development_mode()
    assert portal_sdk.get_globals() == result
    assert len(portal_sdk.get_config_hash()) == 64
    assert len(backend.calls_to("GET", PING_URL)) == 1


def test_initialize_fetches_globals_when_omitted(backend, globals_doc):
    globals_doc["schema"] = "http"
    backend.add("GET", PING_URL, make_response(200))
    backend.add("GET", f"{API_URL}/globals", make_response(200, globals_doc))
    cb = Recorder()

    portal_sdk.initialize(None, cb)

    assert cb.error is None
    assert cb.result["schema"] == "http"
    assert portal_sdk.is_development_mode()
    assert portal_sdk.get_external_portal_url() == "http://developer.example.com"


def test_initialize_reports_invalid_globals(backend, globals_doc):
    del globals_doc["externalApiHost"]
    cb = Recorder()

    portal_sdk.initialize({"globals": globals_doc}, cb)

    assert isinstance(cb.error, ValidationError)
    assert cb.calls[0][1] is None
    assert not portal_sdk.is_api_reachable()
    assert backend.calls == []


@pytest.mark.parametrize("bad_value", [{"a", "b"}, b"raw", float("nan")])
def test_initialize_reports_unserializable_globals(backend, globals_doc, bad_value):
    globals_doc["extra"] = bad_value
    cb = Recorder()

    portal_sdk.initialize({"globals": globals_doc}, cb)

    assert isinstance(cb.error, ValidationError)
    assert backend.calls == []


@pytest.mark.parametrize("options", ["globals.json", ["globals"], {"globals": ["schema", "https"]}])
def test_initialize_rejects_non_mapping_input(backend, options):
    cb = Recorder()

    portal_sdk.initialize(options, cb)

    assert isinstance(cb.error, ValidationError)
    assert backend.calls == []


def test_initialize_rejects_unknown_option(backend):
    cb = Recorder()
    portal_sdk.initialize({"globalz": {}}, cb)
    assert isinstance(cb.error, ValidationError)


def test_initialize_times_out_when_api_never_answers(backend, globals_doc):
    backend.add("GET", PING_URL, make_response(503))
    cb = Recorder()

    portal_sdk.initialize(
        {"globals": globals_doc, "awaitTimeoutSeconds": 0.1, "retryDelaySeconds": 0.05}, cb
    )

    assert isinstance(cb.error, PollTimeoutError)
    assert cb.error.last_status_code == 503
    assert not portal_sdk.is_api_reachable()


def test_without_callback_returns_error_result_tuple(backend, globals_doc):
    backend.add("GET", PING_URL, make_response(200))

    error, result = portal_sdk.initialize({"globals": globals_doc})

    assert error is None
    assert result["externalApiHost"] == "api.example.com"


# ─────────────────────────────────────────────────────────────────────────────
# Machine user
# ─────────────────────────────────────────────────────────────────────────────
def test_init_machine_user_before_initialize(backend):
    cb = Recorder()
    portal_sdk.init_machine_user("portal-mailer", cb)

    assert isinstance(cb.error, NotReadyError)
    assert backend.calls == []


def test_init_machine_user_reports_malformed_expiry(backend, globals_doc):
    _initialize(backend, globals_doc)
    backend.add("POST", f"{AUTH_URL}/machine-users",
                make_response(200, {"userId": "machine-1", "identityToken": "identity-abc"}))
    backend.add("POST", f"{AUTH_URL}/token", make_response(200, {"accessToken": "t", "expiresIn": "Infinity"}))
    cb = Recorder()

    portal_sdk.init_machine_user("portal-mailer", cb)

    assert isinstance(cb.error, AuthError)
    assert portal_sdk.get_machine_user_id() is None


def test_init_machine_user_delivers_user_id(ready):
    assert portal_sdk.get_machine_user_id() == "machine-1"
    assert len(ready.calls_to("POST", f"{AUTH_URL}/machine-users")) == 1


# ─────────────────────────────────────────────────────────────────────────────
# API calls
# ─────────────────────────────────────────────────────────────────────────────
def test_api_get_delivers_parsed_body(ready):
    ready.add("GET", f"{API_URL}/users/123", make_response(200, {"id": "123", "email": "a@b.c"}))
    cb = Recorder()

    portal_sdk.api_get("users/123", None, cb)

    assert cb.calls == [(None, {"id": "123", "email": "a@b.c"})]
    headers = ready.calls_to("GET", f"{API_URL}/users/123")[0]["headers"]
    assert headers["Authorization"] == "Bearer token-1"


def test_api_get_shorthand_without_user_id(ready):
    ready.add("GET", f"{API_URL}/applications", make_response(200, []))
    cb = Recorder()

    portal_sdk.api_get("applications", cb)

    assert cb.calls == [(None, [])]
    assert "X-Authenticated-UserId" not in ready.calls[-1]["headers"]


def test_api_get_http_error(ready):
    ready.add("GET", f"{API_URL}/users/404", make_response(404, {"message": "not found"}))
    cb = Recorder()

    portal_sdk.api_get("users/404", None, cb)

    assert isinstance(cb.error, ApiError)
    assert cb.error.to_dict() == {"statusCode": 404, "message": "not found", "cause": "http"}
    assert cb.calls[0][1] is None


def test_api_post_as_user(ready):
    ready.add("POST", f"{API_URL}/applications", make_response(201, {"id": "app1"}))
    cb = Recorder()

    portal_sdk.api_post("applications", {"id": "app1"}, "user-7", cb)

    assert cb.result == {"id": "app1"}
    assert ready.calls[-1]["headers"]["X-Authenticated-UserId"] == "user-7"


def test_api_calls_before_initialize_are_not_ready(backend):
    cb = Recorder()
    portal_sdk.api_delete("users/123", cb)

    assert isinstance(cb.error, NotReadyError)
    assert backend.calls == []


def test_callback_exceptions_propagate(ready):
    ready.add("GET", f"{API_URL}/ping", make_response(200))

    def boom(error, result):
        raise RuntimeError("callback failed")

    with pytest.raises(RuntimeError):
        portal_sdk.api_get("ping", boom)


# ─────────────────────────────────────────────────────────────────────────────
# Awaiting services
# ─────────────────────────────────────────────────────────────────────────────
def test_await_url_delivers_body(backend):
    backend.add("GET", "http://mailer:3003/ping", make_response(200, {"ok": True}))
    cb = Recorder()

    portal_sdk.await_url("http://mailer:3003/ping", {"retryDelaySeconds": 0.05, "timeoutSeconds": 1}, cb)

    assert cb.calls == [(None, {"ok": True})]


def test_await_url_timeout(backend):
    backend.add("GET", "http://mailer:3003/ping", make_response(500))
    cb = Recorder()

    portal_sdk.await_url("http://mailer:3003/ping", {"retryDelaySeconds": 0.05, "maxTries": 2}, cb)

    assert isinstance(cb.error, PollTimeoutError)
    assert cb.error.attempts == 2


def test_await_url_invalid_options(backend):
    cb = Recorder()
    portal_sdk.await_url("http://mailer:3003/ping", {"retryDelaySeconds": 0}, cb)

    assert isinstance(cb.error, ValidationError)
    assert backend.calls == []


def test_await_kong_adapter_uses_configured_url(backend, globals_doc):
    globals_doc["internalServiceUrls"]["kongAdapterUrl"] = "http://adapter:4000/"
    _initialize(backend, globals_doc)
    backend.add("GET", "http://adapter:4000/ping", make_response(200, text="pong"))
    cb = Recorder()

    portal_sdk.await_kong_adapter({"retryDelaySeconds": 0.05}, cb)

    assert cb.calls == [(None, "pong")]


def test_await_kong_adapter_before_initialize(backend):
    cb = Recorder()
    portal_sdk.await_kong_adapter(None, cb)

    assert isinstance(cb.error, NotInitializedError)


# ─────────────────────────────────────────────────────────────────────────────
# Information retrieval
# ─────────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("getter", [
    portal_sdk.get_globals,
    portal_sdk.get_config_hash,
    portal_sdk.get_schema,
    portal_sdk.get_external_api_url,
    portal_sdk.get_internal_api_url,
    portal_sdk.get_api_key_header,
])
def test_getters_before_initialize(getter):
    with pytest.raises(NotInitializedError):
        getter()


def test_getters_after_initialize(backend, globals_doc):
    _initialize(backend, globals_doc)

    assert portal_sdk.get_schema() == "https"
    assert portal_sdk.get_external_api_url() == "https://api.example.com"
    assert portal_sdk.get_internal_kong_admin_url() == "http://kong:8001"
    assert portal_sdk.get_internal_url("authServerUrl") == AUTH_URL
    assert portal_sdk.get_portal_api_scope() == "read_users write_users"
    assert portal_sdk.get_kong_adapter_ignore_list() == ["correlation-id"]
    assert portal_sdk.get_api_key_header() == "X-ApiKey"
