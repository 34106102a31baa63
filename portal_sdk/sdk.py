"""Public entry points of the portal SDK.

Every entry point taking a ``callback`` delivers ``callback(error, result)``:
``error`` is None on success, otherwise a ``PortalError`` and ``result`` is
None. SDK errors are never raised from these functions. When no callback is
given, the ``(error, result)`` tuple is returned instead.

The SDK is a process-wide singleton: one configuration, one machine
identity, one token cache per process.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Mapping, Optional, Tuple, Union

import requests

from portal_sdk.config.settings import SdkSettings, load_settings
from portal_sdk.core.client import RequestDispatcher, parse_response_body
from portal_sdk.core.config_store import ConfigStore
from portal_sdk.core.exceptions import ApiError, NotReadyError, PortalError, ValidationError
from portal_sdk.core.poller import AwaitOptions, poll_until_ready
from portal_sdk.core.state import get_correlation_id, set_correlation_id, state
from portal_sdk.core.tokens import TokenManager

logger = logging.getLogger(__name__)

Callback = Callable[[Optional[PortalError], Any], Any]

PING_PATH = "ping"
GLOBALS_PATH = "globals"

_OPTION_ALIASES = {
    "apiUrl": "api_url",
    "machineSecret": "machine_secret",
    "awaitTimeoutSeconds": "await_timeout_seconds",
    "retryDelaySeconds": "retry_delay_seconds",
}


@dataclass
class InitOptions:
    """Options for ``initialize``; unset values fall back to environment settings.

    Attributes:
        globals: Globals document; fetched from the API when omitted
        env: Variables used to resolve ``${VAR}`` references (default os.environ)
        api_url: Portal API URL used when the globals do not name one
        machine_secret: Shared secret for the machine identity exchange
        await_timeout_seconds: How long to wait for the API to answer
        retry_delay_seconds: Delay between reachability attempts
    """
    globals: Optional[Mapping[str, Any]] = None
    env: Optional[Mapping[str, str]] = None
    api_url: Optional[str] = None
    machine_secret: Optional[str] = None
    await_timeout_seconds: Optional[float] = None
    retry_delay_seconds: Optional[float] = None
    settings: Optional[SdkSettings] = field(default=None, repr=False)

    @classmethod
    def from_value(cls, options: Union["InitOptions", Mapping[str, Any], None]) -> "InitOptions":
        if isinstance(options, InitOptions):
            return options
        if options is not None and not isinstance(options, Mapping):
            raise ValidationError(f"Initialize options must be a mapping, got {type(options).__name__}")
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in (options or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown initialize option '{key}'")
            values[name] = value
        return cls(**values)


# Process-wide singletons
_settings: SdkSettings = SdkSettings()
_config_store = ConfigStore(state)
_tokens = TokenManager(state, auth_server_url=lambda: _config_store.internal_auth_server_url())
_dispatcher = RequestDispatcher(state, _config_store, _tokens)


def _deliver(callback: Optional[Callback], error: Optional[PortalError], result: Any) -> Any:
    if error is not None:
        result = None
    if callback is None:
        return error, result
    return callback(error, result)


def _split_user_id(user_id: Any, callback: Optional[Callback]) -> Tuple[Optional[str], Optional[Callback]]:
    """Allow ``api_get(path, callback)`` as shorthand for ``api_get(path, None, callback)``."""
    if callback is None and callable(user_id):
        return None, user_id
    return user_id, callback


def _with_default_api_url(document: Mapping[str, Any], api_url: str) -> dict:
    if not isinstance(document, Mapping):
        raise ValidationError(f"Globals must be a mapping, got {type(document).__name__}")
    document = dict(document)
    urls = document.get("internalServiceUrls")
    urls = dict(urls) if isinstance(urls, Mapping) else {}
    urls.setdefault("apiUrl", api_url)
    document["internalServiceUrls"] = urls
    return document


def _fetch_remote_globals(api_url: str) -> Mapping[str, Any]:
    url = f"{api_url}/{GLOBALS_PATH}"
    try:
        resp = requests.get(url, headers={"User-Agent": _settings.user_agent}, timeout=_settings.request_timeout_seconds)
    except requests.RequestException as e:
        raise ApiError("network", f"{type(e).__name__}: {e}", endpoint=url) from e
    body = parse_response_body(resp)
    if resp.status_code != 200 or not isinstance(body, Mapping):
        raise ApiError("http", f"Could not retrieve globals (status {resp.status_code})",
                       status_code=resp.status_code, endpoint=url, body=body)
    return body


# ─────────────────────────────────────────────────────────────────────────────
# Initialization
# ─────────────────────────────────────────────────────────────────────────────
def _initialize(opts: InitOptions) -> dict:
    global _settings
    settings = opts.settings or load_settings()
    api_url = (opts.api_url or settings.api_url).rstrip("/")

    # Resolve configuration first so a bad document leaves prior state intact
    if opts.globals is not None:
        _config_store.load(_with_default_api_url(opts.globals, api_url), env=opts.env)
        api_url = _config_store.internal_api_url()

    _settings = settings
    state.is_reachable = False
    state.machine_user_id = None
    _tokens.clear()
    _tokens.machine_secret = opts.machine_secret if opts.machine_secret is not None else settings.machine_secret
    _tokens.skew_seconds = settings.token_skew_seconds
    _tokens.request_timeout = settings.request_timeout_seconds
    _dispatcher.request_timeout = settings.request_timeout_seconds
    _dispatcher.user_agent = settings.user_agent

    await_options = AwaitOptions.from_value(
        None,
        timeout_seconds=opts.await_timeout_seconds or settings.await_timeout_seconds,
        retry_delay_seconds=opts.retry_delay_seconds or settings.retry_delay_seconds,
        request_timeout_seconds=settings.request_timeout_seconds,
    )
    logger.info(f"Waiting for portal API at {api_url}")
    poll_until_ready(f"{api_url}/{PING_PATH}", await_options)

    if opts.globals is None:
        _config_store.load(_with_default_api_url(_fetch_remote_globals(api_url), api_url), env=opts.env)

    state.is_reachable = True
    logger.info(f"Portal API reachable; config hash {state.config_hash}")
    return _config_store.get().to_dict()


def initialize(options: Union[InitOptions, Mapping[str, Any], None] = None, callback: Optional[Callback] = None):
    """Initialize the SDK: load globals, then wait for the portal API to answer.

    Delivers the resolved globals document on success.
    """
    try:
        globals_doc = _initialize(InitOptions.from_value(options))
    except PortalError as e:
        logger.error(f"SDK initialization failed: {e}")
        return _deliver(callback, e, None)
    return _deliver(callback, None, globals_doc)


def is_api_reachable() -> bool:
    return state.is_reachable


def is_development_mode() -> bool:
    """True when the configured schema is plain ``http``."""
    return state.is_development_mode


def init_machine_user(service_id: str, callback: Optional[Callback] = None):
    """Establish the machine identity for ``service_id``; delivers the machine user id."""
    try:
        if not _config_store.is_loaded or not state.is_reachable:
            raise NotReadyError("init_machine_user() requires a successful initialize()")
        token = _tokens.acquire(service_id)
        state.machine_user_id = token.subject_user_id
    except PortalError as e:
        logger.error(f"Machine user initialization failed: {e}")
        return _deliver(callback, e, None)
    return _deliver(callback, None, state.machine_user_id)


def await_url(url: str, options: Union[AwaitOptions, Mapping[str, Any], None] = None,
              callback: Optional[Callback] = None):
    """Wait until ``url`` answers with the expected status; delivers its body."""
    try:
        opts = AwaitOptions.from_value(
            options,
            retry_delay_seconds=_settings.retry_delay_seconds,
            timeout_seconds=_settings.await_timeout_seconds,
        )
        _, body = poll_until_ready(url, opts)
    except PortalError as e:
        return _deliver(callback, e, None)
    return _deliver(callback, None, body)


def await_kong_adapter(options: Union[AwaitOptions, Mapping[str, Any], None] = None,
                       callback: Optional[Callback] = None):
    """Wait for the Kong adapter's ping endpoint."""
    try:
        url = f"{_config_store.internal_kong_adapter_url()}/{PING_PATH}"
    except PortalError as e:
        return _deliver(callback, e, None)
    return await_url(url, options, callback)


# ─────────────────────────────────────────────────────────────────────────────
# Generic API calls
# ─────────────────────────────────────────────────────────────────────────────
def _api_call(method: str, url_path: str, body: Any, user_id: Optional[str], callback: Optional[Callback]):
    try:
        result = _dispatcher.send(method, url_path, body=body, impersonated_user_id=user_id)
    except PortalError as e:
        logger.debug(f"{method} {url_path} failed: {e}")
        return _deliver(callback, e, None)
    return _deliver(callback, None, result)


def api_get(url_path: str, user_id: Optional[str] = None, callback: Optional[Callback] = None):
    user_id, callback = _split_user_id(user_id, callback)
    return _api_call("GET", url_path, None, user_id, callback)


def api_post(url_path: str, body: Any = None, user_id: Optional[str] = None, callback: Optional[Callback] = None):
    user_id, callback = _split_user_id(user_id, callback)
    return _api_call("POST", url_path, body, user_id, callback)


def api_put(url_path: str, body: Any = None, user_id: Optional[str] = None, callback: Optional[Callback] = None):
    user_id, callback = _split_user_id(user_id, callback)
    return _api_call("PUT", url_path, body, user_id, callback)


def api_patch(url_path: str, body: Any = None, user_id: Optional[str] = None, callback: Optional[Callback] = None):
    user_id, callback = _split_user_id(user_id, callback)
    return _api_call("PATCH", url_path, body, user_id, callback)


def api_delete(url_path: str, user_id: Optional[str] = None, callback: Optional[Callback] = None):
    user_id, callback = _split_user_id(user_id, callback)
    return _api_call("DELETE", url_path, None, user_id, callback)


# ─────────────────────────────────────────────────────────────────────────────
# Information retrieval
# ─────────────────────────────────────────────────────────────────────────────
def get_globals() -> dict:
    """Return the resolved globals document."""
    return _config_store.get().to_dict()


def get_config_hash() -> str:
    return _config_store.hash()


def get_schema() -> str:
    return _config_store.schema()


def get_external_portal_host() -> str:
    return _config_store.external_portal_host()


def get_external_portal_url() -> str:
    return _config_store.external_portal_url()


def get_external_api_host() -> str:
    return _config_store.external_api_host()


def get_external_api_url() -> str:
    return _config_store.external_api_url()


def get_internal_api_url() -> str:
    return _config_store.internal_api_url()


def get_internal_portal_url() -> str:
    return _config_store.internal_portal_url()


def get_internal_kong_admin_url() -> str:
    return _config_store.internal_kong_admin_url()


def get_internal_kong_adapter_url() -> str:
    return _config_store.internal_kong_adapter_url()


def get_internal_mailer_url() -> str:
    return _config_store.internal_mailer_url()


def get_internal_chatbot_url() -> str:
    return _config_store.internal_chatbot_url()


def get_internal_url(property_name: str) -> str:
    return _config_store.internal_url(property_name)


def get_portal_api_scope() -> str:
    return _config_store.portal_api_scope()


def get_api_key_header() -> str:
    return _config_store.api_key_header()


def get_kong_adapter_ignore_list() -> list[str]:
    return _config_store.kong_adapter_ignore_list()


def get_machine_user_id() -> Optional[str]:
    return state.machine_user_id


__all__ = [
    "InitOptions",
    "initialize",
    "is_api_reachable",
    "is_development_mode",
    "init_machine_user",
    "await_url",
    "await_kong_adapter",
    "api_get",
    "api_post",
    "api_put",
    "api_patch",
    "api_delete",
    "get_globals",
    "get_config_hash",
    "get_schema",
    "get_external_portal_host",
    "get_external_portal_url",
    "get_external_api_host",
    "get_external_api_url",
    "get_internal_api_url",
    "get_internal_portal_url",
    "get_internal_kong_admin_url",
    "get_internal_kong_adapter_url",
    "get_internal_mailer_url",
    "get_internal_chatbot_url",
    "get_internal_url",
    "get_portal_api_scope",
    "get_api_key_header",
    "get_kong_adapter_ignore_list",
    "get_machine_user_id",
    "get_correlation_id",
    "set_correlation_id",
]
