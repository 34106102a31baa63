"""Python client runtime for the API portal management API.

This package resolves the deployment's global configuration, establishes a
machine (service account) identity, waits for dependent services and
dispatches authenticated calls against the portal API.

Architecture:
- config/settings.py: Environment and /run/secrets settings
- core/state.py: Process-wide state (reachability, correlation id, token)
- core/config_store.py: Resolved globals, config hash, derived URLs
- core/tokens.py: Machine identity exchange and token refresh
- core/poller.py: Wait for a URL to answer
- core/client.py: Authenticated request dispatch
- api/middleware.py: Flask correlation id middleware
- sdk.py: Callback-style public entry points

Usage:
    import portal_sdk

    def on_ready(err, globals_doc):
        if err:
            raise SystemExit(str(err))
        portal_sdk.init_machine_user("portal-mailer", on_machine_user)

    portal_sdk.initialize({"globals": globals_doc}, on_ready)

    portal_sdk.api_get("users/123", None, lambda err, user: print(err or user))
"""
from .sdk import (
    InitOptions,
    initialize,
    is_api_reachable,
    is_development_mode,
    init_machine_user,
    await_url,
    await_kong_adapter,
    api_get,
    api_post,
    api_put,
    api_patch,
    api_delete,
    get_globals,
    get_config_hash,
    get_schema,
    get_external_portal_host,
    get_external_portal_url,
    get_external_api_host,
    get_external_api_url,
    get_internal_api_url,
    get_internal_portal_url,
    get_internal_kong_admin_url,
    get_internal_kong_adapter_url,
    get_internal_mailer_url,
    get_internal_chatbot_url,
    get_internal_url,
    get_portal_api_scope,
    get_api_key_header,
    get_kong_adapter_ignore_list,
    get_machine_user_id,
    get_correlation_id,
    set_correlation_id,
)
from .core.exceptions import (
    PortalError,
    ValidationError,
    NotInitializedError,
    NotReadyError,
    AuthError,
    PollTimeoutError,
    ApiError,
)
from .core.poller import AwaitOptions
from .api.middleware import correlation_id_handler

__version__ = "0.1.0"

__all__ = [
    # Initialization
    "InitOptions",
    "initialize",
    "is_api_reachable",
    "is_development_mode",
    "init_machine_user",
    "await_url",
    "await_kong_adapter",
    "AwaitOptions",

    # API calls
    "api_get",
    "api_post",
    "api_put",
    "api_patch",
    "api_delete",

    # Globals
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

    # Correlation
    "get_correlation_id",
    "set_correlation_id",
    "correlation_id_handler",

    # Exceptions
    "PortalError",
    "ValidationError",
    "NotInitializedError",
    "NotReadyError",
    "AuthError",
    "PollTimeoutError",
    "ApiError",
]
