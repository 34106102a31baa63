"""Resolved global configuration ("globals") and its content hash.

The raw globals document may reference environment values as ``${NAME}``
(anywhere inside a string) or ``$NAME`` (whole string). Values are resolved
before anything is exposed, and the hash is computed over the resolved,
default-normalized document, so two processes fed the same effective
configuration always report the same hash.
"""
from __future__ import annotations
import copy
import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .exceptions import NotInitializedError, ValidationError
from .state import ProcessState

logger = logging.getLogger(__name__)

DEFAULT_API_KEY_HEADER = "X-ApiKey"

# Deployment defaults for services as seen from inside the deployment
DEFAULT_INTERNAL_URLS: Dict[str, str] = {
    "apiUrl": "http://portal-api:3001",
    "portalUrl": "http://portal:3000",
    "kongAdminUrl": "http://kong:8001",
    "kongAdapterUrl": "http://portal-kong-adapter:3002",
    "mailerUrl": "http://portal-mailer:3003",
    "chatbotUrl": "http://portal-chatbot:3004",
    "authServerUrl": "http://portal-auth:3010",
}

_TEMPLATE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_WHOLE_VAR_PATTERN = re.compile(r"^\$([A-Za-z_][A-Za-z0-9_]*)$")


@dataclass(frozen=True)
class GlobalConfig:
    """Resolved configuration for one configuration generation."""
    schema: str
    external_portal_host: str
    external_api_host: str
    internal_service_urls: Dict[str, str]
    api_key_header_name: str = DEFAULT_API_KEY_HEADER
    kong_adapter_ignore_list: Tuple[str, ...] = ()
    portal_api_scopes: Tuple[str, ...] = ()
    document: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_development_mode(self) -> bool:
        return self.schema == "http"

    def to_dict(self) -> Dict[str, Any]:
        """Return the resolved document as exposed by ``get_globals``."""
        return copy.deepcopy(self.document)


def _resolve_string(value: str, env: Mapping[str, str], path: str) -> str:
    whole = _WHOLE_VAR_PATTERN.match(value)
    if whole:
        name = whole.group(1)
        if name not in env:
            raise ValidationError(f"Environment variable {name} is not set (referenced by '{path}')")
        return env[name]

    def _substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in env:
            raise ValidationError(f"Environment variable {name} is not set (referenced by '{path}')")
        return env[name]

    return _TEMPLATE_PATTERN.sub(_substitute, value)


def resolve_templates(value: Any, env: Mapping[str, str], path: str = "") -> Any:
    """Recursively replace environment references in every string of ``value``."""
    if isinstance(value, str):
        return _resolve_string(value, env, path or "<root>")
    if isinstance(value, Mapping):
        return {
            str(key): resolve_templates(item, env, f"{path}.{key}" if path else str(key))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [resolve_templates(item, env, f"{path}[{index}]") for index, item in enumerate(value)]
    return value


def _require_string(document: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = document.get(key)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Configuration property '{key}' must be a non-empty string")
        return value.strip()
    raise ValidationError(f"Configuration property '{keys[0]}' is required")


def _string_list(document: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    value = document.get(key) or []
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Configuration property '{key}' must be a list of strings")
    return tuple(value)


def build_global_config(resolved: Mapping[str, Any]) -> GlobalConfig:
    """Validate a resolved document and normalize it into a ``GlobalConfig``."""
    schema = _require_string(resolved, "schema").lower()
    if schema not in ("http", "https"):
        raise ValidationError(f"Configuration property 'schema' must be 'http' or 'https', got '{schema}'")

    portal_host = _require_string(resolved, "externalPortalHost", "externalHost")
    api_host = _require_string(resolved, "externalApiHost")

    raw_urls = resolved.get("internalServiceUrls") or {}
    if not isinstance(raw_urls, Mapping):
        raise ValidationError("Configuration property 'internalServiceUrls' must be an object")
    internal_urls = dict(DEFAULT_INTERNAL_URLS)
    for name, url in raw_urls.items():
        if not isinstance(url, str) or not url.strip():
            raise ValidationError(f"Internal service URL '{name}' must be a non-empty string")
        internal_urls[name] = url.strip().rstrip("/")

    api_key_header = resolved.get("apiKeyHeaderName") or DEFAULT_API_KEY_HEADER
    if not isinstance(api_key_header, str):
        raise ValidationError("Configuration property 'apiKeyHeaderName' must be a string")

    ignore_list = _string_list(resolved, "kongAdapterIgnoreList")
    scopes = _string_list(resolved, "portalApiScopes")

    # Normalized view: defaults made explicit so equivalent inputs hash alike
    document = dict(resolved)
    document.pop("externalHost", None)
    document.update(
        schema=schema,
        externalPortalHost=portal_host,
        externalApiHost=api_host,
        internalServiceUrls=dict(internal_urls),
        apiKeyHeaderName=api_key_header,
        kongAdapterIgnoreList=list(ignore_list),
        portalApiScopes=list(scopes),
    )

    return GlobalConfig(
        schema=schema,
        external_portal_host=portal_host,
        external_api_host=api_host,
        internal_service_urls=internal_urls,
        api_key_header_name=api_key_header,
        kong_adapter_ignore_list=ignore_list,
        portal_api_scopes=scopes,
        document=document,
    )


def compute_config_hash(document: Mapping[str, Any]) -> str:
    try:
        canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Configuration is not JSON serializable: {e}") from e
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ConfigStore:
    """Holds the current ``GlobalConfig`` and exposes derived URLs.

    Usage:
        store = ConfigStore(state)
        store.load({"schema": "https", "externalPortalHost": "${PORTAL_HOST}", ...})
        store.external_portal_url()  # https://developer.example.com
    """

    def __init__(self, process_state: ProcessState):
        self._state = process_state

    def load(self, raw_config: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> GlobalConfig:
        """Resolve, validate and store a globals document.

        Args:
            raw_config: Globals document, possibly with environment references
            env: Variables used for resolution (defaults to ``os.environ``)

        Returns:
            The new GlobalConfig

        Raises:
            ValidationError: On unresolvable references or invalid values;
                previously loaded configuration is left untouched
        """
        if not isinstance(raw_config, Mapping):
            raise ValidationError("Configuration must be a mapping")

        resolved = resolve_templates(raw_config, os.environ if env is None else env)
        config = build_global_config(resolved)
        config_hash = compute_config_hash(config.document)

        previous_hash = self._state.config_hash
        self._state.config = config
        self._state.config_hash = config_hash
        self._state.is_development_mode = config.is_development_mode

        if previous_hash and previous_hash != config_hash:
            logger.info(f"Configuration changed: {previous_hash[:12]} -> {config_hash[:12]}")
        else:
            logger.debug(f"Configuration loaded, hash={config_hash[:12]}")
        return config

    @property
    def is_loaded(self) -> bool:
        return self._state.config is not None

    def get(self) -> GlobalConfig:
        config = self._state.config
        if config is None:
            raise NotInitializedError("Configuration not loaded - call initialize() first")
        return config

    def hash(self) -> str:
        self.get()
        return self._state.config_hash  # type: ignore[return-value]

    # Derived getters
    def schema(self) -> str:
        return self.get().schema

    def external_portal_host(self) -> str:
        return self.get().external_portal_host

    def external_portal_url(self) -> str:
        config = self.get()
        return f"{config.schema}://{config.external_portal_host}"

    def external_api_host(self) -> str:
        return self.get().external_api_host

    def external_api_url(self) -> str:
        config = self.get()
        return f"{config.schema}://{config.external_api_host}"

    def internal_url(self, name: str) -> str:
        """Return the internal URL registered under ``name`` (e.g. ``kongAdapterUrl``)."""
        urls = self.get().internal_service_urls
        if name not in urls:
            raise ValidationError(f"Unknown internal service URL '{name}'")
        return urls[name]

    def internal_api_url(self) -> str:
        return self.internal_url("apiUrl")

    def internal_portal_url(self) -> str:
        return self.internal_url("portalUrl")

    def internal_kong_admin_url(self) -> str:
        return self.internal_url("kongAdminUrl")

    def internal_kong_adapter_url(self) -> str:
        return self.internal_url("kongAdapterUrl")

    def internal_mailer_url(self) -> str:
        return self.internal_url("mailerUrl")

    def internal_chatbot_url(self) -> str:
        return self.internal_url("chatbotUrl")

    def internal_auth_server_url(self) -> str:
        return self.internal_url("authServerUrl")

    def api_key_header(self) -> str:
        return self.get().api_key_header_name

    def kong_adapter_ignore_list(self) -> list[str]:
        return list(self.get().kong_adapter_ignore_list)

    def portal_api_scope(self) -> str:
        return " ".join(self.get().portal_api_scopes)
