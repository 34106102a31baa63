"""Authenticated HTTP dispatch against the portal API.

Handles bearer authentication, user impersonation, correlation ids, the
single refresh-and-retry on 401, and error normalization.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .config_store import ConfigStore
from .exceptions import ApiError, NotReadyError
from .state import CORRELATION_ID_HEADER, ProcessState
from .tokens import TokenManager

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10
IMPERSONATION_HEADER = "X-Authenticated-UserId"
DEFAULT_USER_AGENT = "portal-sdk-python/0.1.0"


@dataclass
class RequestContext:
    """One outgoing API call."""
    method: str
    path: str
    params: Optional[Dict[str, Any]] = None
    body: Any = None
    impersonated_user_id: Optional[str] = None
    correlation_id: str = ""


def parse_response_body(resp: requests.Response) -> Any:
    """JSON-decode when the content type says so, raw text otherwise, None if empty."""
    if not resp.content:
        return None
    content_type = resp.headers.get("Content-Type", "")
    if "json" in content_type.lower():
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text


class RequestDispatcher:
    """HTTP client for the portal API with automatic token management.

    Features:
    - Bearer token from the TokenManager (refreshed transparently)
    - ``X-Authenticated-UserId`` impersonation on behalf of the machine user
    - ``Correlation-Id`` shared by all calls of one logical chain
    - Exactly one refresh-and-retry on 401

    Usage:
        dispatcher = RequestDispatcher(state, config_store, tokens)
        user = dispatcher.get("users/123")
        dispatcher.patch("applications/app1", {"name": "x"}, impersonated_user_id="123")
    """

    def __init__(
        self,
        process_state: ProcessState,
        config_store: ConfigStore,
        tokens: TokenManager,
        request_timeout: float = REQUEST_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._state = process_state
        self._config = config_store
        self._tokens = tokens
        self.request_timeout = request_timeout
        self.user_agent = user_agent

    def send(
        self,
        method: str,
        path: str,
        body: Any = None,
        impersonated_user_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute an API call and return the parsed response body.

        Args:
            method: HTTP method
            path: Pre-encoded path relative to the internal API URL (e.g. "users/123")
            body: JSON-serializable request body
            impersonated_user_id: User id the API should act as
            params: Query parameters

        Returns:
            Parsed response body (dict/list for JSON, str otherwise, None if empty)

        Raises:
            NotReadyError: If the SDK is not initialized or the API not reachable
            AuthError: If the bearer token cannot be obtained or refreshed
            ApiError: On transport, timeout, validation or HTTP failures
        """
        if not self._config.is_loaded or not self._state.is_reachable:
            raise NotReadyError("Portal API not reachable - call initialize() first")

        if not path or not path.strip("/"):
            raise ApiError("validation", "Request path must not be empty")

        ctx = RequestContext(
            method=method.upper(),
            path=path,
            params=params,
            body=body,
            impersonated_user_id=impersonated_user_id,
            correlation_id=self._state.ensure_correlation_id(),
        )
        url = f"{self._config.internal_api_url()}/{path.lstrip('/')}"

        token = self._tokens.get_valid_token() if self._tokens.has_identity else None
        resp = self._execute(ctx, url, token.access_token if token else None)

        if resp.status_code == 401 and token is not None:
            logger.info(f"{ctx.method} {url} returned 401, refreshing machine token and retrying once")
            token = self._tokens.force_refresh(rejected_token=token.access_token)
            resp = self._execute(ctx, url, token.access_token)

        self._handle_error(resp, url)
        return parse_response_body(resp)

    def get(self, path: str, impersonated_user_id: Optional[str] = None, params: Optional[Dict] = None) -> Any:
        return self.send("GET", path, impersonated_user_id=impersonated_user_id, params=params)

    def post(self, path: str, body: Any = None, impersonated_user_id: Optional[str] = None) -> Any:
        return self.send("POST", path, body, impersonated_user_id)

    def put(self, path: str, body: Any = None, impersonated_user_id: Optional[str] = None) -> Any:
        return self.send("PUT", path, body, impersonated_user_id)

    def patch(self, path: str, body: Any = None, impersonated_user_id: Optional[str] = None) -> Any:
        return self.send("PATCH", path, body, impersonated_user_id)

    def delete(self, path: str, impersonated_user_id: Optional[str] = None) -> Any:
        return self.send("DELETE", path, impersonated_user_id=impersonated_user_id)

    def _build_headers(self, ctx: RequestContext, access_token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
            CORRELATION_ID_HEADER: ctx.correlation_id,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        if ctx.impersonated_user_id:
            headers[IMPERSONATION_HEADER] = ctx.impersonated_user_id
        return headers

    def _execute(self, ctx: RequestContext, url: str, access_token: Optional[str]) -> requests.Response:
        headers = self._build_headers(ctx, access_token)
        data = None
        if ctx.body is not None:
            try:
                data = json.dumps(ctx.body)
            except (TypeError, ValueError) as e:
                raise ApiError("validation", f"Request body is not JSON serializable: {e}", endpoint=url) from e
            headers["Content-Type"] = "application/json"

        logger.debug(f"{ctx.method} {url} correlation_id={headers[CORRELATION_ID_HEADER]}")
        try:
            return requests.request(
                ctx.method,
                url,
                params=ctx.params,
                data=data,
                headers=headers,
                timeout=self.request_timeout,
            )
        except requests.Timeout as e:
            raise ApiError("timeout", f"Request timed out after {self.request_timeout}s", endpoint=url) from e
        except requests.RequestException as e:
            raise ApiError("network", f"{type(e).__name__}: {e}", endpoint=url) from e

    def _handle_error(self, resp: requests.Response, url: str) -> None:
        """Centralized error handling for HTTP responses.

        Raises:
            ApiError: If response status is not 2xx
        """
        if 200 <= resp.status_code < 300:
            return
        body = parse_response_body(resp)
        message = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error_description") or body.get("error")
        if not message:
            message = resp.reason or f"HTTP {resp.status_code}"
        raise ApiError("http", str(message), status_code=resp.status_code, endpoint=url, body=body)
