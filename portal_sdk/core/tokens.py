"""Machine identity acquisition and bearer token management.

Two exchanges against the auth server:

1. ``POST {auth}/machine-users`` with the service id and the shared machine
   secret returns a long-lived machine identity (``userId`` + ``identityToken``).
2. ``POST {auth}/token`` (client credentials grant, the identity token as
   client secret) returns a short-lived bearer token (``accessToken``,
   ``expiresIn``).

Step 2 is repeated whenever the bearer token expires or is rejected. Refresh
is single-flight: while one exchange is outstanding, every other caller waits
for its result instead of starting another one.
"""
from __future__ import annotations
import logging
import math
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt
import requests

from .exceptions import AuthError
from .state import ProcessState

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5
DEFAULT_EXPIRY_SKEW_SECONDS = 30


@dataclass(frozen=True)
class MachineToken:
    access_token: str
    expires_at_epoch_seconds: float
    subject_user_id: str

    def is_valid(self, now: float, skew: float = 0) -> bool:
        return now < self.expires_at_epoch_seconds - skew


@dataclass(frozen=True)
class _MachineIdentity:
    service_id: str
    user_id: str
    identity_token: str


def _unverified_claims(token: str) -> Dict[str, Any]:
    """Read JWT claims without verification; opaque tokens yield no claims."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) not in (None, ""):
            return payload[key]
    return None


class TokenManager:
    """Caches the machine bearer token and refreshes it transparently.

    Usage:
        tokens = TokenManager(state, auth_server_url=lambda: "http://portal-auth:3010",
                              machine_secret="s3cret")
        tokens.acquire("portal-mailer")
        token = tokens.get_valid_token()
    """

    def __init__(
        self,
        process_state: ProcessState,
        auth_server_url: Callable[[], str],
        machine_secret: str = "",
        skew_seconds: float = DEFAULT_EXPIRY_SKEW_SECONDS,
        request_timeout: float = REQUEST_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self._state = process_state
        self._auth_server_url = auth_server_url
        self.machine_secret = machine_secret
        self.skew_seconds = skew_seconds
        self.request_timeout = request_timeout
        self._clock = clock
        self._identity: Optional[_MachineIdentity] = None
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None

    @property
    def has_identity(self) -> bool:
        return self._identity is not None

    def clear(self) -> None:
        """Drop identity and cached token (re-initialization)."""
        with self._lock:
            self._identity = None
            self._state.cached_token = None

    def acquire(self, service_id: str) -> MachineToken:
        """Obtain a machine identity for ``service_id`` and a first bearer token.

        Raises:
            AuthError: If the auth server is unreachable or rejects the exchange
        """
        service_id = (service_id or "").strip()
        if not service_id:
            raise AuthError("service_id must not be empty")
        if not self.machine_secret:
            raise AuthError("Machine secret not configured (PORTAL_MACHINE_SECRET)")

        url = f"{self._auth_server_url()}/machine-users"
        payload = self._post_form(url, {"service_id": service_id, "secret": self.machine_secret})
        identity_token = _first(payload, "identityToken", "identity_token")
        if not identity_token:
            raise AuthError("Identity response is missing identityToken", endpoint=url)

        user_id = _first(payload, "userId", "user_id") or _unverified_claims(identity_token).get("sub")
        identity = _MachineIdentity(service_id=service_id, user_id=user_id or "", identity_token=identity_token)
        with self._lock:
            self._identity = identity
            self._state.cached_token = None

        token = self._refresh_single_flight()
        logger.info(f"Machine identity established for service '{service_id}' (user {token.subject_user_id})")
        return token

    def get_valid_token(self) -> MachineToken:
        """Return a token valid for at least the skew window, refreshing if needed.

        Raises:
            AuthError: If no identity was acquired or the refresh failed
        """
        token = self._state.cached_token
        if token is not None and token.is_valid(self._clock(), self.skew_seconds):
            return token
        return self._refresh_single_flight(unless_valid=True)

    def force_refresh(self, rejected_token: Optional[str] = None) -> MachineToken:
        """Exchange the identity for a new bearer token.

        Args:
            rejected_token: Access token the API just rejected. If the cache
                already holds a different, valid token (someone else refreshed
                in the meantime), that one is returned without a new exchange.
        """
        if rejected_token is not None:
            current = self._state.cached_token
            if (
                current is not None
                and current.access_token != rejected_token
                and current.is_valid(self._clock())
            ):
                return current
        return self._refresh_single_flight()

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────
    def _refresh_single_flight(self, unless_valid: bool = False) -> MachineToken:
        with self._lock:
            # A refresh may have completed between the caller's check and here
            cached = self._state.cached_token
            if unless_valid and cached is not None and cached.is_valid(self._clock(), self.skew_seconds):
                return cached
            flight = self._inflight
            leader = flight is None
            if leader:
                flight = self._inflight = Future()

        if leader:
            try:
                token = self._exchange_token()
            except BaseException as e:
                flight.set_exception(e)
                raise
            else:
                self._state.cached_token = token
                flight.set_result(token)
            finally:
                with self._lock:
                    self._inflight = None
        else:
            logger.debug("Token refresh already in flight, waiting for its result")

        return flight.result()

    def _exchange_token(self) -> MachineToken:
        identity = self._identity
        if identity is None:
            raise AuthError("No machine identity - call init_machine_user() first")

        url = f"{self._auth_server_url()}/token"
        payload = self._post_form(url, {
            "grant_type": "client_credentials",
            "client_id": identity.service_id,
            "client_secret": identity.identity_token,
        })
        access_token = _first(payload, "accessToken", "access_token")
        if not access_token:
            raise AuthError("Token response is missing accessToken", endpoint=url)

        claims = _unverified_claims(access_token)
        now = self._clock()
        expires_in = _first(payload, "expiresIn", "expires_in")
        try:
            if expires_in is not None:
                expires_at = now + float(expires_in)
            elif claims.get("exp") is not None:
                expires_at = float(claims["exp"])
            else:
                raise AuthError("Token response carries no expiry", endpoint=url)
        except (TypeError, ValueError, OverflowError) as e:
            raise AuthError(f"Invalid token expiry: {expires_in!r}", endpoint=url) from e
        if not math.isfinite(expires_at):
            raise AuthError(f"Invalid token expiry: {expires_in!r}", endpoint=url)
        if expires_at <= now:
            raise AuthError("Token expired on arrival", endpoint=url)

        subject = identity.user_id or claims.get("sub")
        if not subject:
            raise AuthError("Cannot determine machine user id", endpoint=url)

        logger.debug(f"Obtained machine token valid for {int(expires_at - now)}s")
        return MachineToken(access_token=access_token, expires_at_epoch_seconds=expires_at, subject_user_id=subject)

    def _post_form(self, url: str, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            resp = requests.post(url, data=data, timeout=self.request_timeout)
        except requests.RequestException as e:
            raise AuthError(f"Auth server unreachable: {type(e).__name__}", endpoint=url) from e
        if resp.status_code != 200:
            raise AuthError(resp.text or "exchange rejected", status_code=resp.status_code, endpoint=url)
        try:
            payload = resp.json()
        except ValueError as e:
            raise AuthError("Auth server returned non-JSON payload", status_code=resp.status_code, endpoint=url) from e
        if not isinstance(payload, dict):
            raise AuthError("Auth server returned unexpected payload", status_code=resp.status_code, endpoint=url)
        return payload
