"""Wait for a URL to answer with an expected status code.

Used for "wait until the portal API answers" during initialization and for
waiting on any dependent service (e.g. the Kong adapter).
"""
from __future__ import annotations
import logging
import math
import time
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Mapping, Optional, Tuple, Union

import requests

from .exceptions import PollTimeoutError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_REQUEST_TIMEOUT = 5

_OPTION_ALIASES = {
    "statusCode": "status_code",
    "maxTries": "max_tries",
    "retryDelaySeconds": "retry_delay_seconds",
    "timeoutSeconds": "timeout_seconds",
    "requestTimeoutSeconds": "request_timeout_seconds",
}


@dataclass
class AwaitOptions:
    """Options for ``poll_until_ready``.

    ``max_tries`` defaults to ``ceil(timeout_seconds / retry_delay_seconds)``;
    in that case the time budget, not the attempt count, bounds the poll.
    """
    status_code: int = 200
    max_tries: Optional[int] = None
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT
    max_tries_from_timeout: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.retry_delay_seconds <= 0:
            raise ValidationError("retry_delay_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValidationError("timeout_seconds must be > 0")
        if self.request_timeout_seconds <= 0:
            raise ValidationError("request_timeout_seconds must be > 0")
        if self.max_tries is None:
            self.max_tries_from_timeout = True
            self.max_tries = max(1, math.ceil(self.timeout_seconds / self.retry_delay_seconds))
        elif self.max_tries < 1:
            raise ValidationError("max_tries must be >= 1")

    @classmethod
    def from_value(cls, options: Union["AwaitOptions", Mapping[str, Any], None], **defaults: Any) -> "AwaitOptions":
        """Build options from an instance, a (snake_case or camelCase) mapping, or None."""
        if isinstance(options, AwaitOptions):
            return options
        if options is not None and not isinstance(options, Mapping):
            raise ValidationError(f"Await options must be a mapping, got {type(options).__name__}")
        known = {f.name for f in fields(cls) if f.init}
        values = {key: value for key, value in defaults.items() if value is not None}
        for key, value in (options or {}).items():
            name = _OPTION_ALIASES.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown await option '{key}'")
            if value is not None:
                values[name] = value
        try:
            return cls(**values)
        except TypeError as e:
            raise ValidationError(f"Invalid await options: {e}") from e


def _decode_body(resp: requests.Response) -> Any:
    content_type = resp.headers.get("Content-Type", "")
    if "json" in content_type.lower():
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text


def poll_until_ready(
    url: str,
    options: Union[AwaitOptions, Mapping[str, Any], None] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[int, Any]:
    """GET ``url`` until it answers with the expected status code.

    A wrong status and a transport failure count the same: as one failed
    attempt. After each failed attempt the poller waits ``retry_delay_seconds``
    and gives up once attempts are exhausted or ``timeout_seconds`` elapsed.
    No attempt or wait extends past the deadline: each request's timeout is
    capped by the time left. An explicit ``max_tries`` ends the poll right
    after the last attempt.

    Args:
        url: URL to poll
        options: AwaitOptions or mapping of await options
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (injectable for tests)

    Returns:
        Tuple of (status_code, body)

    Raises:
        ValidationError: If options are invalid
        PollTimeoutError: If the URL never answered as expected
    """
    opts = AwaitOptions.from_value(options)
    started = clock()
    attempts = 0
    last_status: Optional[int] = None
    last_error: Optional[str] = None

    while True:
        attempts += 1
        remaining = opts.timeout_seconds - (clock() - started)
        try:
            resp = requests.get(url, timeout=min(opts.request_timeout_seconds, remaining))
        except requests.RequestException as e:
            last_status, last_error = None, f"{type(e).__name__}: {e}"
            logger.debug(f"Await {url}: attempt {attempts} failed ({last_error})")
        else:
            last_status, last_error = resp.status_code, None
            if resp.status_code == opts.status_code:
                logger.debug(f"Await {url}: ready after {attempts} attempt(s)")
                return resp.status_code, _decode_body(resp)
            logger.debug(f"Await {url}: attempt {attempts} returned {resp.status_code}, expected {opts.status_code}")

        remaining = opts.timeout_seconds - (clock() - started)
        exhausted = attempts >= opts.max_tries
        if remaining <= 0 or (exhausted and not opts.max_tries_from_timeout):
            break
        sleep(min(opts.retry_delay_seconds, remaining))
        if exhausted or clock() - started >= opts.timeout_seconds:
            break

    logger.warning(f"Await {url}: giving up after {attempts} attempt(s)")
    raise PollTimeoutError(url, attempts, last_status, last_error)
