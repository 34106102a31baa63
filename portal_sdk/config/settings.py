"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from portal_sdk.core.client import DEFAULT_USER_AGENT
from portal_sdk.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://portal-api:3001"


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                logger.debug(f"Loaded {secret_name} from /run/secrets")
                return secret_value
        except OSError as e:
            logger.warning(f"Failed to read /run/secrets/{secret_name}: {e}")

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            logger.debug(f"Loaded {env_var} from environment")
            return secret_value

    return None


def _get_float(env: Mapping[str, str], var_name: str, default: float, allow_zero: bool = False) -> float:
    raw = env.get(var_name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"Environment variable {var_name} must be a number, got '{raw}'")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f"Environment variable {var_name} must be {'>=' if allow_zero else '>'} 0")
    return value


@dataclass
class SdkSettings:
    """Runtime settings for the portal SDK."""
    api_url: str = DEFAULT_API_URL
    machine_secret: str = ""
    await_timeout_seconds: float = 60.0
    retry_delay_seconds: float = 1.0
    request_timeout_seconds: float = 10.0
    token_skew_seconds: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT


def load_settings(env: Optional[Mapping[str, str]] = None) -> SdkSettings:
    """Load SDK settings from the environment and /run/secrets."""
    env = os.environ if env is None else env

    api_url = (env.get("PORTAL_API_URL") or DEFAULT_API_URL).strip().rstrip("/")
    if not api_url.startswith(("http://", "https://")):
        raise ValidationError(f"PORTAL_API_URL must be an http(s) URL, got '{api_url}'")

    if env is os.environ:
        machine_secret = _load_secret_from_file("portal_machine_secret", "PORTAL_MACHINE_SECRET") or ""
    else:
        machine_secret = env.get("PORTAL_MACHINE_SECRET", "")

    settings = SdkSettings(
        api_url=api_url,
        machine_secret=machine_secret,
        await_timeout_seconds=_get_float(env, "PORTAL_AWAIT_TIMEOUT_SECONDS", 60.0),
        retry_delay_seconds=_get_float(env, "PORTAL_RETRY_DELAY_SECONDS", 1.0),
        request_timeout_seconds=_get_float(env, "PORTAL_REQUEST_TIMEOUT_SECONDS", 10.0),
        token_skew_seconds=_get_float(env, "PORTAL_TOKEN_SKEW_SECONDS", 30.0, allow_zero=True),
        user_agent=env.get("PORTAL_USER_AGENT") or DEFAULT_USER_AGENT,
    )
    logger.debug(f"Settings loaded: api_url={settings.api_url}; machine_secret={'set' if machine_secret else 'unset'}")
    return settings
