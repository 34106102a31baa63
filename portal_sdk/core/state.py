"""Process-wide SDK state shared by the config store, token manager, poller and dispatcher.

One ``ProcessState`` instance (``state``) lives for the process lifetime.
It is populated by ``initialize`` / ``init_machine_user`` and reset only by
re-initialization.

The correlation id is kept in a context variable rather than a plain
attribute: each logical request chain (thread, or Flask request handled by
the correlation middleware) sees its own id, and nested calls inside one
chain share it.
"""
from __future__ import annotations
import contextvars
import uuid
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .config_store import GlobalConfig
    from .tokens import MachineToken

CORRELATION_ID_HEADER = "Correlation-Id"

_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "portal_sdk_correlation_id",
    default=None,
)


class ProcessState:
    """Mutable record of the SDK runtime state.

    All fields are independent scalar assignments (last writer wins).
    """

    def __init__(self) -> None:
        self.is_reachable: bool = False
        self.is_development_mode: bool = False
        self.config: Optional[GlobalConfig] = None
        self.config_hash: Optional[str] = None
        self.cached_token: Optional[MachineToken] = None
        self.machine_user_id: Optional[str] = None

    @property
    def correlation_id(self) -> Optional[str]:
        return _correlation_id_var.get()

    @correlation_id.setter
    def correlation_id(self, value: Optional[str]) -> None:
        _correlation_id_var.set(value or None)

    def ensure_correlation_id(self) -> str:
        """Return the current chain's correlation id, minting one on first use."""
        correlation_id = _correlation_id_var.get()
        if not correlation_id:
            correlation_id = str(uuid.uuid4())
            _correlation_id_var.set(correlation_id)
        return correlation_id

    def reset(self) -> None:
        """Forget everything; used when the SDK is re-initialized."""
        self.is_reachable = False
        self.is_development_mode = False
        self.config = None
        self.config_hash = None
        self.cached_token = None
        self.machine_user_id = None
        _correlation_id_var.set(None)


# Global state instance
state = ProcessState()


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Seed the correlation id for the chain of calls that follows."""
    state.correlation_id = correlation_id


def get_correlation_id() -> Optional[str]:
    return state.correlation_id
