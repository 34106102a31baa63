"""Flask integration for the portal SDK."""
from .middleware import correlation_id_handler

__all__ = ["correlation_id_handler"]
