"""Flask middleware propagating the ``Correlation-Id`` of inbound requests.

Usage:
    app = Flask(__name__)
    correlation_id_handler(app)

An inbound ``Correlation-Id`` header is reused; otherwise a new UUID is
minted. The id is exposed as ``g.correlation_id``, seeds the SDK state so
every portal API call made while handling the request carries it, and is
echoed on the response.
"""
from __future__ import annotations
import logging
import uuid

from flask import Flask, g, request

from portal_sdk.core.state import CORRELATION_ID_HEADER, set_correlation_id

logger = logging.getLogger(__name__)


def correlation_id_handler(app: Flask) -> Flask:
    """Register correlation id before/after request hooks on ``app``."""

    @app.before_request
    def pick_up_correlation_id() -> None:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER)
        if correlation_id:
            logger.debug(f"Picking up correlation id: {correlation_id}")
        else:
            correlation_id = str(uuid.uuid4())
            logger.debug(f"Creating a new correlation id: {correlation_id}")
        g.correlation_id = correlation_id
        set_correlation_id(correlation_id)

    @app.after_request
    def add_correlation_id(response):
        correlation_id = g.get("correlation_id")
        if correlation_id:
            response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response

    return app
