# privileged_helper/server.py
"""
Privileged Helper - runs as root, listens on a Unix socket.
Performs the handful of system changes the orchestrator may not make itself.
"""

import logging
from typing import Optional

from fastapi import FastAPI

from orchestration_engine.helper.protocol import (
    PROTOCOL_VERSION,
    FailureReason,
    HelperEnvelope,
    HelperResponse,
)
from privileged_helper.config import HelperSettings
from privileged_helper.handlers import HelperHandlers

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[HelperSettings] = None,
    handlers: Optional[HelperHandlers] = None,
) -> FastAPI:
    settings = settings or HelperSettings()
    handlers = handlers or HelperHandlers(settings)

    app = FastAPI(
        title="Orchestrator Privileged Helper",
        description="Closed-set privileged operations for the local orchestrator",
        version="1.0.0"
    )

    # ============================================
    # ENDPOINTS
    # ============================================

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "protocol_version": PROTOCOL_VERSION,
        }

    @app.post("/v1/requests", response_model=HelperResponse)
    def handle_request(envelope: HelperEnvelope):
        """
        Handle one privileged request.

        Malformed bodies and unknown kinds never reach this function;
        request validation answers them with 422.
        """
        if envelope.version != PROTOCOL_VERSION:
            logger.warning(f"[helper] Rejecting protocol version {envelope.version}")
            return HelperResponse.failure(
                FailureReason.UNSUPPORTED_VERSION,
                f"Protocol version {envelope.version} is not supported "
                f"(helper speaks {PROTOCOL_VERSION})",
            )

        return handlers.handle(envelope.request)

    return app
