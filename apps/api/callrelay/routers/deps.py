"""Shared FastAPI dependencies."""
from __future__ import annotations

from fastapi.requests import HTTPConnection

from ..services.signaling import SignalingHub


def get_hub(connection: HTTPConnection) -> SignalingHub:
    """Return the signaling state owned by the running application."""

    return connection.app.state.hub
