"""Shared FastAPI dependencies for API routes."""

from __future__ import annotations

import logging
import secrets

from fastapi import Header, HTTPException, Request

from replywatch.config import get_settings
from replywatch.db.session import get_db  # re-export
from replywatch.providers.registry import ProviderRegistry

__all__ = ["get_db", "get_provider_registry", "require_internal_token"]

logger = logging.getLogger(__name__)


def require_internal_token(x_internal_token: str = Header(...)) -> None:
    """Validate the X-Internal-Token header.

    Uses constant-time comparison to prevent timing attacks.
    Raises 403 if the token is empty or does not match the configured value.
    """
    expected = get_settings().internal_job_token
    if not expected or not secrets.compare_digest(x_internal_token, expected):
        logger.warning("Internal endpoint auth failed: invalid or missing token")
        raise HTTPException(status_code=403, detail="Invalid internal token")


def get_provider_registry(request: Request) -> ProviderRegistry:
    """Mailbox provider registry attached to the app in create_app()."""
    return request.app.state.provider_registry
