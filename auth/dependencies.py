"""
FastAPI dependencies for authentication.

Provides ``get_current_user_id``, used across all protected routes.
``db_session`` is re-exported from ``api.dependencies`` so auth routes
import from a single place.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from api.dependencies import db_session  # noqa: F401
from auth.jwt import verify_token

_bearer_scheme = HTTPBearer()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """
    Extract and verify the Bearer token, returning the authenticated
    ``user_id`` (UUID string).
    """
    return verify_token(credentials.credentials)
