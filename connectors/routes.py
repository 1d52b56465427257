"""
OAuth API routes: provider list, connect, callback, list connections,
disconnect.

Route prefix: /oauth
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from api.dependencies import (
    get_onboarding_service,
    get_registry,
    get_settings,
    get_token_manager,
)
from auth.dependencies import get_current_user_id
from config.settings import Settings
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from onboarding.service import OnboardingService
from utils.errors import AppError, InvalidState, ProviderExchangeFailed, UnknownProvider

logger = logging.getLogger(__name__)

router = APIRouter(tags=["oauth"])


def _onboarding_url(settings: Settings, path: str, **params: str) -> str:
    url = f"{settings.frontend_url.rstrip('/')}/onboarding/{path}"
    return f"{url}?{urlencode(params)}" if params else url


def _failure_reason(exc: AppError) -> str:
    """Generic reason for the UI; provider details stay in the logs."""
    if isinstance(exc, InvalidState):
        return "invalid_state"
    if isinstance(exc, (ProviderExchangeFailed, UnknownProvider)):
        return "exchange_failed"
    return "unavailable"


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    registry: ConnectorRegistry = Depends(get_registry),
) -> List[Dict[str, object]]:
    """
    List all known providers and whether they are configured.
    No auth required; used by the frontend to render the provider choice.
    """
    return registry.list_providers()


@router.get("/connections")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> List[Dict[str, Any]]:
    """List connection metadata for the authenticated user (never tokens)."""
    return await tokens.list_connections(user_id)


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should open this URL in a popup window.
    """
    request = await service.begin_provider_connection(user_id, provider)
    return {"auth_url": request.authorization_url, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    service: OnboardingService = Depends(get_onboarding_service),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """
    The provider redirects here after consent.

    Exchanges the code, stores the connection and sends the browser back
    to the onboarding UI at the next step, or to the error page with a
    generic reason code.
    """
    if error:
        logger.info("OAuth consent declined for %s: %s", provider, error)
        return RedirectResponse(
            _onboarding_url(settings, "error", reason="access_denied"),
            status_code=status.HTTP_302_FOUND,
        )

    try:
        _, onboarding = await service.complete_provider_connection(code, state, provider)
    except AppError as exc:
        logger.warning("OAuth callback failed for %s: %s", provider, exc.code)
        return RedirectResponse(
            _onboarding_url(settings, "error", reason=_failure_reason(exc)),
            status_code=status.HTTP_302_FOUND,
        )

    return RedirectResponse(
        _onboarding_url(settings, onboarding.next_step),
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/{provider}")
async def start_authorization(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> RedirectResponse:
    """Redirect straight to the provider consent screen."""
    request = await service.begin_provider_connection(user_id, provider)
    return RedirectResponse(request.authorization_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.post("/{provider}/disconnect")
async def disconnect_provider(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    service: OnboardingService = Depends(get_onboarding_service),
) -> Dict[str, Any]:
    """Revoke upstream (best effort) and forget the stored credential."""
    await service.disconnect_provider(user_id, provider)
    return {"success": True}
